from __future__ import annotations

from io import BytesIO

import pytest
from PIL import Image

from common.imaging import NormalizationError, normalize_image, padded_size, target_size


def _open(data: bytes) -> Image.Image:
    img = Image.open(BytesIO(data))
    img.load()
    return img


def test_square_source_becomes_512_png_with_transparent_margin(make_image):
    out = _open(normalize_image(make_image((100, 100), "PNG")))

    assert out.format == "PNG"
    assert out.size == (512, 512)
    assert out.mode == "RGBA"
    # Corners are padding, centre is the subject
    assert out.getpixel((0, 0))[3] == 0
    assert out.getpixel((511, 511))[3] == 0
    assert out.getpixel((256, 256))[3] == 255


@pytest.mark.parametrize("fmt", ["JPEG", "WEBP", "GIF", "BMP"])
def test_formats_are_sniffed_from_content(make_image, fmt):
    out = _open(normalize_image(make_image((80, 40), fmt)))
    assert out.format == "PNG"
    assert max(out.size) == 512


def test_aspect_ratio_matches_padded_source(make_image):
    out = _open(normalize_image(make_image((300, 150), "JPEG")))

    pw, ph, margin = padded_size(300, 150)
    assert margin == 30
    assert out.size[0] == 512
    assert abs(out.size[0] / out.size[1] - pw / ph) < 0.01


def test_portrait_keeps_height_at_bound(make_image):
    out = _open(normalize_image(make_image((50, 200), "PNG")))
    assert out.size[1] == 512
    assert out.size[0] < 512


def test_target_size_rounding():
    assert target_size(120, 120) == (512, 512)
    assert target_size(360, 210) == (512, round(512 / (360 / 210)))
    assert target_size(210, 360) == (round(512 / (360 / 210)), 512)


def test_target_size_never_collapses_short_side():
    assert target_size(100000, 1) == (512, 1)


def test_target_size_rejects_zero_area():
    with pytest.raises(NormalizationError):
        target_size(0, 10)


def test_garbage_bytes_raise_normalization_error():
    with pytest.raises(NormalizationError):
        normalize_image(b"definitely not an image")


def test_empty_payload_raises_normalization_error():
    with pytest.raises(NormalizationError):
        normalize_image(b"")


def test_oversized_image_is_a_normalization_error(make_image, monkeypatch):
    data = make_image((100, 100), "PNG")
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

    with pytest.raises(NormalizationError):
        normalize_image(data)
