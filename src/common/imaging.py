from __future__ import annotations

from io import BytesIO
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError


STICKER_SIZE = 512
PAD_RATIO = 0.10

# Formats Pillow is allowed to sniff for; filenames are never consulted.
ACCEPTED_FORMATS = ("PNG", "JPEG", "WEBP", "GIF", "BMP")


class NormalizationError(RuntimeError):
    """Source bytes could not be turned into a sticker bitmap."""


def padded_size(width: int, height: int, *, ratio: float = PAD_RATIO) -> Tuple[int, int, int]:
    """Return (padded_width, padded_height, margin); margin is applied on every side."""
    margin = round(max(width, height) * ratio)
    return width + 2 * margin, height + 2 * margin, margin


def target_size(width: int, height: int, *, bound: int = STICKER_SIZE) -> Tuple[int, int]:
    """
    Fit (width, height) into a bound x bound box, preserving aspect ratio.

    The longer side becomes `bound`; the shorter side becomes
    round(bound / aspect) where aspect = long / short (never below 1px).
    """
    if width <= 0 or height <= 0:
        raise NormalizationError(f"Degenerate source size {width}x{height}")
    if width >= height:
        aspect = width / height
        return bound, max(1, round(bound / aspect))
    aspect = height / width
    return max(1, round(bound / aspect)), bound


def _decode(data: bytes) -> Image.Image:
    if not data:
        raise NormalizationError("Empty image payload")
    try:
        img = Image.open(BytesIO(data), formats=ACCEPTED_FORMATS)
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise NormalizationError("Unsupported or corrupt image data") from exc
    # Animated GIF/WEBP: Image.open leaves us on the first frame
    return img


def normalize_image(data: bytes, *, bound: int = STICKER_SIZE, pad_ratio: float = PAD_RATIO) -> bytes:
    """
    Turn arbitrary raster bytes into a sticker-ready PNG.

    Pipeline: decode (format sniffed from content) -> apply EXIF orientation
    -> pad with transparent margin on all four sides -> Lanczos resize so the
    longer side equals `bound` -> encode PNG.

    Raises NormalizationError for undecodable or zero-area input.
    """
    img = _decode(data)
    if img.width <= 0 or img.height <= 0:
        raise NormalizationError(f"Degenerate source size {img.width}x{img.height}")

    img = ImageOps.exif_transpose(img).convert("RGBA")

    pw, ph, margin = padded_size(img.width, img.height, ratio=pad_ratio)
    canvas = Image.new("RGBA", (pw, ph), (0, 0, 0, 0))
    canvas.paste(img, (margin, margin), img)

    resized = canvas.resize(target_size(pw, ph, bound=bound), Image.Resampling.LANCZOS)

    out = BytesIO()
    resized.save(out, format="PNG", optimize=True)
    return out.getvalue()


__all__ = [
    "ACCEPTED_FORMATS",
    "NormalizationError",
    "STICKER_SIZE",
    "normalize_image",
    "padded_size",
    "target_size",
]
