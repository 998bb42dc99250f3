import os
import sys
from io import BytesIO
from typing import Any, Dict, List, Optional, Sequence

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` / `state.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


def make_image_bytes(size=(100, 100), fmt: str = "PNG", color=(200, 30, 30, 255)) -> bytes:
    from PIL import Image

    mode = "RGBA" if fmt in ("PNG", "WEBP", "GIF") else "RGB"
    img = Image.new(mode, size, color if mode == "RGBA" else color[:3])
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class FakeStickerService:
    """Records calls; failures are queued per method as exceptions to raise."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.uploads: List[bytes] = []
        self.created: List[Dict[str, Any]] = []
        self.appended: List[Dict[str, Any]] = []
        self.fail: Dict[str, Exception] = {}

    def _maybe_fail(self, method: str) -> None:
        exc = self.fail.pop(method, None)
        if exc is not None:
            raise exc

    def fetch_asset(self, asset_ref: str) -> bytes:
        self._maybe_fail("fetch_asset")
        return self.files[asset_ref]

    def upload_asset(self, owner_id: int, data: bytes) -> str:
        self._maybe_fail("upload_asset")
        self.uploads.append(data)
        return f"uploaded-{len(self.uploads)}"

    def create_pack(self, owner_id: int, generated_id: str, display_name: str, assets: Sequence[Any]) -> None:
        self._maybe_fail("create_pack")
        self.created.append(
            {"owner_id": owner_id, "generated_id": generated_id, "display_name": display_name, "assets": list(assets)}
        )

    def append_to_pack(self, owner_id: int, generated_id: str, asset: Any) -> None:
        self._maybe_fail("append_to_pack")
        self.appended.append({"owner_id": owner_id, "generated_id": generated_id, "asset": asset})


@pytest.fixture
def service() -> FakeStickerService:
    return FakeStickerService()


@pytest.fixture
def registry():
    from state.registry import PackRegistry
    from state.sqlite_table import SqlitePackTable

    table = SqlitePackTable(":memory:")
    yield PackRegistry(table, bot_username="test_bot")
    table.close()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def make_image():
    return make_image_bytes


class SentReplies(list):
    def texts(self, session_id: Optional[int] = None) -> List[str]:
        return [r.text for r in self if session_id is None or r.session_id == session_id]


@pytest.fixture
def sent() -> SentReplies:
    return SentReplies()
