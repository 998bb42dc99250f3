from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Protocol, Sequence

from .telegram import TelegramApiError, TelegramClient, TelegramError


DEFAULT_EMOJI = "💬"
DEFAULT_KEYWORDS = ("quote",)
STICKER_FORMATS = ("static", "animated", "video")


class StickerServiceError(RuntimeError):
    """Sticker service call failed; the message is safe to show the user."""


class StickerSetInvalidError(StickerServiceError):
    """The referenced sticker set no longer exists on the platform."""


@dataclass(frozen=True)
class StickerAsset:
    """A file already known to the platform, ready to be put into a set."""

    ref: str
    sticker_format: str = "static"


class StickerService(Protocol):
    """Boundary to the sticker-hosting platform."""

    def fetch_asset(self, asset_ref: str) -> bytes:
        ...

    def upload_asset(self, owner_id: int, data: bytes) -> str:
        ...

    def create_pack(self, owner_id: int, generated_id: str, display_name: str, assets: Sequence[StickerAsset]) -> None:
        ...

    def append_to_pack(self, owner_id: int, generated_id: str, asset: StickerAsset) -> None:
        ...


def _input_sticker(asset: StickerAsset) -> Dict[str, Any]:
    return {
        "sticker": asset.ref,
        "format": asset.sticker_format,
        "emoji_list": [DEFAULT_EMOJI],
        "keywords": list(DEFAULT_KEYWORDS),
    }


def _translate(exc: TelegramError) -> StickerServiceError:
    if isinstance(exc, TelegramApiError) and "STICKERSET_INVALID" in exc.description:
        return StickerSetInvalidError(exc.description)
    return StickerServiceError(str(exc))


class TelegramStickerService:
    """
    StickerService over the Telegram Bot API.

    Every TelegramError is re-raised as StickerServiceError, or as
    StickerSetInvalidError when Telegram answers STICKERSET_INVALID.
    """

    def __init__(self, client: TelegramClient) -> None:
        self._tg = client

    def fetch_asset(self, asset_ref: str) -> bytes:
        try:
            info = self._tg.get_file(asset_ref)
            file_path = info.get("file_path") if isinstance(info, dict) else None
            if not file_path:
                raise StickerServiceError("File is not available for download")
            return self._tg.download_file(file_path)
        except TelegramError as e:
            raise _translate(e) from e

    def upload_asset(self, owner_id: int, data: bytes) -> str:
        try:
            uploaded = self._tg.upload_sticker_file(owner_id, data, sticker_format="static")
        except TelegramError as e:
            raise _translate(e) from e
        file_id = uploaded.get("file_id") if isinstance(uploaded, dict) else None
        if not file_id:
            raise StickerServiceError("Upload did not return a file id")
        return file_id

    def create_pack(self, owner_id: int, generated_id: str, display_name: str, assets: Sequence[StickerAsset]) -> None:
        try:
            self._tg.create_new_sticker_set(
                owner_id, generated_id, display_name, [_input_sticker(a) for a in assets]
            )
        except TelegramError as e:
            raise _translate(e) from e

    def append_to_pack(self, owner_id: int, generated_id: str, asset: StickerAsset) -> None:
        try:
            self._tg.add_sticker_to_set(owner_id, generated_id, _input_sticker(asset))
        except TelegramError as e:
            raise _translate(e) from e


__all__ = [
    "StickerAsset",
    "StickerService",
    "StickerServiceError",
    "StickerSetInvalidError",
    "TelegramStickerService",
]
