from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from common.naming import DEFAULT_BOT_USERNAME
from common.stickers import TelegramStickerService
from common.telegram import TelegramClient, TelegramError
from conversation.effects import EffectRunner
from conversation.engine import ConversationEngine
from conversation.states import (
    Event,
    ImageReceived,
    Reply,
    StickerReceived,
    TextReceived,
    UnsupportedReceived,
)
from state.registry import PackRegistry, PackTable
from state.s3_store import S3PackTable
from state.sqlite_table import DEFAULT_DB_PATH, SqlitePackTable


logger = logging.getLogger(__name__)

# Environment configuration
ENV_TOKEN = "TELEGRAM_BOT_TOKEN"
ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_BOT_USERNAME = "BOT_USERNAME"
ENV_REGISTRY_BACKEND = "REGISTRY_BACKEND"
ENV_REGISTRY_DB_PATH = "REGISTRY_DB_PATH"
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_KEY = "STATE_KEY"  # optional; defaults to "packs.json"
ENV_FERNET_KEY = "FERNET_KEY"
ENV_POLL_TIMEOUT = "POLL_TIMEOUT"
ENV_WORKERS = "WORKERS"
ENV_LOG_LEVEL = "LOG_LEVEL"

ALLOWED_UPDATES = ["message"]


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer for {name}: {raw!r}") from exc


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in out:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


@dataclass(frozen=True)
class Settings:
    token: str
    bot_username: Optional[str] = None
    registry_backend: str = "sqlite"
    db_path: str = DEFAULT_DB_PATH
    bucket: Optional[str] = None
    state_key: str = "packs.json"
    fernet_key: Optional[str] = None
    poll_timeout: int = 25
    workers: int = 4
    log_level: str = "INFO"


def load_settings() -> Settings:
    """
    Resolve settings from the environment, with secrets optionally in SSM.

    - TELEGRAM_BOT_TOKEN, or `telegram_bot_token` under PARAM_PREFIX in SSM.
    - REGISTRY_BACKEND: "sqlite" (REGISTRY_DB_PATH) or "s3"
      (STATE_BUCKET, STATE_KEY, FERNET_KEY or SSM `fernet_key`).
    - BOT_USERNAME is optional; it is discovered via getMe when unset.
    """
    prefix = _getenv(ENV_PARAM_PREFIX)
    params = _load_ssm_params(prefix, ["telegram_bot_token", "fernet_key"]) if prefix else {}

    token = _require(_getenv(ENV_TOKEN) or params.get("telegram_bot_token"), ENV_TOKEN)
    backend = (_getenv(ENV_REGISTRY_BACKEND, "sqlite") or "sqlite").lower()
    if backend not in ("sqlite", "s3"):
        raise RuntimeError(f"Unsupported {ENV_REGISTRY_BACKEND}: {backend!r}")

    bucket = fernet_key = None
    if backend == "s3":
        bucket = _require(_getenv(ENV_STATE_BUCKET), ENV_STATE_BUCKET)
        fernet_key = _require(_getenv(ENV_FERNET_KEY) or params.get("fernet_key"), ENV_FERNET_KEY)

    return Settings(
        token=token,
        bot_username=_getenv(ENV_BOT_USERNAME),
        registry_backend=backend,
        db_path=_getenv(ENV_REGISTRY_DB_PATH, DEFAULT_DB_PATH) or DEFAULT_DB_PATH,
        bucket=bucket,
        state_key=_getenv(ENV_STATE_KEY, "packs.json") or "packs.json",
        fernet_key=fernet_key,
        poll_timeout=_getint(ENV_POLL_TIMEOUT, 25),
        workers=_getint(ENV_WORKERS, 4),
        log_level=(_getenv(ENV_LOG_LEVEL, "INFO") or "INFO").upper(),
    )


def build_table(settings: Settings) -> PackTable:
    if settings.registry_backend == "s3":
        return S3PackTable(
            bucket=_require(settings.bucket, ENV_STATE_BUCKET),
            key=settings.state_key,
            fernet_key=_require(settings.fernet_key, ENV_FERNET_KEY),
        )
    return SqlitePackTable(settings.db_path)


def _discover_username(tg: TelegramClient) -> str:
    try:
        me = tg.get_me()
    except TelegramError as e:
        logger.warning("getMe failed (%s); using default suffix", e)
        return DEFAULT_BOT_USERNAME
    username = me.get("username") if isinstance(me, dict) else None
    return username or DEFAULT_BOT_USERNAME


# --- Update parsing ---
def _sticker_format(sticker: Dict[str, Any]) -> str:
    if sticker.get("is_animated"):
        return "animated"
    if sticker.get("is_video"):
        return "video"
    return "static"


def event_from_update(upd: Dict[str, Any]) -> Optional[Event]:
    """Map a Telegram update to an engine event; None when it is not a chat message."""
    msg = upd.get("message") if isinstance(upd, dict) else None
    if not isinstance(msg, dict):
        return None
    chat = msg.get("chat") if isinstance(msg.get("chat"), dict) else None
    chat_id = chat.get("id") if isinstance(chat, dict) else None
    if not isinstance(chat_id, int):
        return None
    sender = msg.get("from") if isinstance(msg.get("from"), dict) else {}
    owner_id = sender.get("id") if isinstance(sender.get("id"), int) else chat_id

    text = msg.get("text")
    if isinstance(text, str):
        return TextReceived(chat_id, owner_id, text)

    sticker = msg.get("sticker")
    if isinstance(sticker, dict) and sticker.get("file_id"):
        return StickerReceived(chat_id, owner_id, sticker["file_id"], _sticker_format(sticker))

    photos = msg.get("photo")
    if isinstance(photos, list) and photos:
        # Sizes come smallest first
        largest = photos[-1]
        if isinstance(largest, dict) and largest.get("file_id"):
            return ImageReceived(chat_id, owner_id, largest["file_id"])

    doc = msg.get("document")
    if isinstance(doc, dict) and str(doc.get("mime_type", "")).startswith("image/") and doc.get("file_id"):
        return ImageReceived(chat_id, owner_id, doc["file_id"])

    return UnsupportedReceived(chat_id, owner_id)


def _max_update_id(updates: List[dict]) -> Optional[int]:
    max_id: Optional[int] = None
    for upd in updates:
        try:
            uid = int(upd.get("update_id"))
        except (TypeError, ValueError):
            continue
        max_id = uid if max_id is None else max(max_id, uid)
    return max_id


# --- Replies ---
def reply_markup(reply: Reply) -> Dict[str, Any]:
    if reply.options:
        return {
            "keyboard": [[{"text": label}] for label in reply.options],
            "resize_keyboard": True,
            "one_time_keyboard": True,
        }
    return {"remove_keyboard": True}


def make_sender(tg: TelegramClient) -> Callable[[Reply], None]:
    def send(reply: Reply) -> None:
        try:
            tg.send_message(reply.session_id, reply.text, reply_markup=reply_markup(reply))
        except TelegramError as e:
            # A lost reply must not take the session or the poll loop down
            logger.warning("sendMessage to %s failed: %s", reply.session_id, e)

    return send


# --- Polling ---
def run_once(
    tg: TelegramClient,
    engine: ConversationEngine,
    *,
    offset: Optional[int] = None,
    limit: int = 100,
    timeout: int = 0,
) -> Dict[str, Any]:
    """
    Poll getUpdates once and feed every message to the engine in update order.

    Returns: {"ok": True, "received": N, "next_offset": int|None}, where
    next_offset is last processed update_id + 1 (unchanged if nothing came in).
    """
    updates = tg.get_updates(offset=offset, limit=limit, timeout=timeout, allowed_updates=ALLOWED_UPDATES)

    for upd in updates:
        event = event_from_update(upd)
        if event is None:
            continue
        try:
            engine.handle(event)
        except Exception:
            logger.exception("Failed to handle update %s", upd.get("update_id"))

    last = _max_update_id(updates)
    next_offset = last + 1 if last is not None else offset
    return {"ok": True, "received": len(updates), "next_offset": next_offset}


def run_forever(
    tg: TelegramClient,
    engine: ConversationEngine,
    *,
    poll_timeout: int = 25,
    stop: Optional[threading.Event] = None,
) -> None:
    stop = stop or threading.Event()
    offset: Optional[int] = None
    backoff = 1.0
    while not stop.is_set():
        try:
            out = run_once(tg, engine, offset=offset, timeout=poll_timeout)
        except TelegramError as e:
            logger.warning("getUpdates failed: %s; retrying in %.0fs", e, backoff)
            stop.wait(backoff)
            backoff = min(backoff * 2, 60.0)
            continue
        backoff = 1.0
        offset = out["next_offset"]


def main() -> None:
    """Entry point: long-poll Telegram and run the sticker conversation."""
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    with TelegramClient(settings.token) as tg:
        username = settings.bot_username or _discover_username(tg)
        registry = PackRegistry(build_table(settings), bot_username=username)
        runner = EffectRunner(registry, TelegramStickerService(tg))
        with ThreadPoolExecutor(max_workers=settings.workers, thread_name_prefix="effects") as pool:
            engine = ConversationEngine(registry, runner, make_sender(tg), executor=pool)
            logger.info("Sticker bot @%s polling (registry: %s)", username, settings.registry_backend)
            try:
                run_forever(tg, engine, poll_timeout=settings.poll_timeout)
            except KeyboardInterrupt:
                logger.info("Stopping")
