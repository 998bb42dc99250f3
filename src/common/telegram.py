from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from .rate_limiter import CHAT_MESSAGES_PER_MINUTE, GLOBAL_CALLS_PER_SECOND, OutboundThrottle, RateLimitError


DEFAULT_API_BASE = "https://api.telegram.org"

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


class TelegramError(RuntimeError):
    """Base error for Telegram client."""


class TelegramApiError(TelegramError):
    """API returned an error payload or unexpected structure."""

    def __init__(self, description: str, *, error_code: Optional[int] = None) -> None:
        super().__init__(f"{description} (code={error_code})")
        self.description = description
        self.error_code = error_code


class TelegramRateLimitError(TelegramError):
    """Local or remote rate limiting prevented the request."""


class TelegramClient:
    """
    Minimal Telegram Bot API client for a sticker-pack bot.

    Notes
    - JSON request bodies, except `uploadStickerFile` which is multipart.
    - Retries transient HTTP errors and 429 with backoff, honoring `retry_after` when provided.
    - Non-retryable errors surface as TelegramApiError carrying Telegram's
      `description` (e.g. "Bad Request: STICKERSET_INVALID") and `error_code`.
    - Throttles locally: a bot-wide window plus a per-chat window for `sendMessage`.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        max_per_second: int = GLOBAL_CALLS_PER_SECOND,
        max_per_chat_minute: int = CHAT_MESSAGES_PER_MINUTE,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ) -> None:
        if not token:
            raise ValueError("token is required")
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        base_url = f"{self._api_base}/bot{self._token}"
        self._client = client or httpx.Client(base_url=base_url, timeout=self._timeout)
        self._sleep = sleep
        self._throttle = OutboundThrottle(
            max_per_second=max_per_second, max_per_chat_minute=max_per_chat_minute, sleep=sleep
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "TelegramClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def get_me(self) -> Dict[str, Any]:
        return self._call("getMe", {})

    def get_updates(
        self,
        *,
        offset: Optional[int] = None,
        limit: int = 100,
        timeout: int = 0,
        allowed_updates: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Long-poll `getUpdates`. The HTTP timeout is stretched past the
        server-side `timeout` so an idle poll is not reported as a failure.
        """
        payload: Dict[str, Any] = {"limit": limit, "timeout": timeout}
        if offset is not None:
            payload["offset"] = offset
        if allowed_updates is not None:
            payload["allowed_updates"] = allowed_updates
        result = self._call("getUpdates", payload, timeout=self._timeout + timeout)
        if not isinstance(result, list):
            raise TelegramApiError("Malformed getUpdates result")
        return result

    def send_message(
        self,
        chat_id: Union[int, str],
        text: str,
        *,
        parse_mode: Optional[str] = None,
        disable_web_page_preview: Optional[bool] = None,
        reply_to_message_id: Optional[int] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send a text message via Telegram `sendMessage`.

        Returns the Message object (as dict) on success.
        Raises TelegramApiError on API errors and TelegramRateLimitError on local RL.
        """
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode is not None:
            payload["parse_mode"] = parse_mode
        if disable_web_page_preview is not None:
            payload["disable_web_page_preview"] = disable_web_page_preview
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        return self._call("sendMessage", payload, chat_id=chat_id)

    def get_file(self, file_id: str) -> Dict[str, Any]:
        return self._call("getFile", {"file_id": file_id})

    def download_file(self, file_path: str) -> bytes:
        """Download a file previously resolved with `get_file`."""
        url = f"{self._api_base}/file/bot{self._token}/{file_path.lstrip('/')}"
        resp = self._send(lambda: self._client.get(url))
        if resp.status_code != 200:
            raise TelegramApiError(f"File download failed with HTTP {resp.status_code}", error_code=resp.status_code)
        return resp.content

    def upload_sticker_file(
        self,
        user_id: int,
        data: bytes,
        *,
        sticker_format: str = "static",
        filename: str = "sticker.png",
        content_type: str = "image/png",
    ) -> Dict[str, Any]:
        """Upload a sticker file for later use in sticker sets; returns a File object."""
        form = {"user_id": str(user_id), "sticker_format": sticker_format}
        files = {"sticker": (filename, data, content_type)}
        return self._call("uploadStickerFile", form, files=files)

    def create_new_sticker_set(
        self,
        user_id: int,
        name: str,
        title: str,
        stickers: Sequence[Dict[str, Any]],
        *,
        sticker_type: str = "regular",
    ) -> bool:
        payload = {
            "user_id": user_id,
            "name": name,
            "title": title,
            "stickers": list(stickers),
            "sticker_type": sticker_type,
        }
        return bool(self._call("createNewStickerSet", payload))

    def add_sticker_to_set(self, user_id: int, name: str, sticker: Dict[str, Any]) -> bool:
        payload = {"user_id": user_id, "name": name, "sticker": sticker}
        return bool(self._call("addStickerToSet", payload))

    # --------------- Internal ---------------
    def _call(
        self,
        method: str,
        body: Dict[str, Any],
        *,
        files: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        chat_id: Optional[Union[int, str]] = None,
    ) -> Any:
        data = self._request(method, body, files=files, timeout=timeout, chat_id=chat_id)
        # Expect Telegram's envelope: { ok: bool, result?: ..., description?: str }
        if not isinstance(data, dict) or "ok" not in data:
            raise TelegramApiError("Malformed response from Telegram Bot API")
        if data.get("ok") is True and "result" in data:
            return data["result"]
        desc = data.get("description") or "Telegram API error"
        raise TelegramApiError(desc, error_code=data.get("error_code"))

    def _request(
        self,
        method: str,
        body: Dict[str, Any],
        *,
        files: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        chat_id: Optional[Union[int, str]] = None,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if files is not None:
            # Multipart: non-file fields must be strings
            kwargs["data"] = {k: v if isinstance(v, str) else json.dumps(v) for k, v in body.items()}
            kwargs["files"] = files
        else:
            kwargs["json"] = body
        if timeout is not None:
            kwargs["timeout"] = timeout

        resp = self._send(lambda: self._client.post(f"/{method}", **kwargs), chat_id=chat_id)
        try:
            return resp.json()
        except ValueError as exc:
            if resp.status_code == 200:
                raise TelegramApiError("Failed to parse JSON from Telegram API") from exc
            raise TelegramApiError(
                f"HTTP {resp.status_code} from Telegram: {resp.text[:200]}", error_code=resp.status_code
            ) from exc

    def _send(self, do_request, *, chat_id: Optional[Union[int, str]] = None) -> httpx.Response:
        """Run `do_request` with local throttling and retry of transient failures."""
        try:
            self._throttle.acquire(chat_id, blocking=True)
        except RateLimitError as rl:
            raise TelegramRateLimitError("Local rate limiter prevented request") from rl

        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < 5:
            try:
                resp = do_request()
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code not in RETRYABLE_STATUSES:
                    return resp

                # Telegram 429 includes { ok:false, error_code:429, parameters: { retry_after: N } }
                retry_after = _retry_after(resp)
                delay = retry_after if retry_after is not None else backoff
                self._sleep(min(delay, 10.0))
                backoff = min(backoff * 2, 8.0)
                attempt += 1
                continue

            attempt += 1
            self._sleep(backoff)
            backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise TelegramError("Failed request after retries") from last_exc
        raise TelegramError("Failed request after retries (retryable HTTP status)")


def _retry_after(resp: httpx.Response) -> Optional[float]:
    try:
        body = resp.json()
    except ValueError:
        return None
    params = body.get("parameters") if isinstance(body, dict) else None
    if isinstance(params, dict):
        ra = params.get("retry_after")
        if isinstance(ra, (int, float)):
            return float(ra)
    return None


__all__ = [
    "TelegramClient",
    "TelegramError",
    "TelegramApiError",
    "TelegramRateLimitError",
]
