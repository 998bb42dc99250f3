from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Dict, Hashable, Optional


# Telegram allows roughly 30 requests a second per bot and 20 messages a
# minute into one chat; stay a little under the global figure.
GLOBAL_CALLS_PER_SECOND = 25
CHAT_MESSAGES_PER_MINUTE = 20


class RateLimitError(RuntimeError):
    """Raised when a non-blocking acquire would exceed the rate limit."""


class _Window:
    """Timestamps of the calls granted inside one sliding window."""

    __slots__ = ("max_calls", "per_seconds", "calls")

    def __init__(self, max_calls: int, per_seconds: float) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be > 0")
        if per_seconds <= 0:
            raise ValueError("per_seconds must be > 0")
        self.max_calls = max_calls
        self.per_seconds = per_seconds
        self.calls: Deque[float] = deque()

    def delay(self, now: float) -> float:
        window_start = now - self.per_seconds
        while self.calls and self.calls[0] <= window_start:
            self.calls.popleft()
        if len(self.calls) < self.max_calls:
            return 0.0
        return max(0.0, self.calls[0] + self.per_seconds - now)

    def drained(self, now: float) -> bool:
        return not self.calls or self.calls[-1] <= now - self.per_seconds


class OutboundThrottle:
    """
    Thread-safe throttle for outbound Bot API calls.

    Every call takes a slot from one bot-wide window. Calls addressed to a
    chat (`acquire(chat_id=...)`) also need a slot in that chat's window, so
    a burst of replies into one conversation waits on its own budget instead
    of eating everyone else's. A chat's window is forgotten once it drains.

    The poller thread and the effect workers share one throttle per
    TelegramClient. Not a distributed limiter.
    """

    def __init__(
        self,
        *,
        max_per_second: int = GLOBAL_CALLS_PER_SECOND,
        max_per_chat_minute: int = CHAT_MESSAGES_PER_MINUTE,
        clock=time.monotonic,
        sleep=time.sleep,
    ) -> None:
        if max_per_chat_minute <= 0:
            raise ValueError("max_per_chat_minute must be > 0")
        self._global = _Window(max_per_second, 1.0)
        self._chat_calls = max_per_chat_minute
        self._chats: Dict[Hashable, _Window] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep

    @property
    def tracked_chats(self) -> int:
        with self._lock:
            return len(self._chats)

    def acquire(self, chat_id: Optional[Hashable] = None, *, blocking: bool = True) -> None:
        """
        Take one slot (and one from `chat_id`'s window when given). Blocking
        callers wait in chunks of at most a second; non-blocking callers get
        RateLimitError when either window is full.
        """
        while True:
            with self._lock:
                now = self._clock()
                chat = None
                if chat_id is not None:
                    chat = self._chats.get(chat_id) or _Window(self._chat_calls, 60.0)
                delay = max(self._global.delay(now), chat.delay(now) if chat else 0.0)
                if delay == 0.0:
                    self._global.calls.append(now)
                    if chat is not None:
                        chat.calls.append(now)
                        self._chats[chat_id] = chat
                    self._forget_drained(now)
                    return
            if not blocking:
                raise RateLimitError("rate limit exceeded; no slot available")
            self._sleep(min(delay, 1.0))

    def _forget_drained(self, now: float) -> None:
        for key in [k for k, w in self._chats.items() if w.drained(now)]:
            del self._chats[key]


__all__ = ["OutboundThrottle", "RateLimitError"]
