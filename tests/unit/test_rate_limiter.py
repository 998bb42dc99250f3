from __future__ import annotations

import pytest

from common.rate_limiter import OutboundThrottle, RateLimitError


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t
        self.slept = []

    def __call__(self) -> float:  # acts like time.monotonic
        return self.t

    def sleep(self, dt: float) -> None:
        # Sleeping just moves the fake clock forward
        self.slept.append(dt)
        self.t += dt


def _throttle(clock: FakeClock, **kwargs) -> OutboundThrottle:
    return OutboundThrottle(clock=clock, sleep=clock.sleep, **kwargs)


def test_global_window_is_shared_by_all_calls():
    clock = FakeClock()
    rl = _throttle(clock, max_per_second=2)

    rl.acquire()
    rl.acquire(chat_id=1)
    with pytest.raises(RateLimitError):
        rl.acquire(chat_id=2, blocking=False)

    clock.t += 1.0
    rl.acquire(chat_id=2, blocking=False)


def test_chat_budget_only_holds_back_that_chat():
    clock = FakeClock()
    rl = _throttle(clock, max_per_second=100, max_per_chat_minute=2)

    rl.acquire(chat_id=7)
    rl.acquire(chat_id=7)
    with pytest.raises(RateLimitError):
        rl.acquire(chat_id=7, blocking=False)

    # Other chats and chat-less calls are unaffected
    rl.acquire(chat_id=8, blocking=False)
    rl.acquire(blocking=False)


def test_blocking_waits_for_the_chat_window_to_slide():
    clock = FakeClock()
    rl = _throttle(clock, max_per_second=100, max_per_chat_minute=1)

    rl.acquire(chat_id=7)
    rl.acquire(chat_id=7)

    # Sleeps are chunked to at most one second
    assert clock.slept == [1.0] * 60
    assert clock.t == 60.0


def test_drained_chat_windows_are_forgotten():
    clock = FakeClock()
    rl = _throttle(clock, max_per_second=1000)

    for chat_id in range(50):
        rl.acquire(chat_id=chat_id)
    assert rl.tracked_chats == 50

    clock.t += 61.0
    rl.acquire(chat_id="other")
    assert rl.tracked_chats == 1


def test_invalid_configuration():
    with pytest.raises(ValueError):
        OutboundThrottle(max_per_second=0)
    with pytest.raises(ValueError):
        OutboundThrottle(max_per_chat_minute=0)
