from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from state.registry import PackRegistry

from .effects import EffectRunner
from .states import (
    IDLE,
    Completion,
    ConversationState,
    Effect,
    Event,
    Reply,
    Transition,
    is_asset_event,
    transition,
)


logger = logging.getLogger(__name__)

LOST_COMPLETION_TEXT = "Something went wrong while finishing your request. Send the picture again to start over."


@dataclass
class _Session:
    state: ConversationState = IDLE
    flow_id: int = 0
    in_flight: int = 0  # effects dispatched whose completion has not come back
    users: int = 0  # threads holding or waiting for `lock`
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def disposable(self) -> bool:
        return self.state == IDLE and self.in_flight == 0 and self.users == 0


class ConversationEngine:
    """
    Drives `transition` for every session.

    - Each session is mutated under its own lock; sessions never block each other.
    - The owner's pack list is read before the session lock is taken, and
      effects run after it is released: on `executor` when given, inline
      otherwise (tests). Their completions come back through `handle`.
    - A completion whose flow was superseded by a newer asset only gets its
      outcome notice delivered; the newer flow's state is left alone.
    - A session that is back in `Idle` with no effect outstanding is
      dropped, lock included; the next event starts from a fresh one.
    """

    def __init__(
        self,
        registry: PackRegistry,
        runner: EffectRunner,
        send: Callable[[Reply], None],
        *,
        executor: Optional[Executor] = None,
    ) -> None:
        self._registry = registry
        self._runner = runner
        self._send = send
        self._executor = executor
        self._sessions: Dict[int, _Session] = {}
        self._guard = threading.Lock()

    @property
    def active_sessions(self) -> int:
        with self._guard:
            return len(self._sessions)

    def state_of(self, session_id: int) -> ConversationState:
        with self._checkout(session_id) as session:
            return session.state

    def handle(self, event: Event) -> None:
        self._apply(event, self._registry.list_packs(event.owner_id))

    def _apply(self, event: Event, packs: List[str]) -> None:
        with self._checkout(event.session_id) as session:
            if is_asset_event(event):
                session.flow_id += 1
            result = transition(session.state, event, packs, flow_id=session.flow_id)
            if isinstance(event, Completion):
                session.in_flight -= 1
                if event.flow_id != session.flow_id:
                    logger.info("Session %s moved on; dropping state change from flow %s", event.session_id, event.flow_id)
                    result = Transition(session.state, result.replies[:1])
            session.state = result.state
            session.in_flight += len(result.effects)

        for reply in result.replies:
            self._send(reply)
        for effect in result.effects:
            self._dispatch(effect)

    def _dispatch(self, effect: Effect) -> None:
        if self._executor is None:
            self._run(effect)
        else:
            self._executor.submit(self._run, effect)

    def _run(self, effect: Effect) -> None:
        try:
            completion = self._runner.run(effect)
        except Exception:
            logger.exception("Effect %s failed unexpectedly", type(effect).__name__)
            completion = self._runner.failure_for(effect, "unexpected internal error")
        try:
            packs = self._registry.list_packs(completion.owner_id)
        except Exception:
            logger.exception("Could not load packs to apply %s for session %s", type(completion).__name__, completion.session_id)
            self._abandon(completion)
            return
        try:
            self._apply(completion, packs)
        except Exception:
            logger.exception("Failed to deliver %s for session %s", type(completion).__name__, completion.session_id)

    def _abandon(self, completion: Completion) -> None:
        """Settle a completion whose outcome could not be worked out."""
        with self._checkout(completion.session_id) as session:
            session.in_flight -= 1
            if completion.flow_id == session.flow_id:
                session.state = IDLE
        self._send(Reply(completion.session_id, LOST_COMPLETION_TEXT))

    @contextmanager
    def _checkout(self, session_id: int) -> Iterator[_Session]:
        with self._guard:
            session = self._sessions.get(session_id)
            if session is None:
                session = self._sessions[session_id] = _Session()
            session.users += 1
        try:
            with session.lock:
                yield session
        finally:
            with self._guard:
                session.users -= 1
                if session.disposable:
                    del self._sessions[session_id]


__all__ = ["ConversationEngine"]
