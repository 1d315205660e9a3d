"""Per-session refusal state with expiry."""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RefusalState:
    reason: str
    created_at: float = field(default_factory=time.monotonic)


@runtime_checkable
class SessionStore(Protocol):
    def get(self, session_id: str) -> RefusalState | None: ...
    def put(self, session_id: str, reason: str) -> None: ...
    def delete(self, session_id: str) -> None: ...
    def sweep(self) -> int: ...
    def __len__(self) -> int: ...


class InMemorySessionStore:
    """Process-local store; entries older than ``ttl_seconds`` read as absent."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._states: dict[str, RefusalState] = {}
        self._lock = threading.Lock()

    def _expired(self, state: RefusalState) -> bool:
        return self._clock() - state.created_at > self.ttl_seconds

    def get(self, session_id: str) -> RefusalState | None:
        with self._lock:
            state = self._states.get(session_id)
            if state is not None and self._expired(state):
                del self._states[session_id]
                return None
            return state

    def put(self, session_id: str, reason: str) -> None:
        with self._lock:
            self._states[session_id] = RefusalState(reason=reason, created_at=self._clock())

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._states.pop(session_id, None)

    def sweep(self) -> int:
        with self._lock:
            stale = [sid for sid, st in self._states.items() if self._expired(st)]
            for sid in stale:
                del self._states[sid]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


class SessionSweeper:
    """Background task that sweeps expired session state on an interval."""

    def __init__(self, store: SessionStore, interval_seconds: float = 60.0) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            removed = self.store.sweep()
            if removed:
                logger.debug("refusal_states_swept", removed=removed)
