"""Per-session conversation storage with TTL expiry and per-session locks.

A session is created on its first turn, replaced by every turn, and
destroyed on logout or expiry.  The turn boundary holds ``lock(session_id)``
for the whole read → process → save cycle so two concurrent requests for
one session run one after the other instead of overwriting each other.

An expired session is reported once (``SessionExpiredError``) and then
forgotten; the next request starts a fresh conversation.  Sessions nobody
comes back for are reclaimed by a periodic sweep one TTL after they expire.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from appointment_assistant.config import SESSION_TTL_SECONDS
from appointment_assistant.errors import SessionExpiredError
from appointment_assistant.slots import ConversationState

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def get(self, session_id: str) -> ConversationState | None: ...

    async def save(self, state: ConversationState) -> None: ...

    async def destroy(self, session_id: str) -> bool: ...

    def lock(self, session_id: str) -> AbstractAsyncContextManager[None]: ...


class InMemorySessionStore:
    """Process-local session store.

    Suitable for a single worker.  Sliding expiry: every ``save`` pushes the
    deadline out by ``ttl_seconds``.  Locks live only while a turn holds or
    waits for them.
    """

    def __init__(
        self,
        ttl_seconds: float = SESSION_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        # session_id → (state, expires_at)
        self._sessions: dict[str, tuple[ConversationState, float]] = {}
        # session_id → [lock, holders + waiters]
        self._locks: dict[str, list] = {}
        self._next_sweep = clock() + ttl_seconds

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(session_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[session_id]

    async def get(self, session_id: str) -> ConversationState | None:
        """Return the stored state, ``None`` if unknown.

        Raises:
            SessionExpiredError: the session existed but its TTL elapsed.
        """
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        state, expires_at = entry
        if self._clock() >= expires_at:
            del self._sessions[session_id]
            logger.info("Session %s expired", session_id)
            raise SessionExpiredError(f"Session {session_id} expired")
        return state

    async def save(self, state: ConversationState) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        self._sessions[state.session_id] = (state, now + self._ttl)

    async def destroy(self, session_id: str) -> bool:
        existed = self._sessions.pop(session_id, None) is not None
        if existed:
            logger.info("Session %s destroyed", session_id)
        return existed

    def _sweep(self, now: float) -> None:
        # Recently expired sessions stay so their owner still sees SESSION_EXPIRED
        stale = [sid for sid, (_, expires_at) in self._sessions.items() if now >= expires_at + self._ttl]
        for session_id in stale:
            del self._sessions[session_id]
        if stale:
            logger.info("Reclaimed %d abandoned session(s)", len(stale))
        self._next_sweep = now + self._ttl

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def lock_count(self) -> int:
        return len(self._locks)
