"""Registry of live transcoding sessions."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import NamedTuple, Protocol

import logging
import pathlib
import shutil
import threading
import time

from transcode_session import SESSION_DIR_PREFIX, TranscodingSession


log = logging.getLogger(__name__)


class SessionKey(NamedTuple):
    media_path: str
    representation_id: str
    start_segment_index: int


class ReapPolicy(Protocol):
    def __call__(self, session: TranscodingSession, now: float) -> bool: ...


@dataclass(frozen=True, slots=True)
class IdlePolicy:
    """Stale when nobody asked the session for anything in max_idle_sec."""

    max_idle_sec: float

    def __call__(self, session: TranscodingSession, now: float) -> bool:
        return now - session.last_access > self.max_idle_sec


class SessionRegistry:
    """Maps session keys to sessions, creating each at most once.

    The registry is the sole owner of every session it holds: only it
    destroys them (explicitly, on reap, or on shutdown).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[SessionKey, TranscodingSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def keys(self) -> list[SessionKey]:
        with self._lock:
            return list(self._sessions)

    def get(self, key: SessionKey) -> TranscodingSession | None:
        with self._lock:
            return self._sessions.get(key)

    def get_or_create(
        self,
        key: SessionKey,
        factory: Callable[[], TranscodingSession],
    ) -> tuple[TranscodingSession, bool]:
        """Return (session, created).

        Lookup and construction happen in one critical section so concurrent
        first requests run the factory exactly once. Starting the session is
        left to the caller, outside the lock.
        """
        with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                return session, False
            session = factory()
            self._sessions[key] = session
        log.info("Registered session %s for %s", session.name, key)
        return session, True

    def remove(self, key: SessionKey, expected: TranscodingSession | None = None) -> bool:
        """Unregister and destroy a session. Returns False if unknown.

        With `expected`, only that exact session is removed, so a caller
        holding a stale reference cannot evict its replacement.
        """
        with self._lock:
            session = self._sessions.get(key)
            if session is None or (expected is not None and session is not expected):
                return False
            del self._sessions[key]
        session.destroy()
        return True

    def destroy_all(self) -> int:
        """Destroy every session (server shutdown)."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.destroy()
        if sessions:
            log.info("Shutdown: destroyed %d transcoding sessions", len(sessions))
        return len(sessions)

    def reap(self, policy: ReapPolicy, now: float | None = None) -> int:
        """Destroy sessions the policy considers stale. Returns count destroyed."""
        now = time.time() if now is None else now
        with self._lock:
            stale = [(k, s) for k, s in self._sessions.items() if policy(s, now)]
            for key, _ in stale:
                del self._sessions[key]
        for key, session in stale:
            log.info("Reaping idle session %s for %s", session.name, key)
            session.destroy()
        return len(stale)

    def sweep_orphans(self, base_dir: str | pathlib.Path) -> int:
        """Remove session directories not owned by a live session.

        Directories left behind by an ungraceful exit look exactly like
        in-progress output, so this runs at startup.
        """
        with self._lock:
            owned = {s.output_dir.resolve() for s in self._sessions.values()}
        removed = 0
        for d in pathlib.Path(base_dir).glob(f"{SESSION_DIR_PREFIX}*"):
            if not d.is_dir() or d.resolve() in owned:
                continue
            shutil.rmtree(d, ignore_errors=True)
            removed += 1
        if removed:
            log.info("Startup cleanup: removed %d orphaned session dirs", removed)
        return removed
