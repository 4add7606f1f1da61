from __future__ import annotations

import asyncio
from threading import Lock
from typing import Callable

import structlog

from wsreplay.session.replay_session import ReplaySession, SessionKey

log = structlog.get_logger()

SessionFactory = Callable[[SessionKey], ReplaySession]


class SessionRegistry:
    """
    Maps a requested range to the replay session currently collecting it.

    - get_or_create is a single non-suspending step, so two connections for the
      same key can never end up in two sessions
    - an entry is removed exactly once, when its session's `finished` resolves
    """

    def __init__(self, *, factory: SessionFactory) -> None:
        self._factory = factory
        self._lock = Lock()
        self._sessions: dict[SessionKey, ReplaySession] = {}

    def get_or_create(self, key: SessionKey) -> ReplaySession:
        with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                return session

            session = self._factory(key)
            self._sessions[key] = session
            session.finished.add_done_callback(
                lambda _: self._remove(key=key, session=session)
            )

        log.debug("registry.session_registered", session_key=str(key), sessions=len(self._sessions))
        return session

    def get(self, key: SessionKey) -> ReplaySession | None:
        with self._lock:
            return self._sessions.get(key)

    def sessions(self) -> list[ReplaySession]:
        with self._lock:
            return list(self._sessions.values())

    async def wait_idle(self) -> None:
        """
        Wait until every session registered right now has finished.
        """
        pending = [s.wait_finished() for s in self.sessions()]
        if pending:
            await asyncio.gather(*pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._sessions

    def _remove(self, *, key: SessionKey, session: ReplaySession) -> None:
        with self._lock:
            # Only drop the key if it still belongs to the finishing session
            if self._sessions.get(key) is session:
                del self._sessions[key]

        log.debug("registry.session_removed", session_key=str(key))
