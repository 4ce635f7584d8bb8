"""Class session lifecycle."""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import replace
from typing import Callable, Optional

from django.utils import timezone

from asgiref.sync import sync_to_async

from .errors import SessionAlreadyExists, SessionNotFound
from .stores import SessionStore
from .types import Session, SessionStatus

logger = logging.getLogger(__name__)


class SessionManager:
    """Start and end class sessions; ended sessions are terminal."""

    def __init__(
        self,
        session_store: SessionStore,
        clock: Callable[[], datetime.datetime] = timezone.now,
    ) -> None:
        self._store = session_store
        self._clock = clock

    async def start_session(
        self, class_id: str, beacon_id: str, session_id: Optional[str] = None
    ) -> Session:
        """Start a new session; an existing ``session_id`` raises :class:`SessionAlreadyExists`."""

        if session_id is not None:
            existing = await sync_to_async(self._store.get, thread_sensitive=True)(session_id)
            if existing is not None:
                raise SessionAlreadyExists(session_id)
        session = Session(
            session_id=session_id or uuid.uuid4().hex,
            class_id=class_id,
            beacon_id=beacon_id,
            start_time=self._clock(),
        )
        await sync_to_async(self._store.save, thread_sensitive=True)(session)
        logger.info(
            "Session %s started",
            session.session_id,
            extra={
                "event": "session_started",
                "session_id": session.session_id,
                "class_id": class_id,
            },
        )
        return session

    async def end_session(self, session_id: str) -> Session:
        """End ``session_id``; ending an already-ended session returns it unchanged."""

        session = await self.get_session(session_id)
        if session.status == SessionStatus.ENDED:
            return session
        ended = replace(session, end_time=self._clock(), status=SessionStatus.ENDED)
        await sync_to_async(self._store.save, thread_sensitive=True)(ended)
        logger.info(
            "Session %s ended",
            session_id,
            extra={"event": "session_ended", "session_id": session_id},
        )
        return ended

    async def get_session(self, session_id: str) -> Session:
        session = await sync_to_async(self._store.get, thread_sensitive=True)(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def active_sessions(self) -> list[Session]:
        return await sync_to_async(self._store.list_active, thread_sensitive=True)()


__all__ = ["SessionManager"]
