"""Storage contracts consumed by the engine and their in-memory implementations."""

from __future__ import annotations

import threading
from typing import Optional, Protocol, runtime_checkable

from .types import AttendanceEvent, AttendanceRecord, FaceEmbedding, Session


@runtime_checkable
class ReferenceStore(Protocol):
    def get_reference_embedding(self, student_id: str) -> Optional[FaceEmbedding]: ...

    def put_reference_embedding(self, student_id: str, embedding: FaceEmbedding) -> None: ...


@runtime_checkable
class AttendanceStore(Protocol):
    def get(self, student_id: str, session_id: str) -> Optional[AttendanceRecord]: ...

    def upsert(self, record: AttendanceRecord) -> None: ...

    def list_for_session(self, session_id: str) -> list[AttendanceRecord]: ...

    def append_event(self, event: AttendanceEvent) -> None: ...

    def events_for(self, student_id: str, session_id: str) -> list[AttendanceEvent]: ...

    def events_for_session(self, session_id: str) -> list[AttendanceEvent]: ...


@runtime_checkable
class SessionStore(Protocol):
    def get(self, session_id: str) -> Optional[Session]: ...

    def save(self, session: Session) -> None: ...

    def list_active(self) -> list[Session]: ...


class InMemoryReferenceStore:
    def __init__(self) -> None:
        self._references: dict[str, FaceEmbedding] = {}
        self._lock = threading.Lock()

    def get_reference_embedding(self, student_id: str) -> Optional[FaceEmbedding]:
        with self._lock:
            return self._references.get(student_id)

    def put_reference_embedding(self, student_id: str, embedding: FaceEmbedding) -> None:
        with self._lock:
            self._references[student_id] = embedding

    def __len__(self) -> int:
        with self._lock:
            return len(self._references)


class InMemoryAttendanceStore:
    """Keyed ledger plus append-only audit trail."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], AttendanceRecord] = {}
        self._events: list[AttendanceEvent] = []
        self._lock = threading.Lock()

    def get(self, student_id: str, session_id: str) -> Optional[AttendanceRecord]:
        with self._lock:
            return self._records.get((student_id, session_id))

    def upsert(self, record: AttendanceRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    def list_for_session(self, session_id: str) -> list[AttendanceRecord]:
        with self._lock:
            return [r for (_, sid), r in self._records.items() if sid == session_id]

    def append_event(self, event: AttendanceEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events_for(self, student_id: str, session_id: str) -> list[AttendanceEvent]:
        with self._lock:
            return [
                e for e in self._events if e.student_id == student_id and e.session_id == session_id
            ]

    def events_for_session(self, session_id: str) -> list[AttendanceEvent]:
        with self._lock:
            return [e for e in self._events if e.session_id == session_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def save(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def list_active(self) -> list[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.is_active]


__all__ = [
    "AttendanceStore",
    "InMemoryAttendanceStore",
    "InMemoryReferenceStore",
    "InMemorySessionStore",
    "ReferenceStore",
    "SessionStore",
]
