"""Django ORM implementations of the store contracts.

These are synchronous; the engine reaches them through ``sync_to_async``.
Reference embeddings are encrypted with the face data Fernet key set.
"""

from __future__ import annotations

import logging
from typing import Optional

from django.db import transaction
from django.utils import timezone

from src.common.crypto import EmbeddingEncryption

from . import models
from .types import (
    AttendanceEvent,
    AttendanceRecord,
    AttendanceStatus,
    FaceEmbedding,
    Session,
    SessionStatus,
    VerificationMethod,
)

logger = logging.getLogger(__name__)


def _method(value: Optional[str]) -> Optional[VerificationMethod]:
    return VerificationMethod(value) if value else None


def _to_record(row: models.Attendance) -> AttendanceRecord:
    return AttendanceRecord(
        student_id=row.student_id,
        session_id=row.session_id,
        status=AttendanceStatus(row.status),
        verified_by=_method(row.verified_by),
        duration_seconds=row.duration_seconds,
        recorded_at=row.recorded_at,
        updated_at=row.updated_at,
        confidence=row.confidence,
    )


def _to_event(row: models.AttendanceEvent) -> AttendanceEvent:
    return AttendanceEvent(
        student_id=row.student_id,
        session_id=row.session_id,
        method=_method(row.method),
        action=row.action,
        status=AttendanceStatus(row.status),
        observed_at=row.observed_at,
        confidence=row.confidence,
        beacon_id=row.beacon_id,
        rssi=row.rssi,
        distance_meters=row.distance_meters,
    )


def _to_session(row: models.ClassSession) -> Session:
    return Session(
        session_id=row.session_id,
        class_id=row.class_id,
        beacon_id=row.beacon_id,
        start_time=row.start_time,
        end_time=row.end_time,
        status=SessionStatus(row.status),
        finalized_at=row.finalized_at,
    )


class OrmAttendanceStore:
    def get(self, student_id: str, session_id: str) -> Optional[AttendanceRecord]:
        row = models.Attendance.objects.filter(
            student_id=student_id, session_id=session_id
        ).first()
        return _to_record(row) if row is not None else None

    def upsert(self, record: AttendanceRecord) -> None:
        models.Attendance.objects.update_or_create(
            student_id=record.student_id,
            session_id=record.session_id,
            defaults={
                "status": record.status.value,
                "verified_by": record.verified_by.value if record.verified_by else None,
                "duration_seconds": record.duration_seconds,
                "confidence": record.confidence,
                "recorded_at": record.recorded_at,
                "updated_at": record.updated_at,
            },
        )

    def list_for_session(self, session_id: str) -> list[AttendanceRecord]:
        return [_to_record(row) for row in models.Attendance.objects.filter(session_id=session_id)]

    def append_event(self, event: AttendanceEvent) -> None:
        models.AttendanceEvent.objects.create(
            student_id=event.student_id,
            session_id=event.session_id,
            method=event.method.value if event.method else None,
            action=event.action,
            status=event.status.value,
            observed_at=event.observed_at,
            confidence=event.confidence,
            beacon_id=event.beacon_id,
            rssi=event.rssi,
            distance_meters=event.distance_meters,
        )

    def events_for(self, student_id: str, session_id: str) -> list[AttendanceEvent]:
        rows = models.AttendanceEvent.objects.filter(student_id=student_id, session_id=session_id)
        return [_to_event(row) for row in rows]

    def events_for_session(self, session_id: str) -> list[AttendanceEvent]:
        return [
            _to_event(row) for row in models.AttendanceEvent.objects.filter(session_id=session_id)
        ]


class OrmSessionStore:
    def get(self, session_id: str) -> Optional[Session]:
        row = models.ClassSession.objects.filter(session_id=session_id).first()
        return _to_session(row) if row is not None else None

    def save(self, session: Session) -> None:
        models.ClassSession.objects.update_or_create(
            session_id=session.session_id,
            defaults={
                "class_id": session.class_id,
                "beacon_id": session.beacon_id,
                "start_time": session.start_time,
                "end_time": session.end_time,
                "status": session.status.value,
                "finalized_at": session.finalized_at,
            },
        )

    def list_active(self) -> list[Session]:
        rows = models.ClassSession.objects.filter(status=SessionStatus.ACTIVE.value)
        return [_to_session(row) for row in rows]


class OrmReferenceStore:
    """Reference embeddings encrypted at rest; re-enrollment replaces the row."""

    def __init__(self, encryption: Optional[EmbeddingEncryption] = None) -> None:
        self._encryption = encryption or EmbeddingEncryption()

    def get_reference_embedding(self, student_id: str) -> Optional[FaceEmbedding]:
        row = models.FaceReference.objects.filter(student_id=student_id).first()
        if row is None:
            return None
        vector = self._encryption.decrypt_embedding(bytes(row.embedding_encrypted))
        return FaceEmbedding(
            vector=vector,
            generation_confidence=row.generation_confidence,
            captured_at=row.captured_at,
        )

    def put_reference_embedding(self, student_id: str, embedding: FaceEmbedding) -> None:
        token = self._encryption.encrypt_embedding(embedding.vector)
        models.FaceReference.objects.update_or_create(
            student_id=student_id,
            defaults={
                "embedding_encrypted": token,
                "generation_confidence": embedding.generation_confidence,
                "captured_at": embedding.captured_at,
                "enrolled_at": timezone.now(),
            },
        )
        logger.info(
            "Stored encrypted reference embedding",
            extra={"event": "reference_stored", "student_id": student_id},
        )

    def rotate_keys(self) -> int:
        """Re-encrypt every stored reference under the primary key."""

        rotated = 0
        with transaction.atomic():
            for row in models.FaceReference.objects.select_for_update():
                row.embedding_encrypted = self._encryption.rotate(bytes(row.embedding_encrypted))
                row.save(update_fields=["embedding_encrypted"])
                rotated += 1
        return rotated


__all__ = ["OrmAttendanceStore", "OrmReferenceStore", "OrmSessionStore"]
