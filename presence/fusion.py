"""Presence fusion: the single writer of the attendance ledger.

Proximity and face verification events arrive independently and in any
order. Every operation is serialised per ``(student_id, session_id)`` and
follows a precedence rule (``ble < quiz < face < manual``) so the final
ledger state does not depend on arrival order. Bad inputs produce a
``rejected`` or ``ignored`` :class:`FusionResult`; nothing here raises for
them.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from django.utils import timezone

from asgiref.sync import sync_to_async

from . import monitoring
from .config import PresenceConfig
from .errors import SessionNotFound
from .stores import AttendanceStore, SessionStore
from .types import (
    AttendanceEvent,
    AttendanceRecord,
    AttendanceStatus,
    PipelineMode,
    ProximityEstimate,
    Session,
    SessionStatus,
    VerificationMethod,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

Key = tuple[str, str]


class FusionAction(str, Enum):
    CREATED = "created"
    UPGRADED = "upgraded"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_CLOSED = "session_closed"
    OUT_OF_RANGE = "out_of_range"
    BEACON_MISMATCH = "beacon_mismatch"
    NOT_VERIFIED = "not_verified"
    WRONG_MODE = "wrong_mode"


# Audit-trail action for a proximity sighting that corroborates an existing
# record without changing it.
CORROBORATED = "corroborated"
DURATION_UPDATED = "duration_updated"

_STATUS_RANK = {
    AttendanceStatus.ABSENT: 0,
    AttendanceStatus.LATE: 1,
    AttendanceStatus.PRESENT: 2,
}


def better_status(current: AttendanceStatus, candidate: AttendanceStatus) -> AttendanceStatus:
    return candidate if _STATUS_RANK[candidate] > _STATUS_RANK[current] else current


def _method_rank(method: Optional[VerificationMethod]) -> int:
    return 0 if method is None else method.rank


@dataclass(frozen=True)
class FusionResult:
    action: FusionAction
    record: Optional[AttendanceRecord] = None
    reason: Optional[RejectionReason] = None

    @property
    def changed(self) -> bool:
        return self.action in {FusionAction.CREATED, FusionAction.UPGRADED, FusionAction.UPDATED}


@dataclass(frozen=True, slots=True)
class AttendancePolicy:
    """Late-arrival and presence-duration policy.

    Events more than ``late_after_seconds`` after the session starts are
    ``late``. Once the session has ended, events inside the grace period are
    still ``late``; anything after it, or after finalisation, is rejected.
    """

    late_after_seconds: int = 900
    grace_period_seconds: int = 300
    presence_gap_seconds: int = 120

    @classmethod
    def from_config(cls, config: PresenceConfig) -> "AttendancePolicy":
        return cls(
            late_after_seconds=config.late_after_seconds,
            grace_period_seconds=config.grace_period_seconds,
            presence_gap_seconds=config.presence_gap_seconds,
        )

    def classify(self, session: Session, at: datetime.datetime) -> Optional[AttendanceStatus]:
        """Return the status an arrival at ``at`` earns, or ``None`` when closed."""

        if session.finalized_at is not None:
            return None
        if session.end_time is not None and at > session.end_time:
            grace = datetime.timedelta(seconds=self.grace_period_seconds)
            if at > session.end_time + grace:
                return None
            return AttendanceStatus.LATE
        if at - session.start_time > datetime.timedelta(seconds=self.late_after_seconds):
            return AttendanceStatus.LATE
        return AttendanceStatus.PRESENT


class PresenceTracker:
    """Accumulate continuous in-range time per key.

    Consecutive sightings closer than ``gap_seconds`` count towards the total;
    a longer silence starts a new stretch without crediting the gap.
    """

    def __init__(self, gap_seconds: int = 120) -> None:
        self.gap_seconds = gap_seconds
        self._last_seen: dict[Key, datetime.datetime] = {}
        self._totals: dict[Key, float] = {}

    def update(self, key: Key, seen_at: datetime.datetime) -> bool:
        """Record a sighting; returns ``True`` for the first sighting of ``key``."""

        last = self._last_seen.get(key)
        if last is None:
            self._last_seen[key] = seen_at
            self._totals[key] = 0.0
            return True
        delta = (seen_at - last).total_seconds()
        if 0 < delta < self.gap_seconds:
            self._totals[key] += delta
        if seen_at > last:
            self._last_seen[key] = seen_at
        return False

    def total_seconds(self, key: Key) -> int:
        return int(self._totals.get(key, 0.0))

    def seen(self, key: Key) -> bool:
        return key in self._last_seen

    def keys_for_session(self, session_id: str) -> list[Key]:
        return [k for k in self._last_seen if k[1] == session_id]

    def pop(self, key: Key) -> int:
        """Forget ``key`` and return the seconds it had accumulated."""

        self._last_seen.pop(key, None)
        return int(self._totals.pop(key, 0.0))

    def forget_session(self, session_id: str) -> None:
        for key in self.keys_for_session(session_id):
            self.pop(key)

    def __len__(self) -> int:
        return len(self._last_seen)


class PresenceFusionEngine:
    """Apply proximity, verification and manual events to the ledger."""

    def __init__(
        self,
        attendance_store: AttendanceStore,
        session_store: SessionStore,
        policy: Optional[AttendancePolicy] = None,
        clock: Callable[[], datetime.datetime] = timezone.now,
    ) -> None:
        self._attendance = attendance_store
        self._sessions = session_store
        self.policy = policy or AttendancePolicy()
        self._clock = clock
        self._tracker = PresenceTracker(self.policy.presence_gap_seconds)
        self._locks: dict[Key, asyncio.Lock] = {}
        self._lock_users: dict[Key, int] = {}

    @contextlib.asynccontextmanager
    async def _key_lock(self, key: Key) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    @staticmethod
    async def _call(func: Callable[..., Any], *args: Any) -> Any:
        return await sync_to_async(func, thread_sensitive=True)(*args)

    def _finish(
        self,
        operation: str,
        key: Key,
        action: FusionAction,
        record: Optional[AttendanceRecord] = None,
        reason: Optional[RejectionReason] = None,
    ) -> FusionResult:
        monitoring.record_fusion_action(operation, action.value)
        promoted = action in {FusionAction.CREATED, FusionAction.UPGRADED}
        log = logger.info if promoted else logger.debug
        log(
            "Fusion %s for %s/%s: %s",
            operation,
            key[0],
            key[1],
            action.value,
            extra={
                "event": "fusion",
                "operation": operation,
                "status": action.value,
                "reason": reason.value if reason else None,
                "session_id": key[1],
            },
        )
        return FusionResult(action=action, record=record, reason=reason)

    async def _write(
        self,
        record: AttendanceRecord,
        action: str,
        method: Optional[VerificationMethod],
        **event_fields: Any,
    ) -> None:
        await self._call(self._attendance.upsert, record)
        await self._append_event(record, action, method, **event_fields)

    async def _append_event(
        self,
        record: AttendanceRecord,
        action: str,
        method: Optional[VerificationMethod],
        **event_fields: Any,
    ) -> None:
        event = AttendanceEvent(
            student_id=record.student_id,
            session_id=record.session_id,
            method=method,
            action=action,
            status=record.status,
            observed_at=self._clock(),
            **event_fields,
        )
        await self._call(self._attendance.append_event, event)

    async def _load_session(
        self, session_id: str, now: datetime.datetime
    ) -> tuple[Optional[Session], Optional[AttendanceStatus], Optional[RejectionReason]]:
        session = await self._call(self._sessions.get, session_id)
        if session is None:
            return None, None, RejectionReason.SESSION_NOT_FOUND
        status = self.policy.classify(session, now)
        if status is None:
            return session, None, RejectionReason.SESSION_CLOSED
        return session, status, None

    async def apply_proximity_event(
        self, student_id: str, session_id: str, estimate: ProximityEstimate
    ) -> FusionResult:
        """Mark ``present`` via ``ble`` when in range and no record exists yet."""

        operation = "proximity"
        key = (student_id, session_id)
        async with self._key_lock(key):
            now = self._clock()
            session, status, reason = await self._load_session(session_id, now)
            if reason is not None:
                return self._finish(operation, key, FusionAction.REJECTED, reason=reason)

            existing = await self._call(self._attendance.get, student_id, session_id)
            if estimate.beacon_id != session.beacon_id:
                return self._finish(
                    operation, key, FusionAction.IGNORED, existing, RejectionReason.BEACON_MISMATCH
                )
            if not estimate.in_range:
                return self._finish(
                    operation, key, FusionAction.IGNORED, existing, RejectionReason.OUT_OF_RANGE
                )

            first_sighting = self._tracker.update(key, estimate.observed_at)
            beacon_fields = {
                "beacon_id": estimate.beacon_id,
                "rssi": estimate.rssi,
                "distance_meters": estimate.distance_meters,
            }
            if existing is not None:
                if first_sighting:
                    await self._append_event(
                        existing, CORROBORATED, VerificationMethod.BLE, **beacon_fields
                    )
                return self._finish(operation, key, FusionAction.UNCHANGED, existing)

            record = AttendanceRecord(
                student_id=student_id,
                session_id=session_id,
                status=status,
                verified_by=VerificationMethod.BLE,
                recorded_at=now,
                updated_at=now,
            )
            await self._write(
                record, FusionAction.CREATED.value, VerificationMethod.BLE, **beacon_fields
            )
            return self._finish(operation, key, FusionAction.CREATED, record)

    async def apply_verification_event(
        self, student_id: str, session_id: str, outcome: VerificationOutcome
    ) -> FusionResult:
        """Upsert a ``face`` record for a verified outcome.

        Face evidence overrides ``ble``/``quiz`` records. An existing ``face``
        record only takes a strictly higher confidence; ``manual`` is never
        overridden. Unverified outcomes leave the ledger untouched.
        """

        operation = "verification"
        key = (student_id, session_id)
        async with self._key_lock(key):
            now = self._clock()
            session, status, reason = await self._load_session(session_id, now)
            if reason is not None:
                return self._finish(operation, key, FusionAction.REJECTED, reason=reason)

            existing = await self._call(self._attendance.get, student_id, session_id)
            if outcome.mode != PipelineMode.VERIFICATION:
                return self._finish(
                    operation, key, FusionAction.IGNORED, existing, RejectionReason.WRONG_MODE
                )
            if not outcome.verified:
                return self._finish(
                    operation, key, FusionAction.IGNORED, existing, RejectionReason.NOT_VERIFIED
                )

            confidence = outcome.confidence
            method = VerificationMethod.FACE
            if existing is None:
                record = AttendanceRecord(
                    student_id=student_id,
                    session_id=session_id,
                    status=status,
                    verified_by=method,
                    recorded_at=now,
                    updated_at=now,
                    confidence=confidence,
                )
                action = FusionAction.CREATED
            elif _method_rank(existing.verified_by) < method.rank:
                record = replace(
                    existing,
                    status=better_status(existing.status, status),
                    verified_by=method,
                    confidence=confidence,
                    updated_at=now,
                )
                action = FusionAction.UPGRADED
            elif existing.verified_by == method and confidence > (existing.confidence or 0.0):
                record = replace(
                    existing,
                    status=better_status(existing.status, status),
                    confidence=confidence,
                    updated_at=now,
                )
                action = FusionAction.UPDATED
            else:
                return self._finish(operation, key, FusionAction.UNCHANGED, existing)

            await self._write(record, action.value, method, confidence=confidence)
            return self._finish(operation, key, action, record)

    async def apply_manual_mark(
        self, student_id: str, session_id: str, status: AttendanceStatus
    ) -> FusionResult:
        """Staff override; applies even after the session has been finalised."""

        operation = "manual"
        key = (student_id, session_id)
        status = AttendanceStatus(status)
        method = VerificationMethod.MANUAL
        async with self._key_lock(key):
            now = self._clock()
            session = await self._call(self._sessions.get, session_id)
            if session is None:
                return self._finish(
                    operation, key, FusionAction.REJECTED, reason=RejectionReason.SESSION_NOT_FOUND
                )

            existing = await self._call(self._attendance.get, student_id, session_id)
            if existing is None:
                record = AttendanceRecord(
                    student_id=student_id,
                    session_id=session_id,
                    status=status,
                    verified_by=method,
                    recorded_at=now,
                    updated_at=now,
                )
                action = FusionAction.CREATED
            elif existing.verified_by == method and existing.status == status:
                return self._finish(operation, key, FusionAction.UNCHANGED, existing)
            else:
                record = replace(
                    existing, status=status, verified_by=method, confidence=None, updated_at=now
                )
                action = (
                    FusionAction.UPDATED
                    if existing.verified_by == method
                    else FusionAction.UPGRADED
                )

            await self._write(record, action.value, method)
            return self._finish(operation, key, action, record)

    async def finalize_session(
        self, session_id: str, roster: Iterable[str] = ()
    ) -> list[AttendanceRecord]:
        """Close the grace window and settle the ledger for ``session_id``.

        Ends the session if it is still active, writes tracked presence time
        into ``duration_seconds`` and creates ``absent`` records for roster
        students with no record. Finalising twice is a no-op.
        """

        session = await self._call(self._sessions.get, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.finalized_at is not None:
            return await self.ledger(session_id)

        now = self._clock()
        session = replace(
            session,
            end_time=session.end_time or now,
            status=SessionStatus.ENDED,
            finalized_at=now,
        )
        await self._call(self._sessions.save, session)

        await self._flush_durations(session_id, now)

        records = await self._call(self._attendance.list_for_session, session_id)
        known = {record.student_id for record in records}
        absent_count = 0
        for student_id in dict.fromkeys(roster):
            if student_id in known:
                continue
            key = (student_id, session_id)
            async with self._key_lock(key):
                if await self._call(self._attendance.get, *key) is not None:
                    continue
                record = AttendanceRecord(
                    student_id=student_id,
                    session_id=session_id,
                    status=AttendanceStatus.ABSENT,
                    verified_by=None,
                    recorded_at=now,
                    updated_at=now,
                )
                await self._write(record, FusionAction.CREATED.value, None)
                absent_count += 1

        self._tracker.forget_session(session_id)
        logger.info(
            "Session %s finalised",
            session_id,
            extra={
                "event": "session_finalized",
                "session_id": session_id,
                "absent_created": absent_count,
            },
        )
        return await self.ledger(session_id)

    async def release_session(self, session_id: str) -> None:
        """Write tracked presence time for an ended session and drop its tracker state.

        Time already written is kept; later sightings in the grace window add
        to it when the session is finalised.
        """

        await self._flush_durations(session_id, self._clock())

    async def _flush_durations(self, session_id: str, now: datetime.datetime) -> None:
        for key in self._tracker.keys_for_session(session_id):
            async with self._key_lock(key):
                tracked = self._tracker.pop(key)
                if tracked <= 0:
                    continue
                current = await self._call(self._attendance.get, *key)
                if current is None:
                    continue
                updated = replace(
                    current,
                    duration_seconds=current.duration_seconds + tracked,
                    updated_at=now,
                )
                await self._write(updated, DURATION_UPDATED, current.verified_by)

    async def ledger(self, session_id: str) -> list[AttendanceRecord]:
        records = await self._call(self._attendance.list_for_session, session_id)
        return sorted(records, key=lambda r: r.student_id)

    async def get_record(self, student_id: str, session_id: str) -> Optional[AttendanceRecord]:
        return await self._call(self._attendance.get, student_id, session_id)

    async def audit_trail(self, student_id: str, session_id: str) -> list[AttendanceEvent]:
        return await self._call(self._attendance.events_for, student_id, session_id)

    @property
    def tracker(self) -> PresenceTracker:
        return self._tracker

    def tracked_duration(self, student_id: str, session_id: str) -> int:
        return self._tracker.total_seconds((student_id, session_id))


__all__ = [
    "AttendancePolicy",
    "CORROBORATED",
    "DURATION_UPDATED",
    "FusionAction",
    "FusionResult",
    "PresenceFusionEngine",
    "PresenceTracker",
    "RejectionReason",
    "better_status",
]
