"""Per-session attendance summaries derived from the ledger and audit trail."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from .types import AttendanceEvent, AttendanceRecord, AttendanceStatus, VerificationMethod

METHOD_BUCKETS = ("ble+face", "ble_only", "face_only", "quiz", "manual")


@dataclass(slots=True)
class SessionSummary:
    """Container for summarised attendance of one session."""

    session_id: Optional[str]
    total_students: int
    present: int
    late: int
    absent: int
    attendance_rate: float
    average_duration_seconds: float
    method_breakdown: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "total_students": self.total_students,
            "present": self.present,
            "late": self.late,
            "absent": self.absent,
            "attendance_rate": self.attendance_rate,
            "average_duration_seconds": self.average_duration_seconds,
            "method_breakdown": dict(self.method_breakdown),
        }


def _method_bucket(
    record: AttendanceRecord, methods_seen: set[VerificationMethod]
) -> Optional[str]:
    if record.verified_by == VerificationMethod.MANUAL:
        return "manual"
    if record.verified_by == VerificationMethod.QUIZ:
        return "quiz"
    if record.verified_by == VerificationMethod.FACE:
        return "ble+face" if VerificationMethod.BLE in methods_seen else "face_only"
    if record.verified_by == VerificationMethod.BLE:
        return "ble_only"
    return None


def summarize_session(
    records: Iterable[AttendanceRecord],
    events: Iterable[AttendanceEvent] = (),
    roster: Optional[Iterable[str]] = None,
) -> SessionSummary:
    """Summarise attendance for one session.

    ``present`` and ``late`` students both count as attended. Roster students
    without a record count as absent, so the rate can be computed before the
    session is finalised. The method breakdown credits ``ble+face`` when the
    audit trail shows a beacon sighting for a face-verified student.
    """

    records = list(records)
    session_ids = {record.session_id for record in records}
    session_id = next(iter(session_ids)) if len(session_ids) == 1 else None

    methods_by_student: Dict[str, set[VerificationMethod]] = defaultdict(set)
    for event in events:
        if event.method is not None:
            methods_by_student[event.student_id].add(event.method)

    by_student = {record.student_id: record for record in records}
    students = set(by_student)
    if roster is not None:
        students |= set(roster)

    present = sum(1 for r in records if r.status == AttendanceStatus.PRESENT)
    late = sum(1 for r in records if r.status == AttendanceStatus.LATE)
    absent = len(students) - present - late

    attended = [r for r in records if r.status != AttendanceStatus.ABSENT]
    average_duration = (
        sum(r.duration_seconds for r in attended) / len(attended) if attended else 0.0
    )

    breakdown = {bucket: 0 for bucket in METHOD_BUCKETS}
    for record in attended:
        bucket = _method_bucket(record, methods_by_student.get(record.student_id, set()))
        if bucket is not None:
            breakdown[bucket] += 1

    total = len(students)
    return SessionSummary(
        session_id=session_id,
        total_students=total,
        present=present,
        late=late,
        absent=absent,
        attendance_rate=round((present + late) / total * 100.0, 2) if total else 0.0,
        average_duration_seconds=round(average_duration, 2),
        method_breakdown=breakdown,
    )


__all__ = ["METHOD_BUCKETS", "SessionSummary", "summarize_session"]
