"""Domain types shared by the proximity, biometric and fusion components."""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from django.utils import timezone

import numpy as np

EMBEDDING_DIMENSION = 128


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"


class VerificationMethod(str, Enum):
    """Evidence that produced an attendance record, ordered by trust tier."""

    BLE = "ble"
    QUIZ = "quiz"
    FACE = "face"
    MANUAL = "manual"

    @property
    def rank(self) -> int:
        return _METHOD_RANK[self]


_METHOD_RANK = {
    VerificationMethod.BLE: 1,
    VerificationMethod.QUIZ: 2,
    VerificationMethod.FACE: 3,
    VerificationMethod.MANUAL: 4,
}


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class PipelineMode(str, Enum):
    VERIFICATION = "verification"
    ENROLLMENT = "enrollment"


class PipelineStage(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    LIVENESS_CHECKING = "liveness_checking"
    EMBEDDING_GENERATION = "embedding_generation"
    COMPLETE = "complete"
    FAILED = "failed"


class ScannerState(str, Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTED = "connected"


class ChallengeType(str, Enum):
    """Liveness checks, listed in the order the pipeline runs them."""

    FACE_QUALITY = "face_quality"
    BLINK = "blink"
    HEAD_MOVEMENT = "head_movement"


LIVENESS_CHALLENGE_ORDER = (
    ChallengeType.FACE_QUALITY,
    ChallengeType.BLINK,
    ChallengeType.HEAD_MOVEMENT,
)


@dataclass(frozen=True)
class BeaconReading:
    """A single radio advertisement heard while scanning."""

    beacon_id: str
    rssi: int
    observed_at: datetime.datetime = field(default_factory=timezone.now)


@dataclass(frozen=True)
class ProximityEstimate:
    beacon_id: str
    distance_meters: float
    in_range: bool
    rssi: int
    observed_at: datetime.datetime


@dataclass(frozen=True, eq=False)
class FaceEmbedding:
    """Fixed-length biometric vector; the array is read-only once constructed."""

    vector: np.ndarray
    generation_confidence: float
    captured_at: datetime.datetime = field(default_factory=timezone.now)

    def __post_init__(self) -> None:
        vector = np.array(self.vector, dtype=np.float64)
        if vector.ndim != 1 or vector.shape[0] != EMBEDDING_DIMENSION:
            raise ValueError(
                f"embedding must be a flat vector of length {EMBEDDING_DIMENSION}, "
                f"got shape {vector.shape}"
            )
        if not np.all(np.isfinite(vector)):
            raise ValueError("embedding contains non-finite values")
        if not 0.0 <= float(self.generation_confidence) <= 1.0:
            raise ValueError("generation_confidence must be within [0, 1]")
        vector.setflags(write=False)
        object.__setattr__(self, "vector", vector)
        object.__setattr__(self, "generation_confidence", float(self.generation_confidence))


@dataclass(frozen=True)
class LivenessCheckResult:
    """Result of one liveness challenge with confidence scoring."""

    challenge_type: ChallengeType
    passed: bool
    confidence: float
    frames_analyzed: int = 0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LivenessChecks:
    """Aggregated liveness evidence; ``is_live`` needs all three checks."""

    face_quality: bool
    blink_detected: bool
    head_movement: bool
    liveness_confidence: float
    results: tuple[LivenessCheckResult, ...] = ()

    @property
    def is_live(self) -> bool:
        return self.face_quality and self.blink_detected and self.head_movement

    @classmethod
    def failed(cls) -> "LivenessChecks":
        return cls(
            face_quality=False,
            blink_detected=False,
            head_movement=False,
            liveness_confidence=0.0,
        )


@dataclass(frozen=True)
class VerificationOutcome:
    mode: PipelineMode
    verified: bool
    similarity: float
    liveness: LivenessChecks
    embedding: Optional[FaceEmbedding] = None

    @property
    def confidence(self) -> float:
        if math.isnan(self.similarity):
            return 0.0
        return min(self.liveness.liveness_confidence, self.similarity)


@dataclass(frozen=True)
class AttendanceRecord:
    student_id: str
    session_id: str
    status: AttendanceStatus
    verified_by: Optional[VerificationMethod]
    duration_seconds: int = 0
    recorded_at: datetime.datetime = field(default_factory=timezone.now)
    updated_at: datetime.datetime = field(default_factory=timezone.now)
    confidence: Optional[float] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.student_id, self.session_id)


@dataclass(frozen=True)
class Session:
    session_id: str
    class_id: str
    beacon_id: str
    start_time: datetime.datetime
    end_time: Optional[datetime.datetime] = None
    status: SessionStatus = SessionStatus.ACTIVE
    finalized_at: Optional[datetime.datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


@dataclass(frozen=True)
class AttendanceEvent:
    """Audit-trail entry written for every ledger mutation."""

    student_id: str
    session_id: str
    method: Optional[VerificationMethod]
    action: str
    status: AttendanceStatus
    observed_at: datetime.datetime
    confidence: Optional[float] = None
    beacon_id: Optional[str] = None
    rssi: Optional[int] = None
    distance_meters: Optional[float] = None


__all__ = [
    "AttendanceEvent",
    "AttendanceRecord",
    "AttendanceStatus",
    "BeaconReading",
    "ChallengeType",
    "EMBEDDING_DIMENSION",
    "FaceEmbedding",
    "LIVENESS_CHALLENGE_ORDER",
    "LivenessCheckResult",
    "LivenessChecks",
    "PipelineMode",
    "PipelineStage",
    "ProximityEstimate",
    "ScannerState",
    "Session",
    "SessionStatus",
    "VerificationMethod",
    "VerificationOutcome",
]
