"""Composition root wiring the presence components together.

Everything is built from explicit collaborators; there are no module-level
scanner or service singletons. Callers own the lifecycle through
:meth:`PresenceService.startup` and :meth:`PresenceService.shutdown` (or
``async with``).
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from django.utils import timezone

from asgiref.sync import sync_to_async

from .analytics import SessionSummary, summarize_session
from .config import PresenceConfig, get_presence_config
from .decision import VerificationDecisionMaker, VerificationThresholds
from .embedding import DeepFaceEmbeddingModel, EmbeddingModel, SimilarityScorer
from .enrollment import EnrollmentPipeline, EnrollmentResult
from .fusion import AttendancePolicy, FusionResult, PresenceFusionEngine
from .liveness import FrameLivenessChecker, LivenessChecker
from .pipeline import CameraSource, LivenessPipeline, describe_outcome
from .proximity import ProximityScanner, RadioSource
from .sessions import SessionManager
from .stores import (
    AttendanceStore,
    InMemoryAttendanceStore,
    InMemoryReferenceStore,
    InMemorySessionStore,
    ReferenceStore,
    SessionStore,
)
from .streams import EventStream
from .types import (
    AttendanceRecord,
    AttendanceStatus,
    PipelineMode,
    ProximityEstimate,
    Session,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

Key = tuple[str, str]


@dataclass(frozen=True)
class VerificationResult:
    outcome: VerificationOutcome
    fusion: FusionResult


@dataclass
class _Tracking:
    scanner: ProximityScanner
    task: "asyncio.Task[None]"


class PresenceService:
    """Run proximity tracking, face verification and enrollment for sessions."""

    def __init__(
        self,
        *,
        attendance_store: AttendanceStore,
        session_store: SessionStore,
        reference_store: ReferenceStore,
        config: Optional[PresenceConfig] = None,
        checker: Optional[LivenessChecker] = None,
        model: Optional[EmbeddingModel] = None,
        scorer: Optional[SimilarityScorer] = None,
        clock: Callable[[], datetime.datetime] = timezone.now,
    ) -> None:
        self.config = config or get_presence_config()
        self.attendance_store = attendance_store
        self.reference_store = reference_store
        self.checker = checker or FrameLivenessChecker()
        self.model = model or DeepFaceEmbeddingModel(
            self.config.face_model, self.config.face_detector_backend
        )
        self.decision_maker = VerificationDecisionMaker(
            scorer, VerificationThresholds.from_config(self.config)
        )
        self.sessions = SessionManager(session_store, clock)
        self.fusion = PresenceFusionEngine(
            attendance_store, session_store, AttendancePolicy.from_config(self.config), clock
        )
        self._clock = clock
        self._tracking: dict[Key, _Tracking] = {}
        self._started = False

    @classmethod
    def in_memory(cls, **kwargs) -> "PresenceService":
        return cls(
            attendance_store=InMemoryAttendanceStore(),
            session_store=InMemorySessionStore(),
            reference_store=InMemoryReferenceStore(),
            **kwargs,
        )

    @classmethod
    def with_orm(cls, **kwargs) -> "PresenceService":
        from .orm_stores import OrmAttendanceStore, OrmReferenceStore, OrmSessionStore

        return cls(
            attendance_store=OrmAttendanceStore(),
            session_store=OrmSessionStore(),
            reference_store=OrmReferenceStore(),
            **kwargs,
        )

    # -- lifecycle -----------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def startup(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("Presence service started", extra={"event": "service", "status": "started"})

    async def shutdown(self) -> None:
        """Stop every proximity tracker and release their radios."""

        for key in list(self._tracking):
            await self.stop_proximity_tracking(*key)
        self._started = False
        logger.info("Presence service stopped", extra={"event": "service", "status": "stopped"})

    async def __aenter__(self) -> "PresenceService":
        await self.startup()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.shutdown()

    # -- sessions ------------------------------------------------------

    async def start_session(
        self, class_id: str, beacon_id: str, session_id: Optional[str] = None
    ) -> Session:
        return await self.sessions.start_session(class_id, beacon_id, session_id)

    async def end_session(self, session_id: str) -> Session:
        await self._stop_session_tracking(session_id)
        session = await self.sessions.end_session(session_id)
        await self.fusion.release_session(session_id)
        return session

    async def finalize_session(
        self, session_id: str, roster: Iterable[str] = ()
    ) -> list[AttendanceRecord]:
        await self._stop_session_tracking(session_id)
        return await self.fusion.finalize_session(session_id, roster)

    async def session_summary(
        self, session_id: str, roster: Optional[Iterable[str]] = None
    ) -> SessionSummary:
        records = await self.fusion.ledger(session_id)
        events = await sync_to_async(
            self.attendance_store.events_for_session, thread_sensitive=True
        )(session_id)
        summary = summarize_session(records, events, roster)
        summary.session_id = session_id
        return summary

    # -- proximity -----------------------------------------------------

    async def start_proximity_tracking(
        self, student_id: str, session_id: str, radio: RadioSource
    ) -> ProximityScanner:
        """Scan for the session's beacon and feed estimates into fusion.

        Raises :class:`~presence.errors.SessionNotFound` for an unknown
        session and :class:`~presence.errors.PermissionDenied` when the radio
        refuses access.
        """

        key = (student_id, session_id)
        existing = self._tracking.get(key)
        if existing is not None:
            if not existing.task.done():
                return existing.scanner
            # A feeder that died still owns a scanner; release it before replacing.
            await self.stop_proximity_tracking(*key)

        session = await self.sessions.get_session(session_id)
        scanner = ProximityScanner.from_config(radio, session.beacon_id, self.config)
        stream = scanner.subscribe()
        try:
            await scanner.start()
        except BaseException:
            stream.close()
            raise
        task = asyncio.get_running_loop().create_task(
            self._feed_fusion(student_id, session_id, scanner, stream)
        )
        self._tracking[key] = _Tracking(scanner=scanner, task=task)
        return scanner

    async def _feed_fusion(
        self,
        student_id: str,
        session_id: str,
        scanner: ProximityScanner,
        stream: EventStream[ProximityEstimate],
    ) -> None:
        try:
            async for estimate in stream:
                await self.fusion.apply_proximity_event(student_id, session_id, estimate)
        finally:
            await scanner.stop()

    async def stop_proximity_tracking(self, student_id: str, session_id: str) -> None:
        tracking = self._tracking.pop((student_id, session_id), None)
        if tracking is None:
            return
        try:
            await tracking.scanner.stop()
        finally:
            # Stopping the scanner ends the stream, so the feeder finishes on its own.
            try:
                await tracking.task
            except asyncio.CancelledError:
                if not tracking.task.cancelled():
                    raise
            except Exception:
                logger.exception(
                    "Proximity feed for %s/%s failed",
                    student_id,
                    session_id,
                    extra={"event": "proximity_feed", "status": "failure"},
                )

    async def _stop_session_tracking(self, session_id: str) -> None:
        for key in [k for k in self._tracking if k[1] == session_id]:
            await self.stop_proximity_tracking(*key)

    def is_tracking(self, student_id: str, session_id: str) -> bool:
        return (student_id, session_id) in self._tracking

    # -- biometrics ----------------------------------------------------

    def build_pipeline(self, camera: CameraSource) -> LivenessPipeline:
        return LivenessPipeline.from_config(
            camera, self.checker, self.model, self.config, self.decision_maker
        )

    async def verify_student(
        self,
        student_id: str,
        session_id: str,
        camera: CameraSource,
        *,
        stage_timeout: Optional[float] = None,
    ) -> VerificationResult:
        """Verify a student's face against their reference and apply the outcome.

        A missing reference yields an unverified outcome; the ledger is only
        touched by verified outcomes.
        """

        await self.sessions.get_session(session_id)
        reference = await sync_to_async(
            self.reference_store.get_reference_embedding, thread_sensitive=True
        )(student_id)
        pipeline = self.build_pipeline(camera)
        outcome = await pipeline.run(PipelineMode.VERIFICATION, reference, stage_timeout)
        fusion_result = await self.fusion.apply_verification_event(student_id, session_id, outcome)
        logger.info(
            "Verification for %s/%s: %s",
            student_id,
            session_id,
            fusion_result.action.value,
            extra={"event": "verification", "outcome": describe_outcome(outcome)},
        )
        return VerificationResult(outcome=outcome, fusion=fusion_result)

    async def enroll_student(
        self, student_id: str, camera: CameraSource, *, stage_timeout: Optional[float] = None
    ) -> EnrollmentResult:
        enrollment = EnrollmentPipeline(
            self.build_pipeline(camera), self.reference_store, self._clock
        )
        return await enrollment.enroll(student_id, stage_timeout=stage_timeout)

    async def mark_manual(
        self, student_id: str, session_id: str, status: AttendanceStatus
    ) -> FusionResult:
        return await self.fusion.apply_manual_mark(student_id, session_id, status)


__all__ = ["PresenceService", "VerificationResult"]
