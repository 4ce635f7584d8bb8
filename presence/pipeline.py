"""Liveness and embedding pipeline.

One run walks ``IDLE -> CAPTURING -> LIVENESS_CHECKING -> EMBEDDING_GENERATION
-> COMPLETE``; any error moves it to ``FAILED`` with the stage recorded.
Blocking camera and model calls run in worker threads so the event loop
keeps serving proximity readings while a capture is in progress.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Optional, Protocol, TypeVar, runtime_checkable

import numpy as np

from . import monitoring
from .config import PresenceConfig
from .decision import VerificationDecisionMaker, VerificationThresholds
from .embedding import EmbeddingModel
from .errors import PermissionDenied, PresenceError, PresenceTimeout, SourceNotReady, StageFailure
from .liveness import LivenessChecker, aggregate_liveness
from .types import (
    LIVENESS_CHALLENGE_ORDER,
    FaceEmbedding,
    LivenessChecks,
    PipelineMode,
    PipelineStage,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class CameraSource(Protocol):
    """Boundary contract for a still-frame capture device.

    A timed-out stage cannot interrupt its worker thread, so ``capture_frame``
    may still be running when ``stop_capture`` is called. Implementations must
    tolerate that overlap and return ``None`` from a capture that loses it.
    """

    def start_capture(self) -> bool: ...

    def stop_capture(self) -> None: ...

    def capture_frame(self) -> Optional[np.ndarray]: ...

    @property
    def frame_size(self) -> tuple[int, int]: ...


class LivenessPipeline:
    """Capture, liveness-check and embed a single biometric sample."""

    def __init__(
        self,
        camera: CameraSource,
        checker: LivenessChecker,
        model: EmbeddingModel,
        decision_maker: Optional[VerificationDecisionMaker] = None,
        *,
        check_window: float = 1.0,
        frames_per_check: int = 5,
        stage_timeout: Optional[float] = None,
    ) -> None:
        if frames_per_check < 1:
            raise ValueError("frames_per_check must be positive")
        self.camera = camera
        self.checker = checker
        self.model = model
        self.decision_maker = decision_maker or VerificationDecisionMaker()
        self.check_window = max(0.0, float(check_window))
        self.frames_per_check = int(frames_per_check)
        self.stage_timeout = stage_timeout
        self._stage = PipelineStage.IDLE
        self._failed_stage: Optional[PipelineStage] = None
        self._last_error: Optional[BaseException] = None
        self._running = False

    @classmethod
    def from_config(
        cls,
        camera: CameraSource,
        checker: LivenessChecker,
        model: EmbeddingModel,
        config: PresenceConfig,
        decision_maker: Optional[VerificationDecisionMaker] = None,
    ) -> "LivenessPipeline":
        if decision_maker is None:
            decision_maker = VerificationDecisionMaker(
                thresholds=VerificationThresholds.from_config(config)
            )
        return cls(
            camera,
            checker,
            model,
            decision_maker,
            check_window=config.liveness_check_window_seconds,
            frames_per_check=config.liveness_frames_per_check,
            stage_timeout=config.stage_timeout_seconds,
        )

    @property
    def stage(self) -> PipelineStage:
        return self._stage

    @property
    def failed_stage(self) -> Optional[PipelineStage]:
        return self._failed_stage

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    def _set_stage(self, stage: PipelineStage) -> None:
        self._stage = stage
        logger.debug(
            "Pipeline stage %s", stage.value, extra={"event": "pipeline_stage", "stage": stage.value}
        )

    async def _bounded(
        self, stage: PipelineStage, awaitable: Awaitable[T], timeout: Optional[float]
    ) -> T:
        self._set_stage(stage)
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except PresenceError:
            raise
        except asyncio.TimeoutError:
            raise PresenceTimeout(stage.value, timeout) from None
        finally:
            monitoring.observe_stage_duration(stage.value, time.perf_counter() - started)

    async def run(
        self,
        mode: PipelineMode = PipelineMode.VERIFICATION,
        reference: Optional[FaceEmbedding] = None,
        stage_timeout: Optional[float] = None,
    ) -> VerificationOutcome:
        """Execute one capture session and return its outcome.

        Raises :class:`PermissionDenied`, :class:`SourceNotReady`,
        :class:`PresenceTimeout` or :class:`StageFailure` when execution
        fails. Cancellation propagates after the camera has been released.
        """

        if self._running:
            raise RuntimeError("pipeline run already in progress")
        mode = PipelineMode(mode)
        timeout = self.stage_timeout if stage_timeout is None else stage_timeout
        self._running = True
        self._failed_stage = None
        self._last_error = None
        self._set_stage(PipelineStage.IDLE)

        failed = True
        try:
            frame = await self._bounded(PipelineStage.CAPTURING, self._capture(), timeout)
            liveness = await self._bounded(
                PipelineStage.LIVENESS_CHECKING, self._check_liveness(frame), timeout
            )
            embedding: Optional[FaceEmbedding] = None
            if liveness.is_live:
                embedding = await self._bounded(
                    PipelineStage.EMBEDDING_GENERATION,
                    asyncio.to_thread(self.model.embed, frame),
                    timeout,
                )
            outcome = self.decision_maker.evaluate(mode, liveness, embedding, reference)
            failed = False
        except asyncio.CancelledError as exc:
            self._fail(exc)
            monitoring.record_pipeline_outcome(
                mode.value, "cancelled", failed_stage=self._failed_stage.value
            )
            raise
        except PresenceError as exc:
            self._fail(exc)
            monitoring.record_pipeline_outcome(
                mode.value, "failed", failed_stage=self._failed_stage.value
            )
            raise
        except Exception as exc:
            self._fail(exc)
            monitoring.record_pipeline_outcome(
                mode.value, "failed", failed_stage=self._failed_stage.value
            )
            raise StageFailure(self._failed_stage.value) from exc
        finally:
            try:
                self._release_camera(propagate=not failed)
            finally:
                self._running = False

        self._set_stage(PipelineStage.COMPLETE)
        monitoring.record_pipeline_outcome(
            mode.value, "verified" if outcome.verified else "unverified"
        )
        return outcome

    def _fail(self, exc: BaseException) -> None:
        self._failed_stage = self._stage
        self._last_error = exc
        self._stage = PipelineStage.FAILED
        log = logger.info if isinstance(exc, asyncio.CancelledError) else logger.warning
        log(
            "Pipeline failed during %s",
            self._failed_stage.value,
            extra={
                "event": "pipeline_failed",
                "stage": self._failed_stage.value,
                "error": type(exc).__name__,
            },
        )

    async def _capture(self) -> np.ndarray:
        started = time.perf_counter()
        try:
            ready = await asyncio.to_thread(self.camera.start_capture)
        except Exception as exc:
            monitoring.record_camera_start(False, time.perf_counter() - started, error=str(exc))
            raise
        if not ready:
            monitoring.record_camera_start(False, time.perf_counter() - started, error="denied")
            raise PermissionDenied("camera")
        monitoring.record_camera_start(True, time.perf_counter() - started)

        width, height = self.camera.frame_size
        if width <= 0 or height <= 0:
            raise SourceNotReady("capture source reports no frame dimensions", stage="capturing")
        frame = await asyncio.to_thread(self.camera.capture_frame)
        if frame is None:
            raise SourceNotReady("capture source returned no frame", stage="capturing")
        return frame

    async def _sample_frames(self, first: Optional[np.ndarray] = None) -> list[np.ndarray]:
        frames: list[np.ndarray] = [first] if first is not None else []
        interval = self.check_window / self.frames_per_check
        while len(frames) < self.frames_per_check:
            frame = await asyncio.to_thread(self.camera.capture_frame)
            if frame is not None:
                frames.append(frame)
            # Checks span at least the configured window so a still image
            # cannot pass them instantly.
            await asyncio.sleep(interval)
        return frames

    async def _check_liveness(self, still: np.ndarray) -> LivenessChecks:
        results = []
        for index, challenge in enumerate(LIVENESS_CHALLENGE_ORDER):
            frames = await self._sample_frames(still if index == 0 else None)
            result = await asyncio.to_thread(self.checker.check, challenge, frames)
            results.append(result)
        return aggregate_liveness(results)

    def _release_camera(self, *, propagate: bool = True) -> None:
        try:
            self.camera.stop_capture()
        except Exception as exc:
            monitoring.record_camera_stop(False, error=str(exc))
            if propagate:
                raise
            # The run already failed; its error is the one the caller sees.
            logger.warning(
                "Camera release failed after pipeline error",
                exc_info=True,
                extra={"event": "camera_stop", "status": "failure"},
            )
            return
        monitoring.record_camera_stop(True)


def describe_outcome(outcome: VerificationOutcome) -> dict[str, Any]:
    """Serialisable summary of an outcome, without the embedding vector."""

    return {
        "mode": outcome.mode.value,
        "verified": outcome.verified,
        "similarity": outcome.similarity,
        "confidence": outcome.confidence,
        "liveness": {
            "is_live": outcome.liveness.is_live,
            "face_quality": outcome.liveness.face_quality,
            "blink_detected": outcome.liveness.blink_detected,
            "head_movement": outcome.liveness.head_movement,
            "confidence": outcome.liveness.liveness_confidence,
        },
        "has_embedding": outcome.embedding is not None,
    }


__all__ = ["CameraSource", "LivenessPipeline", "describe_outcome"]
