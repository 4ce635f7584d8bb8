"""One-shot enrollment producing a student's reference embedding."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from django.utils import timezone

from asgiref.sync import sync_to_async

from .pipeline import LivenessPipeline
from .stores import ReferenceStore
from .types import PipelineMode, VerificationOutcome

logger = logging.getLogger(__name__)


class EnrollmentStatus(str, Enum):
    ENROLLED = "enrolled"
    FAILED = "failed"


@dataclass(frozen=True)
class EnrollmentResult:
    student_id: str
    status: EnrollmentStatus
    outcome: VerificationOutcome
    enrolled_at: Optional[datetime.datetime] = None

    @property
    def enrolled(self) -> bool:
        return self.status == EnrollmentStatus.ENROLLED


class EnrollmentPipeline:
    """Run the liveness pipeline in enrollment mode and store the embedding.

    A verified run replaces any earlier reference outright; references are
    never averaged. A failed run leaves the store untouched.
    """

    def __init__(
        self,
        pipeline: LivenessPipeline,
        reference_store: ReferenceStore,
        clock: Callable[[], datetime.datetime] = timezone.now,
    ) -> None:
        self.pipeline = pipeline
        self.reference_store = reference_store
        self._clock = clock

    async def enroll(
        self, student_id: str, *, stage_timeout: Optional[float] = None
    ) -> EnrollmentResult:
        outcome = await self.pipeline.run(PipelineMode.ENROLLMENT, stage_timeout=stage_timeout)
        if not outcome.verified or outcome.embedding is None:
            logger.info(
                "Enrollment failed for %s",
                student_id,
                extra={
                    "event": "enrollment",
                    "status": EnrollmentStatus.FAILED.value,
                    "liveness_confidence": outcome.liveness.liveness_confidence,
                },
            )
            return EnrollmentResult(student_id, EnrollmentStatus.FAILED, outcome)

        await sync_to_async(self.reference_store.put_reference_embedding, thread_sensitive=True)(
            student_id, outcome.embedding
        )
        enrolled_at = self._clock()
        logger.info(
            "Enrolled reference embedding for %s",
            student_id,
            extra={"event": "enrollment", "status": EnrollmentStatus.ENROLLED.value},
        )
        return EnrollmentResult(student_id, EnrollmentStatus.ENROLLED, outcome, enrolled_at)


__all__ = ["EnrollmentPipeline", "EnrollmentResult", "EnrollmentStatus"]
