"""Threshold policy turning liveness and similarity into a verification outcome."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from django.core.exceptions import ImproperlyConfigured

from .config import PresenceConfig
from .embedding import CosineSimilarityScorer, SimilarityScorer
from .types import FaceEmbedding, LivenessChecks, PipelineMode, VerificationOutcome

logger = logging.getLogger(__name__)

ENROLLMENT_SIMILARITY = 1.0


@dataclass(frozen=True, slots=True)
class VerificationThresholds:
    similarity: float = 0.7
    liveness: float = 0.8

    def __post_init__(self) -> None:
        for name in ("similarity", "liveness"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ImproperlyConfigured(f"{name} threshold must be within [0, 1], got {value}")

    @classmethod
    def from_config(cls, config: PresenceConfig) -> "VerificationThresholds":
        return cls(similarity=config.similarity_threshold, liveness=config.liveness_threshold)


def decide(
    mode: PipelineMode,
    liveness_confidence: float,
    similarity: float,
    thresholds: VerificationThresholds = VerificationThresholds(),
) -> bool:
    """Apply the threshold policy. Both comparisons are strict."""

    if PipelineMode(mode) == PipelineMode.ENROLLMENT:
        return liveness_confidence > thresholds.liveness
    return similarity > thresholds.similarity and liveness_confidence > thresholds.liveness


class VerificationDecisionMaker:
    """Score a fresh embedding against the enrolled reference and decide.

    A verification request without a reference is a normal unverified
    outcome with ``similarity == 0``; enrollment never compares and fixes
    ``similarity`` at 1.0.
    """

    def __init__(
        self,
        scorer: Optional[SimilarityScorer] = None,
        thresholds: Optional[VerificationThresholds] = None,
    ) -> None:
        self.scorer = scorer or CosineSimilarityScorer()
        self.thresholds = thresholds or VerificationThresholds()

    def evaluate(
        self,
        mode: PipelineMode,
        liveness: LivenessChecks,
        embedding: Optional[FaceEmbedding],
        reference: Optional[FaceEmbedding] = None,
    ) -> VerificationOutcome:
        mode = PipelineMode(mode)
        if not liveness.is_live or embedding is None:
            return VerificationOutcome(
                mode=mode, verified=False, similarity=0.0, liveness=liveness, embedding=None
            )

        if mode == PipelineMode.ENROLLMENT:
            similarity = ENROLLMENT_SIMILARITY
        elif reference is None:
            logger.info(
                "No enrolled reference; verification cannot pass",
                extra={"event": "verification_decision", "status": "no_reference"},
            )
            return VerificationOutcome(
                mode=mode,
                verified=False,
                similarity=0.0,
                liveness=liveness,
                embedding=embedding,
            )
        else:
            similarity = min(1.0, max(0.0, float(self.scorer.score(embedding, reference))))

        verified = decide(mode, liveness.liveness_confidence, similarity, self.thresholds)
        logger.info(
            "Verification decision",
            extra={
                "event": "verification_decision",
                "status": "verified" if verified else "rejected",
                "mode": mode.value,
                "similarity": similarity,
                "liveness_confidence": liveness.liveness_confidence,
            },
        )
        return VerificationOutcome(
            mode=mode,
            verified=verified,
            similarity=similarity,
            liveness=liveness,
            embedding=embedding,
        )


__all__ = [
    "ENROLLMENT_SIMILARITY",
    "VerificationDecisionMaker",
    "VerificationThresholds",
    "decide",
]
