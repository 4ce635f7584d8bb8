"""Tests for the verification threshold policy and decision maker."""

from __future__ import annotations

import numpy as np
import pytest
from django.core.exceptions import ImproperlyConfigured

from presence.decision import VerificationDecisionMaker, VerificationThresholds, decide
from presence.embedding import CosineSimilarityScorer
from presence.types import (
    EMBEDDING_DIMENSION,
    FaceEmbedding,
    LivenessChecks,
    PipelineMode,
    VerificationOutcome,
)


class _FixedScorer:
    def __init__(self, value: float) -> None:
        self.value = value

    def score(self, current, reference) -> float:
        return self.value


def _live(confidence: float) -> LivenessChecks:
    return LivenessChecks(True, True, True, confidence)


def _embedding(value: float = 1.0) -> FaceEmbedding:
    return FaceEmbedding(np.full(EMBEDDING_DIMENSION, value), 0.9)


def test_verified_when_both_thresholds_exceeded():
    maker = VerificationDecisionMaker(_FixedScorer(0.75))

    outcome = maker.evaluate(PipelineMode.VERIFICATION, _live(0.9), _embedding(), _embedding())

    assert outcome.verified
    assert outcome.similarity == pytest.approx(0.75)
    assert outcome.confidence == pytest.approx(0.75)


def test_low_liveness_blocks_verification_despite_similarity():
    assert not decide(PipelineMode.VERIFICATION, 0.5, 0.75)


def test_missing_reference_is_unverified_outcome():
    maker = VerificationDecisionMaker(_FixedScorer(0.99))
    embedding = _embedding()

    outcome = maker.evaluate(PipelineMode.VERIFICATION, _live(0.95), embedding, None)

    assert not outcome.verified
    assert outcome.similarity == 0.0
    assert outcome.embedding is embedding


@pytest.mark.parametrize(
    "similarity,liveness,expected",
    [
        (0.7, 0.9, False),
        (0.71, 0.8, False),
        (0.71, 0.81, True),
        (1.0, 1.0, True),
        (0.0, 1.0, False),
    ],
)
def test_threshold_comparisons_are_strict(similarity, liveness, expected):
    assert decide(PipelineMode.VERIFICATION, liveness, similarity) is expected


def test_nan_similarity_never_verifies():
    assert not decide(PipelineMode.VERIFICATION, 0.99, float("nan"))
    outcome = VerificationOutcome(
        PipelineMode.VERIFICATION, False, float("nan"), _live(0.9)
    )
    assert outcome.confidence == 0.0


def test_enrollment_depends_only_on_liveness():
    maker = VerificationDecisionMaker(_FixedScorer(0.0))

    accepted = maker.evaluate(PipelineMode.ENROLLMENT, _live(0.81), _embedding())
    rejected = maker.evaluate(PipelineMode.ENROLLMENT, _live(0.8), _embedding())

    assert accepted.verified and accepted.similarity == 1.0
    assert not rejected.verified


def test_failed_liveness_discards_embedding():
    maker = VerificationDecisionMaker()
    not_live = LivenessChecks(True, False, True, 0.6)

    outcome = maker.evaluate(PipelineMode.VERIFICATION, not_live, _embedding(), _embedding())

    assert not outcome.verified
    assert outcome.similarity == 0.0
    assert outcome.embedding is None


def test_scores_outside_unit_interval_are_clamped():
    maker = VerificationDecisionMaker(_FixedScorer(1.7))

    outcome = maker.evaluate(PipelineMode.VERIFICATION, _live(0.9), _embedding(), _embedding())

    assert outcome.similarity == 1.0


def test_custom_thresholds_apply():
    maker = VerificationDecisionMaker(
        CosineSimilarityScorer(), VerificationThresholds(similarity=0.99, liveness=0.5)
    )
    reference = _embedding(1.0)

    outcome = maker.evaluate(PipelineMode.VERIFICATION, _live(0.6), _embedding(2.0), reference)

    assert outcome.similarity == pytest.approx(1.0)
    assert outcome.verified
    assert outcome.confidence == pytest.approx(0.6)

    rejected = maker.evaluate(PipelineMode.VERIFICATION, _live(0.5), _embedding(2.0), reference)
    assert not rejected.verified


@pytest.mark.parametrize("kwargs", [{"similarity": 1.2}, {"liveness": -0.1}])
def test_thresholds_outside_unit_interval_rejected(kwargs):
    with pytest.raises(ImproperlyConfigured):
        VerificationThresholds(**kwargs)
