"""Tests for reference enrollment."""

from __future__ import annotations

import asyncio

import pytest

from presence.enrollment import EnrollmentPipeline, EnrollmentStatus
from presence.errors import PermissionDenied
from presence.pipeline import LivenessPipeline
from presence.stores import InMemoryReferenceStore
from presence.types import ChallengeType, PipelineMode


def _enrollment(camera, checker, model, store, clock):
    pipeline = LivenessPipeline(camera, checker, model, check_window=0.0)
    return EnrollmentPipeline(pipeline, store, clock)


def test_live_capture_stores_reference(camera, live_checker, model, clock):
    store = InMemoryReferenceStore()

    result = asyncio.run(_enrollment(camera, live_checker, model, store, clock).enroll("S1"))

    assert result.enrolled
    assert result.status == EnrollmentStatus.ENROLLED
    assert result.enrolled_at == clock()
    assert result.outcome.mode == PipelineMode.ENROLLMENT
    assert store.get_reference_embedding("S1") is model.embedding


def test_reenrollment_replaces_reference(camera, live_checker, model_factory, embedding_factory, clock):
    store = InMemoryReferenceStore()
    first, second = embedding_factory(1), embedding_factory(2)

    asyncio.run(_enrollment(camera, live_checker, model_factory(first), store, clock).enroll("S1"))
    asyncio.run(_enrollment(camera, live_checker, model_factory(second), store, clock).enroll("S1"))

    assert store.get_reference_embedding("S1") is second
    assert len(store) == 1


def test_failed_liveness_keeps_previous_reference(
    camera, checker_factory, model_factory, embedding_factory, clock
):
    store = InMemoryReferenceStore()
    existing = embedding_factory(1)
    store.put_reference_embedding("S1", existing)
    checker = checker_factory({ChallengeType.HEAD_MOVEMENT: (False, 0.0)})

    result = asyncio.run(
        _enrollment(camera, checker, model_factory(embedding_factory(2)), store, clock).enroll("S1")
    )

    assert not result.enrolled
    assert result.enrolled_at is None
    assert store.get_reference_embedding("S1") is existing


def test_capture_errors_propagate(camera_factory, live_checker, model, clock):
    store = InMemoryReferenceStore()
    camera = camera_factory(start_result=False)

    with pytest.raises(PermissionDenied):
        asyncio.run(_enrollment(camera, live_checker, model, store, clock).enroll("S1"))
    assert len(store) == 0
