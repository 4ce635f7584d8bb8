"""Tests for DeepFace embedding extraction and similarity scoring."""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

from presence import embedding as embedding_module
from presence.embedding import (
    CosineSimilarityScorer,
    DeepFaceEmbeddingModel,
    cosine_similarity,
    extract_embedding,
)
from presence.types import EMBEDDING_DIMENSION, FaceEmbedding


def test_extract_embedding_from_deepface_dicts():
    vector, metadata = extract_embedding(
        [{"embedding": [1, 2, 3], "face_confidence": 0.9}, {"embedding": [4, 5, 6]}]
    )

    np.testing.assert_array_equal(vector, [1.0, 2.0, 3.0])
    assert metadata["face_confidence"] == 0.9


@pytest.mark.parametrize(
    "representations",
    [np.ones((2, 3)), np.ones(3), [[1.0, 1.0, 1.0]], {"embedding": (1, 1, 1)}],
)
def test_extract_embedding_accepts_common_shapes(representations):
    vector, _ = extract_embedding(representations)

    np.testing.assert_array_equal(vector, [1.0, 1.0, 1.0])


@pytest.mark.parametrize("representations", [[], None, [{"embedding": ["a", "b"]}], {"embedding": []}])
def test_extract_embedding_rejects_unusable_payloads(representations):
    vector, _ = extract_embedding(representations)

    assert vector is None


def _fake_deepface(payload, calls):
    def represent(**kwargs):
        calls.append(kwargs)
        return payload

    return SimpleNamespace(represent=represent)


def test_deepface_model_builds_embedding(monkeypatch):
    calls = []
    payload = [{"embedding": list(np.linspace(0, 1, EMBEDDING_DIMENSION)), "face_confidence": 1.4}]
    monkeypatch.setattr(embedding_module, "_load_deepface", lambda: _fake_deepface(payload, calls))
    frame = np.zeros((32, 32, 3), dtype=np.uint8)

    result = DeepFaceEmbeddingModel(detector_backend="ssd").embed(frame)

    assert result.vector.shape == (EMBEDDING_DIMENSION,)
    assert not result.vector.flags.writeable
    assert result.generation_confidence == 1.0
    assert calls[0]["model_name"] == "Facenet"
    assert calls[0]["detector_backend"] == "ssd"
    assert calls[0]["img_path"] is frame


def test_deepface_model_rejects_wrong_dimension(monkeypatch):
    payload = [{"embedding": [0.1] * 512}]
    monkeypatch.setattr(embedding_module, "_load_deepface", lambda: _fake_deepface(payload, []))

    with pytest.raises(ValueError, match="512-d"):
        DeepFaceEmbeddingModel(model_name="ArcFace").embed(np.zeros((8, 8, 3)))


def test_deepface_model_rejects_missing_embedding(monkeypatch):
    monkeypatch.setattr(embedding_module, "_load_deepface", lambda: _fake_deepface([], []))

    with pytest.raises(ValueError):
        DeepFaceEmbeddingModel().embed(np.zeros((8, 8, 3)))


def _embedding(values) -> FaceEmbedding:
    return FaceEmbedding(np.asarray(values, dtype=float), 1.0)


def test_cosine_scorer_bounds():
    scorer = CosineSimilarityScorer()
    base = np.linspace(-1, 1, EMBEDDING_DIMENSION) + 0.01

    assert scorer.score(_embedding(base), _embedding(base * 3)) == pytest.approx(1.0)
    assert scorer.score(_embedding(base), _embedding(-base)) == 0.0
    assert scorer.score(_embedding(base), _embedding(np.zeros(EMBEDDING_DIMENSION))) == 0.0


def test_cosine_similarity_zero_norm_is_undefined():
    assert cosine_similarity(np.zeros(3), np.ones(3)) is None
    assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 1.0])) == pytest.approx(0.0)


@pytest.mark.parametrize(
    "vector,confidence",
    [
        (np.ones(EMBEDDING_DIMENSION - 1), 0.5),
        (np.ones((2, EMBEDDING_DIMENSION)), 0.5),
        (np.full(EMBEDDING_DIMENSION, np.nan), 0.5),
        (np.ones(EMBEDDING_DIMENSION), 1.5),
    ],
)
def test_face_embedding_validates_shape_and_confidence(vector, confidence):
    with pytest.raises(ValueError):
        FaceEmbedding(vector, confidence)


def test_face_embedding_is_immutable_copy():
    source = np.ones(EMBEDDING_DIMENSION)
    embedding = FaceEmbedding(source, 0.9)
    source[0] = 5.0

    assert embedding.vector[0] == 1.0
    with pytest.raises(ValueError):
        embedding.vector[0] = 2.0
