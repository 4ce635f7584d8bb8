"""Embedding generation and similarity scoring strategies.

The default model wraps ``DeepFace.represent``; DeepFace is an optional
dependency imported on first use so the rest of the engine (and its tests)
never pay for TensorFlow start-up.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from .types import EMBEDDING_DIMENSION, FaceEmbedding

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingModel(Protocol):
    def embed(self, frame: np.ndarray) -> FaceEmbedding: ...


@runtime_checkable
class SimilarityScorer(Protocol):
    def score(self, current: FaceEmbedding, reference: FaceEmbedding) -> float: ...


def extract_embedding(
    representations: Any,
) -> Tuple[Optional[np.ndarray], Optional[Dict[str, Any]]]:
    """Normalise DeepFace representations into a single embedding vector.

    Returns the embedding as a NumPy vector (or ``None`` when no usable
    embedding is available) and the first face's metadata.
    """

    embedding_vector: Optional[Sequence[float]] = None
    metadata: Optional[Dict[str, Any]] = None

    if isinstance(representations, np.ndarray):
        if representations.ndim == 2 and len(representations) > 0:
            embedding_vector = representations[0]
        elif representations.ndim == 1:
            embedding_vector = representations
    elif isinstance(representations, list) and representations:
        first = representations[0]
        if isinstance(first, dict):
            embedding_vector = first.get("embedding")
            metadata = first
        elif isinstance(first, (list, tuple, np.ndarray)):
            embedding_vector = first
    elif isinstance(representations, dict) and "embedding" in representations:
        embedding_vector = representations.get("embedding")
        metadata = representations

    if embedding_vector is None:
        return None, metadata

    try:
        normalized = np.array([float(value) for value in embedding_vector], dtype=float)
    except (TypeError, ValueError):
        logger.debug("Unable to coerce embedding values to floats: %r", embedding_vector)
        return None, metadata

    if normalized.size == 0:
        return None, metadata

    return normalized, metadata


def _load_deepface() -> Any:
    from deepface import DeepFace

    return DeepFace


class DeepFaceEmbeddingModel:
    """Produce 128-d Facenet embeddings through DeepFace."""

    def __init__(
        self,
        model_name: str = "Facenet",
        detector_backend: str = "opencv",
        *,
        enforce_detection: bool = True,
    ) -> None:
        self.model_name = model_name
        self.detector_backend = detector_backend
        self.enforce_detection = enforce_detection

    def embed(self, frame: np.ndarray) -> FaceEmbedding:
        deepface = _load_deepface()
        representations = deepface.represent(
            img_path=frame,
            model_name=self.model_name,
            detector_backend=self.detector_backend,
            enforce_detection=self.enforce_detection,
        )
        vector, metadata = extract_embedding(representations)
        if vector is None:
            raise ValueError("DeepFace returned no usable embedding")
        if vector.size != EMBEDDING_DIMENSION:
            raise ValueError(
                f"model {self.model_name!r} produced a {vector.size}-d embedding; "
                f"expected {EMBEDDING_DIMENSION}"
            )

        confidence = 1.0
        if metadata is not None and metadata.get("face_confidence") is not None:
            confidence = min(1.0, max(0.0, float(metadata["face_confidence"])))
        return FaceEmbedding(vector=vector, generation_confidence=confidence)


def cosine_similarity(current: np.ndarray, reference: np.ndarray) -> Optional[float]:
    """Cosine similarity, or ``None`` when either vector has zero magnitude."""

    current_norm = float(np.linalg.norm(current))
    reference_norm = float(np.linalg.norm(reference))
    if current_norm == 0.0 or reference_norm == 0.0:
        return None
    return float(np.dot(current, reference) / (current_norm * reference_norm))


class CosineSimilarityScorer:
    """Cosine similarity clamped to ``[0, 1]``; opposed vectors score 0."""

    def score(self, current: FaceEmbedding, reference: FaceEmbedding) -> float:
        similarity = cosine_similarity(current.vector, reference.vector)
        if similarity is None:
            return 0.0
        return min(1.0, max(0.0, similarity))


__all__ = [
    "CosineSimilarityScorer",
    "DeepFaceEmbeddingModel",
    "EmbeddingModel",
    "SimilarityScorer",
    "cosine_similarity",
    "extract_embedding",
]
