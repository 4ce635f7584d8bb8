"""Frame-based liveness heuristics for the verification pipeline."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence, runtime_checkable

import cv2
import numpy as np

from .types import (
    LIVENESS_CHALLENGE_ORDER,
    ChallengeType,
    LivenessCheckResult,
    LivenessChecks,
)

ArrayLike = np.ndarray

logger = logging.getLogger(__name__)

MIN_FRAMES = 3

# Face quality thresholds (mean grey level and Laplacian variance).
BRIGHTNESS_LOW_THRESHOLD = 60
BRIGHTNESS_HIGH_THRESHOLD = 200
SHARPNESS_MIN_THRESHOLD = 50.0

LIVE_CONFIDENCE_FLOOR = 0.85
LIVE_CONFIDENCE_SPAN = 0.15
DEGRADED_CONFIDENCE_FLOOR = 0.3
DEGRADED_CONFIDENCE_SPAN = 0.4


@runtime_checkable
class LivenessChecker(Protocol):
    """Strategy evaluating one liveness challenge over sampled frames."""

    def check(self, challenge: ChallengeType, frames: Sequence[ArrayLike]) -> LivenessCheckResult:
        ...


def _to_gray(frame: Optional[ArrayLike]) -> Optional[ArrayLike]:
    if frame is None or not isinstance(frame, np.ndarray) or frame.size == 0:
        return None
    if frame.ndim == 3:
        return cv2.cvtColor(frame.astype(np.uint8), cv2.COLOR_BGR2GRAY)
    if frame.ndim == 2:
        return frame.astype(np.uint8)
    return None


def _prepare_gray_frame(frame: Optional[ArrayLike], *, target_size: int = 128) -> Optional[ArrayLike]:
    working = _to_gray(frame)
    if working is None:
        return None
    if target_size > 0:
        working = cv2.resize(working, (target_size, target_size))
    return cv2.GaussianBlur(working, (5, 5), 0)


def _frame_quality(gray: ArrayLike) -> tuple[float, float]:
    """Return ``(brightness, sharpness)`` for a greyscale frame."""

    brightness = float(np.mean(gray))
    sharpness = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    return brightness, sharpness


def _compute_horizontal_motion(frames: Sequence[ArrayLike]) -> tuple[float, float]:
    """Compute left/right motion components from dense optical flow.

    Returns:
        Tuple of (left_motion, right_motion) scores.
    """
    left_scores: list[float] = []
    right_scores: list[float] = []

    for prev, curr in zip(frames, frames[1:]):
        flow = cv2.calcOpticalFlowFarneback(prev, curr, None, 0.5, 1, 11, 2, 5, 1.1, 0)
        horizontal = flow[..., 0]
        left_scores.append(float(np.mean(np.maximum(-horizontal, 0))))
        right_scores.append(float(np.mean(np.maximum(horizontal, 0))))

    if not left_scores:
        return 0.0, 0.0

    return float(np.mean(left_scores)), float(np.mean(right_scores))


def _detect_blink_pattern(frames: Sequence[ArrayLike]) -> tuple[int, float]:
    """Detect blinks as dips in eye-region intensity.

    Returns:
        Tuple of (blink_count, blink_confidence).
    """
    intensities: list[float] = []

    for frame in frames:
        # Eyes sit in the upper portion of a face crop.
        height = frame.shape[0]
        eye_region = frame[int(height * 0.2):int(height * 0.5), :]
        if eye_region.size > 0:
            intensities.append(float(np.mean(eye_region)))

    if len(intensities) < MIN_FRAMES:
        return 0, 0.0

    intensities_arr = np.array(intensities)
    threshold = float(np.mean(intensities_arr)) * 0.85  # 15% drop indicates potential blink

    blink_count = 0
    in_blink = False
    for is_below in intensities_arr < threshold:
        if is_below and not in_blink:
            blink_count += 1
            in_blink = True
        elif not is_below:
            in_blink = False

    variance = float(np.var(intensities_arr))
    confidence = min(1.0, variance / 100.0)

    return blink_count, confidence


class FrameLivenessChecker:
    """Heuristic liveness checks built on OpenCV.

    Face quality uses brightness and Laplacian sharpness, blink detection
    looks for eye-region intensity dips, and head movement measures
    horizontal optical flow between consecutive frames. A replayed still
    image fails both the blink and the head movement checks.
    """

    def __init__(
        self,
        *,
        blink_required: int = 1,
        head_turn_threshold: float = 0.02,
        brightness_range: tuple[float, float] = (
            BRIGHTNESS_LOW_THRESHOLD,
            BRIGHTNESS_HIGH_THRESHOLD,
        ),
        sharpness_threshold: float = SHARPNESS_MIN_THRESHOLD,
    ) -> None:
        self.blink_required = blink_required
        self.head_turn_threshold = head_turn_threshold
        self.brightness_range = brightness_range
        self.sharpness_threshold = sharpness_threshold

    def check(self, challenge: ChallengeType, frames: Sequence[ArrayLike]) -> LivenessCheckResult:
        challenge = ChallengeType(challenge)
        if challenge == ChallengeType.FACE_QUALITY:
            return self._check_quality(frames)

        prepared = [p for p in (_prepare_gray_frame(f) for f in frames) if p is not None]
        if len(prepared) < MIN_FRAMES:
            return LivenessCheckResult(
                challenge_type=challenge,
                passed=False,
                confidence=0.0,
                frames_analyzed=len(prepared),
                details={"error": "insufficient_frames", "required": MIN_FRAMES},
            )

        if challenge == ChallengeType.BLINK:
            blink_count, confidence = _detect_blink_pattern(prepared)
            return LivenessCheckResult(
                challenge_type=challenge,
                passed=blink_count >= self.blink_required,
                confidence=confidence,
                frames_analyzed=len(prepared),
                details={"blink_count": blink_count, "required": self.blink_required},
            )

        left_motion, right_motion = _compute_horizontal_motion(prepared)
        total_horizontal = left_motion + right_motion
        return LivenessCheckResult(
            challenge_type=challenge,
            passed=total_horizontal >= self.head_turn_threshold,
            confidence=min(1.0, total_horizontal / (self.head_turn_threshold * 2)),
            frames_analyzed=len(prepared),
            details={
                "left_motion": left_motion,
                "right_motion": right_motion,
                "threshold": self.head_turn_threshold,
            },
        )

    def _check_quality(self, frames: Sequence[ArrayLike]) -> LivenessCheckResult:
        low, high = self.brightness_range
        grays = [g for g in (_to_gray(f) for f in frames) if g is not None]
        if not grays:
            return LivenessCheckResult(
                challenge_type=ChallengeType.FACE_QUALITY,
                passed=False,
                confidence=0.0,
                details={"error": "no_frames"},
            )

        good = 0
        brightness_scores: list[float] = []
        sharpness_scores: list[float] = []
        for gray in grays:
            brightness, sharpness = _frame_quality(gray)
            brightness_scores.append(brightness)
            sharpness_scores.append(sharpness)
            if low <= brightness <= high and sharpness >= self.sharpness_threshold:
                good += 1

        ratio = good / len(grays)
        return LivenessCheckResult(
            challenge_type=ChallengeType.FACE_QUALITY,
            passed=ratio >= 0.5,
            confidence=ratio,
            frames_analyzed=len(grays),
            details={
                "brightness": float(np.median(brightness_scores)),
                "sharpness": float(np.median(sharpness_scores)),
            },
        )


def liveness_confidence(is_live: bool, check_confidences: Sequence[float]) -> float:
    """Map check confidences into the live (>= 0.85) or degraded (0.3-0.7) band."""

    values = [min(1.0, max(0.0, float(value))) for value in check_confidences]
    mean = float(np.mean(values)) if values else 0.0
    if is_live:
        return LIVE_CONFIDENCE_FLOOR + LIVE_CONFIDENCE_SPAN * mean
    return DEGRADED_CONFIDENCE_FLOOR + DEGRADED_CONFIDENCE_SPAN * mean


def aggregate_liveness(results: Sequence[LivenessCheckResult]) -> LivenessChecks:
    """Combine per-challenge results; a missing challenge counts as failed."""

    by_type = {result.challenge_type: result for result in results}
    ordered = tuple(by_type[c] for c in LIVENESS_CHALLENGE_ORDER if c in by_type)

    def _passed(challenge: ChallengeType) -> bool:
        result = by_type.get(challenge)
        return bool(result and result.passed)

    face_quality = _passed(ChallengeType.FACE_QUALITY)
    blink = _passed(ChallengeType.BLINK)
    head = _passed(ChallengeType.HEAD_MOVEMENT)
    confidences = [
        by_type[c].confidence if c in by_type else 0.0 for c in LIVENESS_CHALLENGE_ORDER
    ]
    checks = LivenessChecks(
        face_quality=face_quality,
        blink_detected=blink,
        head_movement=head,
        liveness_confidence=liveness_confidence(face_quality and blink and head, confidences),
        results=ordered,
    )
    logger.debug(
        "Liveness aggregated",
        extra={
            "event": "liveness",
            "status": "live" if checks.is_live else "not_live",
            "confidence": checks.liveness_confidence,
        },
    )
    return checks


__all__ = [
    "FrameLivenessChecker",
    "LivenessChecker",
    "aggregate_liveness",
    "liveness_confidence",
]
