"""Typed view over the ``PRESENCE_*`` Django settings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


@dataclass(frozen=True, slots=True)
class PresenceConfig:
    """Tunables for the proximity, liveness and fusion components."""

    similarity_threshold: float = 0.7
    liveness_threshold: float = 0.8
    tx_power: float = -59.0
    path_loss_exponent: float = 2.0
    range_threshold_meters: float = 10.0
    scan_interval_seconds: float = 2.0
    staleness_window_seconds: Optional[float] = None
    stage_timeout_seconds: Optional[float] = 10.0
    proximity_timeout_seconds: Optional[float] = 30.0
    liveness_check_window_seconds: float = 1.0
    liveness_frames_per_check: int = 5
    late_after_seconds: int = 900
    grace_period_seconds: int = 300
    presence_gap_seconds: int = 120
    face_model: str = "Facenet"
    face_detector_backend: str = "opencv"

    def __post_init__(self) -> None:
        for name in ("similarity_threshold", "liveness_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ImproperlyConfigured(f"{name} must be between 0.0 and 1.0, got {value}.")
        if self.path_loss_exponent <= 0:
            raise ImproperlyConfigured("path_loss_exponent must be positive.")
        if self.scan_interval_seconds <= 0:
            raise ImproperlyConfigured("scan_interval_seconds must be positive.")
        if self.liveness_frames_per_check < 3:
            raise ImproperlyConfigured("liveness_frames_per_check must be >= 3.")

    @property
    def effective_staleness_window(self) -> float:
        """Staleness window, defaulting to twice the scan interval."""

        if self.staleness_window_seconds is None:
            return 2.0 * self.scan_interval_seconds
        return self.staleness_window_seconds


def _optional_float(value: object) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def get_presence_config() -> PresenceConfig:
    """Build a :class:`PresenceConfig` from the active Django settings."""

    defaults = PresenceConfig()
    return PresenceConfig(
        similarity_threshold=float(
            getattr(settings, "PRESENCE_SIMILARITY_THRESHOLD", defaults.similarity_threshold)
        ),
        liveness_threshold=float(
            getattr(settings, "PRESENCE_LIVENESS_THRESHOLD", defaults.liveness_threshold)
        ),
        tx_power=float(getattr(settings, "PRESENCE_TX_POWER", defaults.tx_power)),
        path_loss_exponent=float(
            getattr(settings, "PRESENCE_PATH_LOSS_EXPONENT", defaults.path_loss_exponent)
        ),
        range_threshold_meters=float(
            getattr(settings, "PRESENCE_RANGE_THRESHOLD_METERS", defaults.range_threshold_meters)
        ),
        scan_interval_seconds=float(
            getattr(settings, "PRESENCE_SCAN_INTERVAL_SECONDS", defaults.scan_interval_seconds)
        ),
        staleness_window_seconds=_optional_float(
            getattr(settings, "PRESENCE_STALENESS_WINDOW_SECONDS", None)
        ),
        stage_timeout_seconds=_optional_float(
            getattr(settings, "PRESENCE_STAGE_TIMEOUT_SECONDS", defaults.stage_timeout_seconds)
        ),
        proximity_timeout_seconds=_optional_float(
            getattr(
                settings, "PRESENCE_PROXIMITY_TIMEOUT_SECONDS", defaults.proximity_timeout_seconds
            )
        ),
        liveness_check_window_seconds=float(
            getattr(
                settings,
                "PRESENCE_LIVENESS_CHECK_WINDOW_SECONDS",
                defaults.liveness_check_window_seconds,
            )
        ),
        liveness_frames_per_check=int(
            getattr(
                settings, "PRESENCE_LIVENESS_FRAMES_PER_CHECK", defaults.liveness_frames_per_check
            )
        ),
        late_after_seconds=int(
            getattr(settings, "PRESENCE_LATE_AFTER_SECONDS", defaults.late_after_seconds)
        ),
        grace_period_seconds=int(
            getattr(settings, "PRESENCE_GRACE_PERIOD_SECONDS", defaults.grace_period_seconds)
        ),
        presence_gap_seconds=int(
            getattr(settings, "PRESENCE_GAP_SECONDS", defaults.presence_gap_seconds)
        ),
        face_model=str(getattr(settings, "PRESENCE_FACE_MODEL", defaults.face_model)),
        face_detector_backend=str(
            getattr(settings, "PRESENCE_FACE_DETECTOR_BACKEND", defaults.face_detector_backend)
        ),
    )


__all__ = ["PresenceConfig", "get_presence_config"]
