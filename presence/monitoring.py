"""Monitoring utilities for camera, pipeline, scanner and fusion health."""

from __future__ import annotations

import datetime as _dt
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from django.conf import settings

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


@dataclass
class _HealthState:
    """Mutable snapshot of the latest monitoring information."""

    camera_running: bool = False
    last_start: Optional[Dict[str, Any]] = None
    last_stop: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    scanner_state: Optional[str] = None
    last_reading_timestamp: Optional[float] = None
    last_pipeline: Optional[Dict[str, Any]] = None
    stage_durations: Dict[str, float] = field(default_factory=dict)


_STATE = _HealthState()
_STATE_LOCK = threading.Lock()
_ALERTS: deque[Dict[str, Any]] = deque()

_THRESHOLD_SETTING_NAMES: Dict[str, str] = {
    "camera_start": "PRESENCE_CAMERA_START_ALERT_SECONDS",
    "stage": "PRESENCE_STAGE_ALERT_SECONDS",
}

_DEFAULT_THRESHOLDS: Dict[str, float] = {
    "camera_start": 3.0,
    "stage": 5.0,
}


def _max_alert_history() -> int:
    value = getattr(settings, "PRESENCE_HEALTH_ALERT_HISTORY", 50)
    try:
        numeric = int(value)
    except (TypeError, ValueError):  # pragma: no cover - defensive
        numeric = 50
    return max(1, numeric)


def _now_timestamp() -> float:
    return time.time()


def _format_timestamp(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return _dt.datetime.fromtimestamp(ts, tz=_dt.timezone.utc).isoformat()


def _create_event(status: str, latency: Optional[float], error: Optional[str]) -> Dict[str, Any]:
    return {
        "timestamp": _now_timestamp(),
        "status": status,
        "latency": latency,
        "error": error,
    }


def _append_alert(
    event_type: str, severity: str, message: str, data: Optional[Dict[str, Any]] = None
) -> None:
    payload = {
        "timestamp": _format_timestamp(_now_timestamp()),
        "type": event_type,
        "severity": severity,
        "message": message,
        "data": data or {},
    }
    with _STATE_LOCK:
        _ALERTS.append(payload)
        max_alerts = _max_alert_history()
        while len(_ALERTS) > max_alerts:
            _ALERTS.popleft()


def _build_metrics() -> None:
    global REGISTRY
    global CAMERA_START_COUNTER
    global CAMERA_START_LATENCY
    global CAMERA_STOP_COUNTER
    global CAMERA_RUNNING_GAUGE
    global STAGE_DURATION_HISTOGRAM
    global PIPELINE_OUTCOME_COUNTER
    global FUSION_ACTION_COUNTER
    global SCANNER_TRANSITION_COUNTER
    global PROXIMITY_READING_COUNTER
    global PROXIMITY_DISTANCE_HISTOGRAM

    REGISTRY = CollectorRegistry(auto_describe=True)

    CAMERA_START_COUNTER = Counter(
        "presence_camera_start",
        "Total camera start attempts",
        labelnames=("status",),
        registry=REGISTRY,
    )
    CAMERA_START_LATENCY = Histogram(
        "presence_camera_start_latency_seconds",
        "Camera start latency in seconds",
        buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0),
        registry=REGISTRY,
    )
    CAMERA_STOP_COUNTER = Counter(
        "presence_camera_stop",
        "Total camera shutdown attempts",
        labelnames=("status",),
        registry=REGISTRY,
    )
    CAMERA_RUNNING_GAUGE = Gauge(
        "presence_camera_running",
        "1 while a capture source is streaming",
        registry=REGISTRY,
    )
    STAGE_DURATION_HISTOGRAM = Histogram(
        "presence_pipeline_stage_duration_seconds",
        "Duration of liveness pipeline stages",
        labelnames=("stage",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        registry=REGISTRY,
    )
    PIPELINE_OUTCOME_COUNTER = Counter(
        "presence_pipeline_runs",
        "Completed, failed and cancelled pipeline runs",
        labelnames=("mode", "outcome"),
        registry=REGISTRY,
    )
    FUSION_ACTION_COUNTER = Counter(
        "presence_fusion_actions",
        "Attendance ledger operations by resulting action",
        labelnames=("operation", "action"),
        registry=REGISTRY,
    )
    SCANNER_TRANSITION_COUNTER = Counter(
        "presence_scanner_transitions",
        "Proximity scanner state transitions",
        labelnames=("state",),
        registry=REGISTRY,
    )
    PROXIMITY_READING_COUNTER = Counter(
        "presence_proximity_readings",
        "Beacon readings for the configured beacon",
        labelnames=("in_range",),
        registry=REGISTRY,
    )
    PROXIMITY_DISTANCE_HISTOGRAM = Histogram(
        "presence_proximity_distance_meters",
        "Estimated distance to the configured beacon",
        buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 25.0, 50.0),
        registry=REGISTRY,
    )


_build_metrics()


def reset_for_tests() -> None:
    """Reset in-memory state and metrics (intended for test suites)."""

    with _STATE_LOCK:
        global _STATE
        _STATE = _HealthState()
        _ALERTS.clear()
    _build_metrics()


def get_threshold(key: str) -> float:
    """Fetch the configured alert threshold for the supplied key."""

    if key not in _THRESHOLD_SETTING_NAMES:
        raise KeyError(f"Unknown threshold key: {key}")
    setting = _THRESHOLD_SETTING_NAMES[key]
    default = _DEFAULT_THRESHOLDS[key]
    value = getattr(settings, setting, default)
    try:
        numeric = float(value)
    except (TypeError, ValueError):  # pragma: no cover - defensive
        numeric = default
    return numeric


def get_alert_thresholds() -> Dict[str, float]:
    """Return the effective thresholds for all monitored stages."""

    return {key: get_threshold(key) for key in _THRESHOLD_SETTING_NAMES}


def _metric_value(name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
    labels = labels or {}
    sample = REGISTRY.get_sample_value(name, labels)
    if sample is None and name.endswith("_total"):
        sample = REGISTRY.get_sample_value(name.replace("_total", ""), labels)
    return sample


def record_camera_start(
    success: bool, latency: Optional[float], error: Optional[str] = None
) -> None:
    """Record metrics and internal state for a camera start attempt."""

    status = "success" if success else "failure"
    CAMERA_START_COUNTER.labels(status=status).inc()
    if latency is not None:
        CAMERA_START_LATENCY.observe(latency)
    with _STATE_LOCK:
        if success:
            _STATE.camera_running = True
            _STATE.last_error = None
            CAMERA_RUNNING_GAUGE.set(1)
        else:
            _STATE.last_error = error
            CAMERA_RUNNING_GAUGE.set(0)
        _STATE.last_start = _create_event(status, latency, error)
    log_extra = {
        "event": "camera_start",
        "status": status,
        "latency_seconds": latency,
    }
    if success:
        logger.info("Capture source started", extra=log_extra)
        threshold = get_threshold("camera_start")
        if latency is not None and latency > threshold:
            message = f"Camera start latency {latency:.3f}s exceeded threshold {threshold:.3f}s"
            logger.warning(
                message, extra={**log_extra, "severity": "warning", "threshold": threshold}
            )
            _append_alert(
                "camera_start_latency",
                "warning",
                message,
                {"latency": latency, "threshold": threshold},
            )
    else:
        message = "Failed to start capture source"
        logger.error(message, extra={**log_extra, "error": error})
        _append_alert(
            "camera_start_failure",
            "error",
            message,
            {"error": error or "unknown", "latency": latency},
        )


def record_camera_stop(success: bool, *, error: Optional[str] = None) -> None:
    """Record a camera release attempt."""

    status = "success" if success else "failure"
    CAMERA_STOP_COUNTER.labels(status=status).inc()
    with _STATE_LOCK:
        _STATE.camera_running = False
        CAMERA_RUNNING_GAUGE.set(0)
        if not success:
            _STATE.last_error = error
        _STATE.last_stop = _create_event(status, None, error)
    log_extra = {"event": "camera_stop", "status": status}
    if success:
        logger.info("Capture source stopped", extra=log_extra)
    else:
        message = "Capture source failed to stop cleanly"
        logger.error(message, extra={**log_extra, "error": error})
        _append_alert("camera_stop_failure", "error", message, {"error": error or "unknown"})


def observe_stage_duration(stage: str, duration: float) -> None:
    """Record pipeline stage durations and emit alerts for slow executions."""

    STAGE_DURATION_HISTOGRAM.labels(stage=stage).observe(max(0.0, duration))
    with _STATE_LOCK:
        _STATE.stage_durations[stage] = duration
    threshold = get_threshold("stage")
    if duration > threshold:
        logger.warning(
            "Pipeline stage '%s' exceeded threshold",
            stage,
            extra={
                "event": "stage_duration",
                "stage": stage,
                "duration_seconds": duration,
                "threshold": threshold,
            },
        )
        _append_alert(
            "stage_duration",
            "warning",
            f"Stage '{stage}' duration {duration:.3f}s exceeded {threshold:.3f}s",
            {"stage": stage, "duration": duration, "threshold": threshold},
        )


def record_pipeline_outcome(
    mode: str, outcome: str, *, failed_stage: Optional[str] = None
) -> None:
    """Count a finished pipeline run; ``outcome`` is verified, unverified, failed or cancelled."""

    PIPELINE_OUTCOME_COUNTER.labels(mode=mode, outcome=outcome).inc()
    with _STATE_LOCK:
        _STATE.last_pipeline = {
            "timestamp": _now_timestamp(),
            "mode": mode,
            "outcome": outcome,
            "failed_stage": failed_stage,
        }
    if outcome == "failed":
        _append_alert(
            "pipeline_failure",
            "error",
            f"Pipeline failed during stage '{failed_stage}'",
            {"mode": mode, "stage": failed_stage},
        )


def record_fusion_action(operation: str, action: str) -> None:
    FUSION_ACTION_COUNTER.labels(operation=operation, action=action).inc()


def record_scanner_state(state: str) -> None:
    SCANNER_TRANSITION_COUNTER.labels(state=state).inc()
    with _STATE_LOCK:
        _STATE.scanner_state = state


def record_proximity_reading(distance: float, in_range: bool) -> None:
    PROXIMITY_READING_COUNTER.labels(in_range=str(bool(in_range)).lower()).inc()
    PROXIMITY_DISTANCE_HISTOGRAM.observe(max(0.0, distance))
    with _STATE_LOCK:
        _STATE.last_reading_timestamp = _now_timestamp()


def get_health_snapshot() -> Dict[str, Any]:
    """Return a serialisable snapshot of presence engine health and alert history."""

    with _STATE_LOCK:
        last_start = _STATE.last_start.copy() if _STATE.last_start else None
        if last_start and "timestamp" in last_start:
            last_start["timestamp"] = _format_timestamp(last_start["timestamp"])
        last_stop = _STATE.last_stop.copy() if _STATE.last_stop else None
        if last_stop and "timestamp" in last_stop:
            last_stop["timestamp"] = _format_timestamp(last_stop["timestamp"])
        last_pipeline = _STATE.last_pipeline.copy() if _STATE.last_pipeline else None
        if last_pipeline and "timestamp" in last_pipeline:
            last_pipeline["timestamp"] = _format_timestamp(last_pipeline["timestamp"])

        camera = {
            "running": _STATE.camera_running,
            "last_start": last_start,
            "last_stop": last_stop,
            "last_error": _STATE.last_error,
        }
        scanner = {
            "state": _STATE.scanner_state,
            "last_reading_timestamp": _format_timestamp(_STATE.last_reading_timestamp),
        }
        stages = {
            stage: {"last_duration": duration} for stage, duration in _STATE.stage_durations.items()
        }
        alerts = list(_ALERTS)
    metrics = {
        "camera_start": {
            "success": _metric_value("presence_camera_start_total", {"status": "success"}) or 0,
            "failure": _metric_value("presence_camera_start_total", {"status": "failure"}) or 0,
        },
        "camera_stop": {
            "success": _metric_value("presence_camera_stop_total", {"status": "success"}) or 0,
            "failure": _metric_value("presence_camera_stop_total", {"status": "failure"}) or 0,
        },
    }
    return {
        "camera": camera,
        "scanner": scanner,
        "pipeline": last_pipeline,
        "stages": stages,
        "alerts": alerts,
        "metrics": metrics,
        "thresholds": get_alert_thresholds(),
    }


def export_metrics() -> bytes:
    """Serialise the Prometheus metrics registry."""

    return generate_latest(REGISTRY)


def prometheus_content_type() -> str:
    """Expose the correct ``Content-Type`` for Prometheus responses."""

    return CONTENT_TYPE_LATEST


__all__ = [
    "export_metrics",
    "get_alert_thresholds",
    "get_health_snapshot",
    "get_threshold",
    "observe_stage_duration",
    "prometheus_content_type",
    "record_camera_start",
    "record_camera_stop",
    "record_fusion_action",
    "record_pipeline_outcome",
    "record_proximity_reading",
    "record_scanner_state",
    "reset_for_tests",
]
