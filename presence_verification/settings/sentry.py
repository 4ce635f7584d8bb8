"""Sentry configuration helpers used by production deployments."""

from __future__ import annotations

import logging
import os
from typing import Any

from django.core.exceptions import ImproperlyConfigured

import sentry_sdk
from sentry_sdk.integrations.django import DjangoIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import base as base_settings

__all__ = ["initialize_sentry"]

# Extra keys that may carry biometric material or identifiers.
_SENSITIVE_EXTRA_KEYS = {"embedding", "vector", "reference", "student_id"}


def _get_sample_rate(var_name: str, default: float) -> float:
    """Return a tracing sample rate constrained between 0.0 and 1.0 inclusive."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ImproperlyConfigured(
            f"{var_name} must be a floating point number between 0.0 and 1.0."
        ) from exc
    if not 0.0 <= value <= 1.0:
        raise ImproperlyConfigured(f"{var_name} must be between 0.0 and 1.0 when provided.")
    return value


def _scrub_event(event: dict[str, Any], send_default_pii: bool) -> dict[str, Any]:
    """Remove biometric payloads and, unless allowed, student identifiers."""

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in _SENSITIVE_EXTRA_KEYS:
            if key == "student_id" and send_default_pii:
                continue
            if key in extra:
                extra[key] = "[Filtered]"
    if not send_default_pii:
        event.pop("user", None)
    return event


def initialize_sentry() -> bool:
    """Initialise Sentry SDK when a DSN is supplied via the environment.

    Returns ``True`` when the SDK was initialised.
    """

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    send_default_pii = base_settings._get_bool_env("SENTRY_SEND_DEFAULT_PII", default=False)

    def _before_send(event: dict[str, Any], _hint: object | None) -> dict[str, Any] | None:
        return _scrub_event(event, send_default_pii)

    sentry_sdk.init(
        dsn=dsn,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        release=os.environ.get("SENTRY_RELEASE"),
        integrations=[
            DjangoIntegration(),
            LoggingIntegration(level=None, event_level=logging.ERROR),
        ],
        traces_sample_rate=_get_sample_rate("SENTRY_TRACES_SAMPLE_RATE", default=0.0),
        send_default_pii=send_default_pii,
        before_send=_before_send,
    )
    return True
