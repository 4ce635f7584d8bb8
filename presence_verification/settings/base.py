"""
Django settings for the presence verification project.

This module holds the configuration shared by every environment: installed
applications, the database, the Fernet key protecting enrolled face
embeddings and the thresholds that drive the presence verification engine.
Sensitive values and tunables are read from environment variables.
"""

from __future__ import annotations

import json
import os
import sys
import warnings
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured

import dj_database_url
from cryptography.fernet import Fernet

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent.parent

LOCAL_ENV_PATH = Path(os.environ.get("LOCAL_ENV_PATH", BASE_DIR / ".env"))
DEV_KEY_CACHE_PATH = Path(
    os.environ.get("DEV_ENCRYPTION_KEY_FILE", BASE_DIR / ".dev_encryption_keys.json")
)


# --- Environment helpers ---


def _get_bool_env(var_name: str, default: bool = False) -> bool:
    """Return a boolean from an environment variable."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    return raw_value.lower() in {"1", "true", "yes", "on"}


def _parse_int_env(var_name: str, default: int, *, minimum: int | None = None) -> int:
    """Return an integer from the environment, enforcing an optional minimum."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = int(raw_value)
    except ValueError as exc:  # pragma: no cover - defensive programming
        raise ImproperlyConfigured(f"{var_name} must be an integer if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")

    return value


def _get_float_env(
    var_name: str,
    default: float | None,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float | None:
    """Return a float from the environment with optional bound enforcement."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ImproperlyConfigured(f"{var_name} must be a float if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")
    if maximum is not None and value > maximum:
        raise ImproperlyConfigured(f"{var_name} must be <= {maximum} if provided.")

    return value


# Detect if we're running tests
TESTING = "test" in sys.argv or (len(sys.argv) > 0 and "pytest" in sys.argv[0])

DEFAULT_SECRET_KEY = "a-secure-default-key-for-development-only"

# Never run with debug mode turned on in a production environment.
DEBUG = _get_bool_env("DJANGO_DEBUG", default=not TESTING)

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", DEFAULT_SECRET_KEY)
if SECRET_KEY == DEFAULT_SECRET_KEY and not DEBUG and not TESTING:
    raise ImproperlyConfigured(
        "DJANGO_SECRET_KEY must be set to a secure value when DJANGO_DEBUG is not enabled."
    )

ALLOWED_HOSTS: list[str] = []


# --- Face data encryption ---


def _validate_fernet_key(key: str | bytes, setting_name: str) -> bytes:
    """Ensure the provided key material is a valid Fernet key."""

    key_bytes = key.encode() if isinstance(key, str) else key
    try:
        Fernet(key_bytes)
    except (ValueError, TypeError) as exc:
        raise ImproperlyConfigured(
            f"{setting_name} must be a valid 32-byte base64-encoded Fernet key."
        ) from exc
    return key_bytes


def _read_local_env_value(var_name: str) -> str | None:
    """Return a value from a local ``.env`` file if present."""

    if not LOCAL_ENV_PATH.exists():
        return None

    try:
        for raw_line in LOCAL_ENV_PATH.read_text().splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            if key.strip() != var_name:
                continue
            return value.strip().strip("\"").strip("'")
    except OSError as exc:  # pragma: no cover - defensive programming
        warnings.warn(f"Unable to read {LOCAL_ENV_PATH}: {exc}")

    return None


def _load_cached_dev_key(var_name: str) -> bytes | None:
    """Load a previously generated development key from disk."""

    if not DEV_KEY_CACHE_PATH.exists():
        return None

    try:
        cache = json.loads(DEV_KEY_CACHE_PATH.read_text())
    except (OSError, json.JSONDecodeError) as exc:  # pragma: no cover - defensive programming
        warnings.warn(f"Ignoring invalid dev key cache file: {exc}")
        return None

    cached_value = cache.get(var_name)
    if not cached_value:
        return None

    try:
        return _validate_fernet_key(cached_value, var_name)
    except ImproperlyConfigured:
        warnings.warn(f"Ignoring invalid cached {var_name}; regenerating.")
        return None


def _dev_key(var_name: str) -> bytes:
    """Return a stable key for DEBUG/TESTING sessions, persisting when generated."""

    cached_key = _load_cached_dev_key(var_name)
    if cached_key:
        return cached_key

    key_bytes = Fernet.generate_key()
    try:
        existing = (
            json.loads(DEV_KEY_CACHE_PATH.read_text()) if DEV_KEY_CACHE_PATH.exists() else {}
        )
    except (OSError, json.JSONDecodeError):  # pragma: no cover - defensive programming
        existing = {}
    existing[var_name] = key_bytes.decode()
    try:
        DEV_KEY_CACHE_PATH.write_text(json.dumps(existing, indent=2))
    except OSError as exc:  # pragma: no cover - read-only checkouts
        warnings.warn(f"Unable to persist dev encryption key cache: {exc}")
    return key_bytes


def _load_face_data_encryption_key() -> bytes:
    """Load the Fernet key used to encrypt enrolled reference embeddings."""

    key = os.environ.get("FACE_DATA_ENCRYPTION_KEY")
    if not key and (DEBUG or TESTING):
        key = _read_local_env_value("FACE_DATA_ENCRYPTION_KEY")
    if key:
        return _validate_fernet_key(key, "FACE_DATA_ENCRYPTION_KEY")

    if DEBUG or TESTING:
        return _dev_key("FACE_DATA_ENCRYPTION_KEY")

    raise ImproperlyConfigured(
        "FACE_DATA_ENCRYPTION_KEY environment variable must be set in production environments."
    )


def _load_fallback_keys(var_name: str) -> tuple[bytes, ...]:
    """Return retired Fernet keys still accepted for decryption."""

    raw_value = os.environ.get(var_name, "")
    return tuple(
        _validate_fernet_key(item.strip(), var_name)
        for item in raw_value.split(",")
        if item.strip()
    )


FACE_DATA_ENCRYPTION_KEY = _load_face_data_encryption_key()
FACE_DATA_ENCRYPTION_FALLBACK_KEYS = _load_fallback_keys("FACE_DATA_ENCRYPTION_FALLBACK_KEYS")


# --- Application Configuration ---

INSTALLED_APPS = [
    "presence.apps.PresenceConfig",
]


# --- Database Configuration ---

default_db_url = os.environ.get("DATABASE_URL", f"sqlite:///{(BASE_DIR / 'db.sqlite3').as_posix()}")
conn_max_age = _parse_int_env("DATABASE_CONN_MAX_AGE", 0, minimum=0)

DATABASES = {
    "default": dj_database_url.parse(default_db_url, conn_max_age=conn_max_age),
}


def build_postgres_database_config() -> dict[str, object]:
    """Return a PostgreSQL configuration derived from discrete environment variables."""

    return {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "presence"),
        "USER": os.environ.get("DB_USER", "presence"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "presence"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": _parse_int_env("DB_CONN_MAX_AGE", 600, minimum=0),
    }


# --- Internationalization ---

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# --- Presence verification ---

# Minimum cosine similarity between a fresh embedding and the enrolled
# reference, and minimum liveness confidence, for a face verification to pass.
PRESENCE_SIMILARITY_THRESHOLD = _get_float_env(
    "PRESENCE_SIMILARITY_THRESHOLD", 0.7, minimum=0.0, maximum=1.0
)
PRESENCE_LIVENESS_THRESHOLD = _get_float_env(
    "PRESENCE_LIVENESS_THRESHOLD", 0.8, minimum=0.0, maximum=1.0
)

# Log-distance path loss calibration for classroom beacons.
PRESENCE_TX_POWER = _get_float_env("PRESENCE_TX_POWER", -59.0)
PRESENCE_PATH_LOSS_EXPONENT = _get_float_env("PRESENCE_PATH_LOSS_EXPONENT", 2.0, minimum=0.1)
PRESENCE_RANGE_THRESHOLD_METERS = _get_float_env(
    "PRESENCE_RANGE_THRESHOLD_METERS", 10.0, minimum=0.0
)

PRESENCE_SCAN_INTERVAL_SECONDS = _get_float_env(
    "PRESENCE_SCAN_INTERVAL_SECONDS", 2.0, minimum=0.01
)
# Unset means twice the scan interval.
PRESENCE_STALENESS_WINDOW_SECONDS = _get_float_env(
    "PRESENCE_STALENESS_WINDOW_SECONDS", None, minimum=0.0
)

PRESENCE_STAGE_TIMEOUT_SECONDS = _get_float_env(
    "PRESENCE_STAGE_TIMEOUT_SECONDS", 10.0, minimum=0.0
)
PRESENCE_PROXIMITY_TIMEOUT_SECONDS = _get_float_env(
    "PRESENCE_PROXIMITY_TIMEOUT_SECONDS", 30.0, minimum=0.0
)
PRESENCE_LIVENESS_CHECK_WINDOW_SECONDS = _get_float_env(
    "PRESENCE_LIVENESS_CHECK_WINDOW_SECONDS", 1.0, minimum=0.0
)
PRESENCE_LIVENESS_FRAMES_PER_CHECK = _parse_int_env(
    "PRESENCE_LIVENESS_FRAMES_PER_CHECK", 5, minimum=3
)

# Attendance policy: arrivals after this many seconds are late, arrivals within
# the grace period after the session ends are still logged as late.
PRESENCE_LATE_AFTER_SECONDS = _parse_int_env("PRESENCE_LATE_AFTER_SECONDS", 900, minimum=0)
PRESENCE_GRACE_PERIOD_SECONDS = _parse_int_env("PRESENCE_GRACE_PERIOD_SECONDS", 300, minimum=0)
PRESENCE_GAP_SECONDS = _parse_int_env("PRESENCE_GAP_SECONDS", 120, minimum=1)

PRESENCE_FACE_MODEL = os.environ.get("PRESENCE_FACE_MODEL", "Facenet")
PRESENCE_FACE_DETECTOR_BACKEND = os.environ.get("PRESENCE_FACE_DETECTOR_BACKEND", "opencv")


# --- Monitoring ---

PRESENCE_CAMERA_START_ALERT_SECONDS = _get_float_env(
    "PRESENCE_CAMERA_START_ALERT_SECONDS", 3.0, minimum=0.0
)
PRESENCE_STAGE_ALERT_SECONDS = _get_float_env("PRESENCE_STAGE_ALERT_SECONDS", 5.0, minimum=0.0)
PRESENCE_HEALTH_ALERT_HISTORY = _parse_int_env("PRESENCE_HEALTH_ALERT_HISTORY", 50, minimum=1)
