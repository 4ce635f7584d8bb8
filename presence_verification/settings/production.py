"""Production settings overriding the defaults with hardened options."""

from __future__ import annotations

import os

from .base import *  # noqa: F401,F403
from .base import DATABASES, build_postgres_database_config
from .sentry import initialize_sentry

DEBUG = False

ALLOWED_HOSTS = [
    host.strip() for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "").split(",") if host.strip()
]

# Production deployments never run on the SQLite fallback.
if DATABASES["default"].get("ENGINE") == "django.db.backends.sqlite3":
    DATABASES["default"] = build_postgres_database_config()


initialize_sentry()
