"""
App configuration for the presence app.

Django discovers this configuration through ``INSTALLED_APPS``; the app
provides the ORM-backed stores, migrations and the ``presence_report``
management command on top of the framework-light verification core.
"""

from django.apps import AppConfig


class PresenceConfig(AppConfig):
    """Configuration class for the presence app."""

    name = "presence"
    verbose_name = "Presence Verification"
