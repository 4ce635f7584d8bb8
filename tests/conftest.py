import pytest

from presence import monitoring


@pytest.fixture(autouse=True)
def reset_monitoring():
    """Give every test a fresh metrics registry and alert history."""

    monitoring.reset_for_tests()
    yield
    monitoring.reset_for_tests()


@pytest.fixture(scope="session", autouse=True)
def close_database_connections():
    """Close database connections once the session ends.

    Prevents 'database is being accessed by other users' errors during
    teardown when ORM stores were exercised from worker threads.
    """
    yield
    from django.db import connections

    for conn in connections.all():
        conn.close()
