"""Shared fixtures for the SiteGrade test suite.

Provides a Flask test client wired to a temporary SQLite database, and a
small policy table with three layers for engine tests that should not
depend on the production catalog.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["SITEGRADE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Sentry must stay off in tests even if the developer's shell exports it
os.environ.pop("SENTRY_DSN", None)

from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402
from layer_config import (  # noqa: E402
    GradingPolicy,
    LayerCategory,
    LayerDescriptor,
    PolicyTable,
    SamplingMethod,
    ValueKind,
)


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test."""
    init_db()
    conn = _get_db()
    conn.execute("DELETE FROM grading_jobs")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    """Flask test client with rate limiting disabled."""
    app.config["TESTING"] = True
    app.config["RATELIMIT_ENABLED"] = False
    from app import limiter
    limiter.enabled = False
    with app.test_client() as c:
        yield c
    limiter.enabled = True


@pytest.fixture()
def three_layer_table():
    """L1 critical max@quick, L2 average@default, L3 critical categorical point."""
    layers = [
        LayerDescriptor("L1", "Layer One", LayerCategory.NOISE, ValueKind.NUMERIC, unit="dB"),
        LayerDescriptor("L2", "Layer Two", LayerCategory.NATURE, ValueKind.NUMERIC, unit="%"),
        LayerDescriptor("L3", "Layer Three", LayerCategory.SOIL, ValueKind.CATEGORICAL),
    ]
    policies = [
        GradingPolicy("L1", frozenset({SamplingMethod.MAX}), "quick", priority=10, critical=True),
        GradingPolicy("L2", frozenset({SamplingMethod.AVERAGE}), "default", priority=20, critical=False),
        GradingPolicy("L3", frozenset({SamplingMethod.POINT}), "default", priority=30, critical=True),
    ]
    return PolicyTable(layers, policies)
