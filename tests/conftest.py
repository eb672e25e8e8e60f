"""Shared fixtures for the Aparto test suite.

Provides a tmp_path-backed Store for unit tests, a Flask test client wired
to a temporary SQLite database, and a factory for upstream property dicts.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app (it builds its Store at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["APARTO_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Keys present so /healthz reports ok; nothing real is ever contacted
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")
os.environ.setdefault("VAPID_PUBLIC_KEY", "fake-public-key")
os.environ.setdefault("VAPID_PRIVATE_KEY", "fake-private-key")
os.environ["RATE_LIMIT_DEFAULT"] = "1000/minute"
for _var in ("SENTRY_DSN", "START_POLLER", "POLL_SECRET"):
    os.environ.pop(_var, None)

from app import app, store as app_store  # noqa: E402
from listing_types import Listing  # noqa: E402
from models import Store  # noqa: E402

_TABLES = (
    "known_ids",
    "app_state",
    "push_subscriptions",
    "notifications",
    "livability_scores",
    "commute_cache",
)


@pytest.fixture()
def store(tmp_path):
    """Fresh, initialized Store in a per-test directory."""
    s = Store(str(tmp_path / "aparto.db"))
    s.init_db()
    return s


@pytest.fixture()
def client():
    """Flask test client over the app's own Store, emptied before each test."""
    app_store.init_db()
    conn = app_store._get_db()
    for table in _TABLES:
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


def property_dict(pid, **overrides):
    """Upstream-shaped property dict with sensible defaults."""
    data = {
        "id": pid,
        "name": f"Residence {pid}",
        "latitude": 35.65,
        "longitude": 139.72,
        "rent_amount": 250000,
        "size_sqm": 55.5,
        "bed_rooms": 2,
        "layout": "2LDK",
        "key_money": 0,
        "security_deposit": 250000,
        "slug": f"residence-{pid}",
        "room_number": "301",
        "created_at": "2026-10-01T00:00:00Z",
        "ward": {"slug": "minato"},
        "prefecture": {"slug": "tokyo"},
        "trainStations": [
            {"name": "Hiroo", "meta_data": {"pivot_walking_distance_minutes": 7}},
            {"name": "Azabu-juban", "meta_data": {"pivot_walking_distance_minutes": 4}},
        ],
    }
    data.update(overrides)
    return data


@pytest.fixture()
def make_listing():
    """Factory: make_listing(id, **overrides) -> Listing."""
    def _make(pid, **overrides):
        return Listing.from_dict(property_dict(pid, **overrides))
    return _make
