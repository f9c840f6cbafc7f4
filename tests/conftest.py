"""Shared fixtures for the PlotScore test suite.

Provides a Flask test client wired to a temporary SQLite database and
small builders for Place lists.  Every external collaborator (Google
Maps, Gemini, Razorpay, geo-IP) is mocked per test; nothing here talks
to the network.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["PLOTSCORE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")

# Ensure Google Maps key is present (analysis routes check this)
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")

# Route tests fire many requests from one address
os.environ["RATE_LIMIT_DEFAULT"] = "10000/minute"
os.environ["RATE_LIMIT_ANALYZE"] = "10000/minute"
os.environ["RATE_LIMIT_ORDER"] = "10000/minute"

from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402
from places import Place, TravelDistance  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test, keeping the schema intact."""
    init_db()
    conn = _get_db()
    for table in ("events", "payment_orders", "analysis_sessions", "usage_limits"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    """Flask test client with CSRF disabled (we're testing logic, not CSRF)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    with app.test_client() as c:
        yield c


def make_place(name, tags, rating=None, distance_m=500, place_id=None):
    """Build a Place with a travel distance of *distance_m* metres."""
    return Place(
        place_id=place_id or f"pid_{name.lower().replace(' ', '_')}",
        name=name,
        tags=frozenset(tags),
        rating=rating,
        vicinity=f"{name} Road",
        travel=TravelDistance(
            distance_m=distance_m,
            distance_text=f"{distance_m / 1000:.1f} km",
            duration_s=distance_m // 5,
            duration_text=f"{max(1, distance_m // 300)} mins",
        ),
    )


def well_served_places():
    """Places covering all four essential domains plus some extras."""
    return [
        make_place("City Hospital", {"hospital", "health", "establishment"}, 4.2, 400),
        make_place("Green Valley School", {"school", "establishment"}, 4.5, 700),
        make_place("Central Bus Stand", {"bus_station", "transit_station"}, 3.9, 300),
        make_place("Fresh Mart", {"supermarket", "store"}, 4.0, 900),
        make_place("Corner Cafe", {"cafe", "restaurant", "food"}, 4.4, 250),
        make_place("Lake Park", {"park"}, 4.7, 1200),
    ]


def three_domain_places():
    """Education, health and retail only: low risk, no transit."""
    return [
        make_place("Sunrise Clinic", {"clinic"}, 4.1, 600),
        make_place("Hill School", {"school"}, 4.0, 800),
        make_place("Daily Needs", {"convenience_store"}, 3.8, 350),
        make_place("Spice Kitchen", {"restaurant"}, 4.3, 450),
    ]


def remote_places():
    """Nothing essential nearby."""
    return [
        make_place("Hilltop Viewpoint", {"tourist_attraction", "point_of_interest"}, 4.6, 2500),
    ]
