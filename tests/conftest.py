"""
Shared fixtures for the NEO pipeline tests.

Every test gets its own in-memory SQLite database, a recording
notification gateway, and a fixed clock (a Monday, noon UTC).
"""

import os
import threading
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RUN_FETCH_ON_STARTUP", "false")
os.environ.setdefault("JWT_SECRET", "test-signing-key-with-enough-length-for-hs256")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import neowatch.models  # noqa: F401
from neowatch.db import Base
from neowatch.models import Asteroid, User, WatchlistItem
from neowatch.services import nasa_client
from neowatch.services.notifications import NotificationGateway


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ============================================================
# FAKES
# ============================================================

class RecordingGateway(NotificationGateway):
    """Captures published events instead of delivering them."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def publish(self, channel, event, payload):
        with self._lock:
            self.events.append((channel, event, payload))

    def of(self, event):
        return [e for e in self.events if e[1] == event]


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture(autouse=True)
def clear_feed_cache():
    nasa_client.clear_cache()
    yield
    nasa_client.clear_cache()


@pytest.fixture
def raw_neo():
    """Builder for a record in the NASA NeoWs feed shape."""

    def build(
        neo_id="3542519",
        name="(2010 PK9)",
        hazardous=False,
        diameter_min=50.0,
        diameter_max=120.0,
        lunar=5.0,
        velocity=12.0,
        approach=NOW + timedelta(hours=6),
        orbiting_body="Earth",
    ):
        return {
            "id": neo_id,
            "neo_reference_id": neo_id,
            "name": name,
            "nasa_jpl_url": f"https://ssd.jpl.nasa.gov/tools/sbdb_lookup.html#/?sstr={neo_id}",
            "absolute_magnitude_h": 21.3,
            "estimated_diameter": {
                "meters": {
                    "estimated_diameter_min": diameter_min,
                    "estimated_diameter_max": diameter_max,
                }
            },
            "is_potentially_hazardous_asteroid": hazardous,
            "close_approach_data": [
                {
                    "close_approach_date": approach.strftime("%Y-%m-%d"),
                    "close_approach_date_full": approach.strftime("%Y-%b-%d %H:%M"),
                    "relative_velocity": {
                        "kilometers_per_second": str(velocity),
                        "kilometers_per_hour": str(velocity * 3600),
                    },
                    "miss_distance": {
                        "astronomical": str(lunar * 0.00256955529),
                        "lunar": str(lunar),
                        "kilometers": str(lunar * 384400),
                    },
                    "orbiting_body": orbiting_body,
                }
            ],
        }

    return build


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def build(watching=(), **profile):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            username=profile.pop("username", f"user{n}"),
            email=profile.pop("email", f"user{n}@example.com"),
            **profile,
        )
        db.add(user)
        db.flush()
        for asteroid_id in watching:
            db.add(WatchlistItem(user_id=user.id, asteroid_id=asteroid_id))
        db.commit()
        db.refresh(user)
        return user

    return build


@pytest.fixture
def make_asteroid(db):
    """Stores a snapshot directly, bypassing scoring, with a chosen score."""

    def build(
        neo_id="2000433",
        name="433 Eros (A898 PA)",
        score=82,
        category=None,
        diameter_max=250.0,
        lunar=3.0,
        hazardous=True,
        approach=NOW + timedelta(hours=6),
        fetched_at=NOW,
    ):
        from neowatch.services.risk_engine import risk_category

        asteroid = Asteroid(
            neo_reference_id=neo_id,
            name=name,
            risk_score=score,
            risk_category=category or risk_category(score),
            is_potentially_hazardous=hazardous,
            estimated_diameter_min_m=diameter_max / 2 if diameter_max else None,
            estimated_diameter_max_m=diameter_max,
            close_approach_date=approach,
            miss_distance_km=lunar * 384400 if lunar is not None else None,
            miss_distance_lunar=lunar,
            relative_velocity_kps=18.0,
            orbiting_body="Earth",
            fetched_at=fetched_at,
            expires_at=fetched_at + timedelta(hours=24),
        )
        db.add(asteroid)
        db.commit()
        db.refresh(asteroid)
        return asteroid

    return build
