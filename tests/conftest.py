"""
Pytest configuration and shared fixtures for all tests.

This file is automatically loaded by pytest and provides:
  - Test configuration (env vars) applied before any project import
  - An in-memory store, a fixed clock, and a request factory
  - A mock Firebase app for Firestore-backed tests
"""

import os

# Set at import time: changematch.config builds its singleton on first import,
# which happens while test modules are being collected.
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["DEBUG"] = "True"
os.environ.setdefault("FIREBASE_PROJECT_ID", "test-project")
os.environ.pop("SERVICE_TOKEN", None)

from datetime import datetime, timedelta, timezone
from itertools import count
from unittest.mock import MagicMock

import pytest

from changematch.models.exchange import (
    Coordinate,
    Denomination,
    ExchangeRequest,
    RequestStatus,
    TrustSignals,
)
from changematch.tools.memory_store import InMemoryStore
from changematch.utils.geohash import encode

# Rizal Park, Manila.
MANILA = (14.5995, 120.9842)
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def offset_km(lat: float, lng: float, north_km: float = 0.0, east_km: float = 0.0):
    """Move a point by a small distance using a flat-earth approximation."""

    from math import cos, radians

    return (
        lat + north_km / 111.195,
        lng + east_km / (111.195 * cos(radians(lat))),
    )


_ids = count(1)


def make_request(
    owner_id: str,
    *,
    offer: tuple[float, str] = (1000, "bill"),
    need: tuple[float, str] = (1000, "coin"),
    at: tuple[float, float] = MANILA,
    created_at: datetime = NOW,
    status: RequestStatus = RequestStatus.OPEN,
    verified: bool = False,
    rating: float = 0.0,
    request_id: str | None = None,
) -> ExchangeRequest:
    """Build an ExchangeRequest with sensible defaults."""

    lat, lng = at
    return ExchangeRequest(
        id=request_id or f"req-{next(_ids)}",
        owner_id=owner_id,
        offer_amount=offer[0],
        offer_denomination=Denomination(offer[1]),
        need_amount=need[0],
        need_denomination=Denomination(need[1]),
        location=Coordinate(latitude=lat, longitude=lng),
        spatial_key=encode(lat, lng, 5),
        status=status,
        created_at=created_at,
        trust_signals=TrustSignals(verified=verified, rating=rating),
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def request_factory():
    return make_request


@pytest.fixture
def mock_firebase_app(monkeypatch):
    """
    Provide a mock Firebase app for testing.

    Firestore calls made through changematch.tools.firestore_tools will hit
    the returned MagicMock db.
    """
    mock_app = MagicMock()
    mock_db = MagicMock()

    monkeypatch.setattr("firebase_admin._apps", [mock_app])
    monkeypatch.setattr("firebase_admin.initialize_app", MagicMock(return_value=mock_app))
    monkeypatch.setattr("firebase_admin.firestore.client", MagicMock(return_value=mock_db))
    monkeypatch.setattr("changematch.tools.firestore_tools._db", None)

    return {"app": mock_app, "db": mock_db}
