"""Shared pytest fixtures for all taste engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from taste_engine.engine import TasteEngine
from taste_engine.features import FeatureProviderClient
from taste_engine.models import FeatureVector, RatingEvent
from taste_engine.store import InMemoryEventStore


TS = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _fv(
    energy: float = 0.5,
    valence: float = 0.5,
    danceability: float = 0.5,
    acousticness: float = 0.5,
    tempo: float = 120.0,
    loudness: float | None = None,
) -> FeatureVector:
    return FeatureVector(energy, valence, danceability, acousticness, tempo, loudness)


def _event(
    rating: float = 7.0,
    hours: float = 0.0,
    user_id: str = "u1",
    item_id: str | None = None,
    tags: tuple[str, ...] = (),
    fv: FeatureVector | None = None,
    genres: tuple[str, ...] = (),
    artist: str = "",
    age: float = 0.0,
) -> RatingEvent:
    return RatingEvent(
        user_id=user_id,
        item_id=item_id or f"item_{hours:g}",
        rating=rating,
        timestamp=TS + timedelta(hours=hours),
        descriptor_tags=frozenset(tags),
        feature_vector=fv,
        genres=genres,
        artist=artist,
        item_age_years=age,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_fv():
    """Build a :class:`FeatureVector`; every feature defaults to the midpoint."""
    return _fv


@pytest.fixture
def make_event():
    """Build a :class:`RatingEvent` ``hours`` after :data:`TS`."""
    return _event


@pytest.fixture
def danceable_events() -> list[RatingEvent]:
    """20 ratings of 8.0-9.9 on items with danceability 0.80-0.99.

    Danceability and valence rise in lockstep with the rating; every other
    feature is constant.
    """
    return [
        _event(
            rating=8.0 + i * 0.1,
            hours=i,
            item_id=f"dance_{i}",
            fv=_fv(
                energy=0.7,
                valence=0.7 + i * 0.01,
                danceability=0.8 + i * 0.01,
                acousticness=0.2,
                tempo=120.0,
            ),
            genres=("house",),
            artist=f"artist_{i % 4}",
        )
        for i in range(20)
    ]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def provider_stub() -> MagicMock:
    """Feature provider stub that knows nothing unless told otherwise."""
    stub = MagicMock()
    stub.get_feature_vector.return_value = None
    stub.get_feature_vectors.return_value = {}
    return stub


@pytest.fixture
def feature_client(provider_stub) -> FeatureProviderClient:
    return FeatureProviderClient(provider_stub)


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def engine(store, feature_client) -> TasteEngine:
    return TasteEngine(store=store, features=feature_client)
