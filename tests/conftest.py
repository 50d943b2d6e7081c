"""Shared pytest fixtures for all persona engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from persona_recommender.engine import PersonaEngine
from persona_recommender.errors import PersistenceUnavailableError
from persona_recommender.models import (
    ContextualItem,
    Mood,
    PersonaProfile,
    SessionLength,
)
from persona_recommender.store import InMemoryRepository


# Saturday evening, 19:00 UTC.
TS = datetime(2024, 6, 1, 19, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = TS) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class UnavailableRepository(InMemoryRepository):
    """Repository whose backend is down: every call fails."""

    def __getattribute__(self, name: str) -> Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)

        def fail(*args: Any, **kwargs: Any) -> Any:
            raise PersistenceUnavailableError(f"{name}: connection refused")

        return fail


# ---------------------------------------------------------------------------
# Library fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def zen_item() -> ContextualItem:
    return ContextualItem(
        item_id="g_zen",
        title="Garden Drift",
        moods=frozenset({Mood.ZEN}),
        session_length=SessionLength.SHORT,
    )


@pytest.fixture
def library_records() -> list[dict[str, Any]]:
    """Raw records spanning shapes the normalizer has to cope with."""
    return [
        {
            "id": "g_stardew",
            "title": "Stardew Valley",
            "moods": ["Cozy", "relaxing"],
            "genres": ["Simulation", "Co-op"],
            "hoursPlayed": 0.75,
            "completed": True,
        },
        {
            "id": "g_doom",
            "title": "DOOM Eternal",
            "moods": ["energetic", "intense"],
            "genres": ["FPS", "Action"],
            "minutes_played": 180,
            "playStatus": "completed",
        },
        {
            "gameId": "g_witcher",
            "name": "The Witcher 3",
            "moodTags": ["story driven", "immersive"],
            "genres": ["RPG", "Open World"],
            "hours_played": 3.5,
        },
        {
            "id": "g_tetris",
            "title": "Tetris Effect",
            "moods": ["zen", "puzzle"],
            "genres": ["Puzzle"],
            "session_length": "short",
            "recommended_times": ["late-night"],
        },
        {"id": "g_broken", "moods": ["chill"]},
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def engine(repository: InMemoryRepository, clock: FakeClock) -> PersonaEngine:
    return PersonaEngine(repository, clock=clock)


@pytest.fixture
def stocked_engine(
    repository: InMemoryRepository, clock: FakeClock, library_records
) -> PersonaEngine:
    repository.put_library("u1", library_records)
    return PersonaEngine(repository, clock=clock)


@pytest.fixture
def experienced_profile() -> PersonaProfile:
    """A profile that has seen enough selections to have clear preferences."""
    profile = PersonaProfile(user_id="u1")
    profile.mood_affinity = {Mood.COZY: 0.9, Mood.ZEN: 0.7, Mood.ENERGETIC: 0.2}
    profile.sample_size = 12
    profile.confidence = 0.55
    return profile
