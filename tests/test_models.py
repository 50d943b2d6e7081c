"""Tests for persona_recommender.models, settings and errors."""

from dataclasses import FrozenInstanceError

import pytest

from persona_recommender.errors import ConcurrentUpdateError, ValidationError
from persona_recommender.models import (
    ContextualItem,
    Genre,
    Mood,
    PersonaProfile,
    SelectionOutcomes,
    SessionPatterns,
    TimeOfDay,
)
from persona_recommender.settings import LearningParameters, TuningSettings


class TestEnums:
    def test_string_values(self) -> None:
        assert Mood.STORY_DRIVEN == "story-driven"
        assert TimeOfDay.LATE_NIGHT == "late-night"
        assert isinstance(Genre.CO_OP, str)

    def test_closed_mood_set(self) -> None:
        assert len(Mood) == 27
        with pytest.raises(ValueError):
            Mood("grumpy")


class TestContextualItem:
    def test_multiplayer_from_genre(self) -> None:
        item = ContextualItem("g1", "Overcooked", genres=frozenset({Genre.CO_OP}))
        assert item.is_multiplayer

    def test_multiplayer_from_tag(self) -> None:
        item = ContextualItem("g1", "Raft", tags=frozenset({"online co-op"}))
        assert item.is_multiplayer

    def test_single_player(self) -> None:
        item = ContextualItem("g1", "Celeste", genres=frozenset({Genre.PLATFORMER}))
        assert not item.is_multiplayer

    def test_learning_keys_sorted(self) -> None:
        item = ContextualItem(
            "g1",
            "Hades",
            genres=frozenset({Genre.ROGUELIKE, Genre.ACTION}),
            tags=frozenset({"greek", "fast"}),
        )
        assert item.learning_keys() == (["action", "roguelike"], ["fast", "greek"])

    def test_frozen(self) -> None:
        item = ContextualItem("g1", "Hades")
        with pytest.raises(FrozenInstanceError):
            item.title = "Hades II"


class TestSelectionOutcomes:
    def test_success_rate(self) -> None:
        assert SelectionOutcomes(items_recommended=4, items_launched=1).success_rate == 0.25

    def test_success_rate_without_recommendations(self) -> None:
        assert SelectionOutcomes(items_launched=2).success_rate == 0.0

    def test_success_rate_capped(self) -> None:
        assert SelectionOutcomes(items_recommended=1, items_launched=3).success_rate == 1.0


class TestPersonaProfile:
    def test_defaults(self) -> None:
        profile = PersonaProfile(user_id="u1")
        assert profile.confidence == pytest.approx(0.1)
        assert profile.sample_size == 0
        assert profile.version == 0
        assert profile.time_preferences == {t: 0.5 for t in TimeOfDay}

    def test_defaults_not_shared(self) -> None:
        a = PersonaProfile(user_id="a")
        b = PersonaProfile(user_id="b")
        a.genre_weights["rpg"] = 1.0
        assert b.genre_weights == {}

    def test_average_session_minutes(self) -> None:
        patterns = SessionPatterns()
        assert patterns.average_session_minutes is None
        patterns.session_minutes_total = 90.0
        patterns.session_count = 2
        assert patterns.average_session_minutes == pytest.approx(45.0)


class TestSettings:
    def test_tuning_defaults(self) -> None:
        tuning = TuningSettings()
        assert tuning.persona_weight == pytest.approx(0.4)
        assert tuning.auto_tagging_aggressiveness == pytest.approx(0.5)

    def test_tuning_rejects_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="mood_weight"):
            TuningSettings(mood_weight=1.5)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"mood_learning_rate": 0.0},
            {"outcome_learning_rate": 0.6},
            {"confidence_half_life": 0},
            {"replay_guard_size": 0},
            {"max_update_attempts": 0},
        ],
    )
    def test_learning_parameters_rejected(self, kwargs) -> None:
        with pytest.raises(ValueError):
            LearningParameters(**kwargs)

    def test_outcome_rate_below_explicit_rates(self) -> None:
        params = LearningParameters()
        assert params.outcome_learning_rate < params.action_learning_rate
        assert params.outcome_learning_rate < params.mood_learning_rate


class TestErrors:
    def test_validation_error_carries_field(self) -> None:
        err = ValidationError("intensity", "must be within [0, 1]")
        assert err.field == "intensity"
        assert str(err) == "intensity: must be within [0, 1]"
        assert isinstance(err, ValueError)

    def test_concurrent_update_is_retryable(self) -> None:
        err = ConcurrentUpdateError("u1", 3)
        assert err.retryable
        assert err.attempts == 3
        assert "u1" in str(err)
