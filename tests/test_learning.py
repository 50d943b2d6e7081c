"""Tests for persona_recommender.learning.

The update rules are the heart of the adaptive loop: these tests pin the
incremental-update arithmetic, confidence monotonicity, replay safety and
the per-user serialization of concurrent writes.
"""

from __future__ import annotations

import gc
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from persona_recommender.errors import ConcurrentUpdateError, VersionConflictError
from persona_recommender.learning import (
    LearningLoop,
    apply_mood_selection,
    apply_recommendation_outcome,
    apply_user_action,
    confidence_for,
    incremental_update,
    new_profile,
)
from persona_recommender.models import (
    ActionType,
    ContextualFilters,
    Mood,
    MoodContext,
    MoodSelection,
    PersonaProfile,
    RecommendationEvent,
    RecommendedItem,
    SelectionContext,
    SelectionOutcomes,
    TimeOfDay,
    Trigger,
    UserAction,
)
from persona_recommender.settings import LearningParameters
from persona_recommender.store import InMemoryRepository


TS = datetime(2024, 6, 1, 19, 0, 0, tzinfo=timezone.utc)
PARAMS = LearningParameters()


def _selection(n: int = 0, mood: Mood = Mood.ENERGETIC, **kwargs) -> MoodSelection:
    defaults = dict(
        selection_id=f"sel-{n}",
        user_id="u1",
        primary_mood=mood,
        intensity=0.8,
        context=SelectionContext(time_of_day=TimeOfDay.EVENING, day_of_week=5),
        timestamp=TS + timedelta(minutes=n),
    )
    defaults.update(kwargs)
    return MoodSelection(**defaults)


def _action(n: int, action_type: ActionType, **kwargs) -> UserAction:
    defaults = dict(
        action_id=f"act-{n}",
        user_id="u1",
        action_type=action_type,
        item_id="g1",
        timestamp=TS + timedelta(minutes=n),
        genres=("rpg",),
        tags=("fantasy",),
        platform="pc",
    )
    defaults.update(kwargs)
    return UserAction(**defaults)


def _event(chosen: str | None, success: bool | None = True) -> RecommendationEvent:
    return RecommendationEvent(
        event_id="evt-1",
        user_id="u1",
        mood_context=MoodContext(Mood.COZY, Mood.SOCIAL),
        filters=ContextualFilters(selected_moods=(Mood.COZY, Mood.SOCIAL)),
        candidates=(
            RecommendedItem("g1", "One", 80.0, genres=("simulation",), tags=("farming",)),
            RecommendedItem("g2", "Two", 60.0, genres=("fps",), tags=("gore",)),
        ),
        timestamp=TS,
        chosen_item_id=chosen,
        success=success,
    )


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------


class TestConfidence:
    def test_floor_at_zero_samples(self) -> None:
        assert confidence_for(0, PARAMS) == pytest.approx(0.1)

    def test_halfway_at_half_life(self) -> None:
        assert confidence_for(10, PARAMS) == pytest.approx(0.1 + 0.9 * 0.5)

    def test_monotonic_and_below_one(self) -> None:
        values = [confidence_for(n, PARAMS) for n in range(0, 500, 7)]
        assert values == sorted(values)
        assert len(set(values)) == len(values)
        assert all(v < 1.0 for v in values)


class TestIncrementalUpdate:
    def test_first_sample_closes_rate_fraction_of_gap(self) -> None:
        assert incremental_update(0.5, 1.0, 0.4, 0) == pytest.approx(0.7)

    def test_step_shrinks_with_sample_size(self) -> None:
        assert incremental_update(0.5, 1.0, 0.4, 3) == pytest.approx(0.55)

    def test_moves_toward_negative_signal(self) -> None:
        assert incremental_update(0.0, -1.0, 0.5, 0) == pytest.approx(-0.5)


class TestApplyMoodSelection:
    def test_updates_primary_affinity_and_counters(self) -> None:
        profile = apply_mood_selection(new_profile("u1", TS), _selection(), PARAMS)
        assert profile is not None
        # 0.5 + 0.5 × 0.8 × (1 − 0.5)
        assert profile.mood_affinity[Mood.ENERGETIC] == pytest.approx(0.7)
        assert profile.sample_size == 1
        assert profile.confidence == pytest.approx(confidence_for(1, PARAMS))
        assert profile.session_patterns.daily_rhythms == {"evening": {"energetic": 1}}
        assert profile.session_patterns.weekly_patterns == {5: {"energetic": 1}}
        assert profile.session_patterns.contextual_triggers == {"manual": "energetic"}

    def test_does_not_mutate_input(self) -> None:
        original = new_profile("u1", TS)
        apply_mood_selection(original, _selection(), PARAMS)
        assert original.mood_affinity == {}
        assert original.sample_size == 0

    def test_secondary_mood_moves_at_half_gain(self) -> None:
        selection = _selection(secondary_mood=Mood.SOCIAL, intensity=1.0)
        profile = apply_mood_selection(new_profile("u1", TS), selection, PARAMS)
        assert profile.mood_affinity[Mood.ENERGETIC] == pytest.approx(0.75)
        assert profile.mood_affinity[Mood.SOCIAL] == pytest.approx(0.625)

    def test_records_transition_and_outcomes(self) -> None:
        selection = _selection(
            secondary_mood=Mood.SOCIAL,
            context=SelectionContext(
                time_of_day=TimeOfDay.LATE_NIGHT,
                day_of_week=2,
                trigger=Trigger.SUGGESTED,
                previous_mood=Mood.CHILL,
            ),
            outcomes=SelectionOutcomes(
                items_recommended=4, items_launched=2, average_session_minutes=40.0
            ),
        )
        profile = apply_mood_selection(new_profile("u1", TS), selection, PARAMS)
        triggers = profile.session_patterns.contextual_triggers
        assert triggers == {"suggested": "energetic", "after:chill": "energetic"}
        assert profile.session_patterns.average_session_minutes == pytest.approx(40.0)
        # 0.5 + 0.5 × (0.5 − 0.5)
        assert profile.hybrid_success["energetic+social"] == pytest.approx(0.5)
        assert profile.time_preferences[TimeOfDay.LATE_NIGHT] > 0.5

    def test_replayed_selection_is_skipped(self) -> None:
        once = apply_mood_selection(new_profile("u1", TS), _selection(), PARAMS)
        assert apply_mood_selection(once, _selection(), PARAMS) is None

    def test_replay_guard_is_bounded(self) -> None:
        params = LearningParameters(replay_guard_size=3)
        profile = new_profile("u1", TS)
        for n in range(5):
            profile = apply_mood_selection(profile, _selection(n), params)
        assert profile.applied_event_ids == ["sel-2", "sel-3", "sel-4"]


class TestScenarioB:
    def test_affinity_strictly_increases_and_stays_below_one(self) -> None:
        profile = new_profile("u1", TS)
        history = []
        for n in range(10):
            profile = apply_mood_selection(profile, _selection(n), PARAMS)
            history.append(profile.mood_affinity[Mood.ENERGETIC])
        assert all(later > earlier for earlier, later in zip(history, history[1:]))
        assert history[-1] < 1.0
        assert profile.sample_size == 10

    def test_confidence_never_regresses(self) -> None:
        profile = new_profile("u1", TS)
        confidences = [profile.confidence]
        for n in range(10):
            profile = apply_mood_selection(profile, _selection(n), PARAMS)
            confidences.append(profile.confidence)
        assert confidences == sorted(confidences)


class TestApplyUserAction:
    def test_launch_pulls_weights_up(self) -> None:
        profile = apply_user_action(new_profile("u1", TS), _action(0, ActionType.LAUNCH), PARAMS)
        assert profile.genre_weights["rpg"] == pytest.approx(0.4)
        assert profile.tag_weights["fantasy"] == pytest.approx(0.4)
        assert profile.platform_biases["pc"] == pytest.approx(0.4)
        assert profile.sample_size == 1

    def test_ignore_pulls_weights_down(self) -> None:
        profile = apply_user_action(new_profile("u1", TS), _action(0, ActionType.IGNORE), PARAMS)
        assert profile.genre_weights["rpg"] == pytest.approx(-0.4)

    @pytest.mark.parametrize("rating, expected", [(5, 0.4), (3, 0.0), (1, -0.4), (4, 0.2)])
    def test_rating_maps_to_signal(self, rating, expected) -> None:
        action = _action(0, ActionType.RATE, metadata={"rating": rating})
        profile = apply_user_action(new_profile("u1", TS), action, PARAMS)
        assert profile.genre_weights["rpg"] == pytest.approx(expected)

    def test_weights_stay_within_bounds(self) -> None:
        params = LearningParameters(action_learning_rate=0.9)
        profile = new_profile("u1", TS)
        for n in range(20):
            profile = apply_user_action(profile, _action(n, ActionType.LAUNCH), params)
        assert 0.0 < profile.genre_weights["rpg"] <= 1.0

    def test_switch_mood_records_transition_only(self) -> None:
        action = _action(
            0,
            ActionType.SWITCH_MOOD,
            mood_context=MoodContext(Mood.FOCUSED),
            metadata={"previous_mood": "chill"},
        )
        profile = apply_user_action(new_profile("u1", TS), action, PARAMS)
        assert profile.genre_weights == {}
        assert profile.session_patterns.contextual_triggers == {"switch:chill": "focused"}

    def test_session_complete_records_duration(self) -> None:
        action = _action(0, ActionType.SESSION_COMPLETE, metadata={"session_duration": 95})
        profile = apply_user_action(new_profile("u1", TS), action, PARAMS)
        assert profile.session_patterns.average_session_minutes == pytest.approx(95.0)

    def test_launch_with_hybrid_mood_records_success(self) -> None:
        action = _action(0, ActionType.LAUNCH, mood_context=MoodContext(Mood.COZY, Mood.SOCIAL))
        profile = apply_user_action(new_profile("u1", TS), action, PARAMS)
        assert profile.hybrid_success["cozy+social"] == pytest.approx(0.7)


class TestApplyRecommendationOutcome:
    def test_chosen_up_and_passed_over_down_at_smaller_rate(self) -> None:
        profile = apply_recommendation_outcome(new_profile("u1", TS), _event("g1"), PARAMS)
        assert profile.genre_weights["simulation"] == pytest.approx(0.1)
        assert profile.tag_weights["farming"] == pytest.approx(0.1)
        assert profile.genre_weights["fps"] == pytest.approx(-0.1)
        assert abs(profile.genre_weights["simulation"]) < PARAMS.action_learning_rate

    def test_outcome_is_not_an_explicit_sample(self) -> None:
        profile = apply_recommendation_outcome(new_profile("u1", TS), _event("g1"), PARAMS)
        assert profile.sample_size == 0

    def test_event_without_outcome_is_ignored(self) -> None:
        event = _event(None, success=None)
        assert apply_recommendation_outcome(new_profile("u1", TS), event, PARAMS) is None

    def test_rejection_pushes_every_candidate_down(self) -> None:
        profile = apply_recommendation_outcome(
            new_profile("u1", TS), _event(None, success=False), PARAMS
        )
        assert profile.genre_weights["simulation"] == pytest.approx(-0.1)
        assert profile.hybrid_success["cozy+social"] == pytest.approx(0.45)


# ---------------------------------------------------------------------------
# Transactional loop
# ---------------------------------------------------------------------------


class TestLearningLoop:
    def test_creates_profile_lazily_and_bumps_version(self) -> None:
        repo = InMemoryRepository()
        loop = LearningLoop(repo, clock=lambda: TS)
        profile = loop.record_mood_selection(_selection())
        assert profile.version == 1
        assert repo.get_profile("u1").version == 1
        assert repo.get_profile("u1").created_at == TS

    def test_duplicate_event_is_a_no_op(self) -> None:
        repo = InMemoryRepository()
        loop = LearningLoop(repo)
        loop.record_mood_selection(_selection())
        again = loop.record_mood_selection(_selection())
        assert again.version == 1
        assert again.sample_size == 1

    def test_retries_after_version_conflict(self) -> None:
        repo = MagicMock()
        repo.get_profile.return_value = None
        repo.save_profile.side_effect = [VersionConflictError("u1", 0, 1), None]
        loop = LearningLoop(repo)
        profile = loop.record_mood_selection(_selection())
        assert repo.save_profile.call_count == 2
        assert profile.sample_size == 1

    def test_gives_up_with_retryable_error(self) -> None:
        repo = MagicMock()
        repo.get_profile.return_value = None
        repo.save_profile.side_effect = VersionConflictError("u1", 0, 1)
        loop = LearningLoop(repo, LearningParameters(max_update_attempts=3))
        with pytest.raises(ConcurrentUpdateError) as excinfo:
            loop.record_mood_selection(_selection())
        assert excinfo.value.retryable is True
        assert repo.save_profile.call_count == 3

    def test_concurrent_updates_for_one_user_are_not_lost(self) -> None:
        repo = InMemoryRepository()
        loop = LearningLoop(repo)
        barrier = threading.Barrier(8)

        def submit(worker: int) -> None:
            barrier.wait()
            for i in range(5):
                loop.record_mood_selection(_selection(worker * 100 + i))

        threads = [threading.Thread(target=submit, args=(w,)) for w in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        profile = repo.get_profile("u1")
        assert profile.sample_size == 40
        assert profile.version == 40
        assert profile.session_patterns.daily_rhythms["evening"]["energetic"] == 40

    def test_replace_profile_takes_next_version(self) -> None:
        repo = InMemoryRepository()
        loop = LearningLoop(repo)
        loop.record_mood_selection(_selection())
        rebuilt = PersonaProfile(user_id="u1", sample_size=7)
        stored = loop.replace_profile(rebuilt)
        assert stored.version == 2
        assert repo.get_profile("u1").sample_size == 7

    def test_user_locks_are_released_after_updates(self) -> None:
        loop = LearningLoop(InMemoryRepository())
        loop.record_mood_selection(_selection(0))
        loop.record_mood_selection(_selection(1, user_id="u2"))
        gc.collect()
        assert "u1" not in loop._locks
        assert len(loop._locks) == 0
