"""Tests for persona_recommender.patterns (materialized views)."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from persona_recommender.learning import LearningLoop, new_profile
from persona_recommender.models import (
    ActionType,
    ContextualFilters,
    MetricPeriod,
    MetricType,
    Mood,
    MoodContext,
    MoodPrediction,
    MoodSelection,
    PatternType,
    RecommendationEvent,
    RecommendedItem,
    SelectionContext,
    SelectionOutcomes,
    TimeOfDay,
    Trigger,
    UserAction,
)
from persona_recommender.patterns import (
    compute_learning_metrics,
    predict_next_mood,
    recompute_mood_patterns,
    replay_profile,
    summarize_actions,
    summarize_mood_history,
)
from persona_recommender.store import InMemoryRepository


TS = datetime(2024, 6, 1, 19, 0, 0, tzinfo=timezone.utc)


def _selection(
    n: int,
    mood: Mood,
    time_of_day: TimeOfDay = TimeOfDay.EVENING,
    previous: Mood | None = None,
    launched: int = 0,
    rating: float | None = None,
) -> MoodSelection:
    return MoodSelection(
        selection_id=f"sel-{n}",
        user_id="u1",
        primary_mood=mood,
        intensity=0.6 + n / 100,
        context=SelectionContext(
            time_of_day=time_of_day,
            day_of_week=5,
            trigger=Trigger.MANUAL,
            previous_mood=previous,
        ),
        outcomes=SelectionOutcomes(
            items_recommended=2 if launched else 0,
            items_launched=launched,
            user_rating=rating,
        ),
        timestamp=TS + timedelta(minutes=n),
    )


def _action(n: int, action_type: ActionType, **metadata) -> UserAction:
    return UserAction(
        action_id=f"act-{n}",
        user_id="u1",
        action_type=action_type,
        item_id=f"g{n}",
        timestamp=TS + timedelta(minutes=n),
        metadata=metadata,
        genres=("rpg",),
        tags=("fantasy",),
    )


def _event(n: int, success: bool | None) -> RecommendationEvent:
    return RecommendationEvent(
        event_id=f"evt-{n}",
        user_id="u1",
        mood_context=MoodContext(Mood.COZY),
        filters=ContextualFilters(selected_moods=(Mood.COZY,)),
        candidates=(
            RecommendedItem("g1", "One", 80.0, genres=("simulation",)),
            RecommendedItem("g2", "Two", 50.0, genres=("fps",)),
        ),
        timestamp=TS + timedelta(minutes=n),
        chosen_item_id="g1" if success else None,
        success=success,
    )


HISTORY = [
    _selection(0, Mood.ENERGETIC, launched=2),
    _selection(1, Mood.ENERGETIC, previous=Mood.CHILL, launched=1),
    _selection(2, Mood.COZY, time_of_day=TimeOfDay.MORNING, previous=Mood.ENERGETIC),
    _selection(3, Mood.ENERGETIC, previous=Mood.COZY),
]


class TestRecomputeMoodPatterns:
    def test_daily_rhythm_rows(self) -> None:
        patterns = recompute_mood_patterns("u1", HISTORY)
        daily = [p for p in patterns if p.pattern_type == PatternType.DAILY_RHYTHM]
        assert [(p.pattern_key, p.mood, p.frequency) for p in daily] == [
            ("evening", Mood.ENERGETIC, 3),
            ("morning", Mood.COZY, 1),
        ]
        evening = daily[0]
        # launch rates 1.0 and 0.5; the third selection had no recommendations
        assert evening.success_rate == pytest.approx(0.75)
        assert evening.last_seen == TS + timedelta(minutes=3)
        assert evening.confidence == pytest.approx(1.0)

    def test_confidence_is_share_within_key(self) -> None:
        patterns = recompute_mood_patterns("u1", HISTORY)
        weekly = [p for p in patterns if p.pattern_type == PatternType.WEEKLY_PATTERN]
        assert [(p.mood, p.confidence) for p in weekly] == [
            (Mood.ENERGETIC, pytest.approx(0.75)),
            (Mood.COZY, pytest.approx(0.25)),
        ]

    def test_transition_triggers(self) -> None:
        patterns = recompute_mood_patterns("u1", HISTORY)
        keys = {
            p.pattern_key
            for p in patterns
            if p.pattern_type == PatternType.CONTEXTUAL_TRIGGER
        }
        assert keys == {"manual", "after:chill", "after:energetic", "after:cozy"}

    def test_other_users_are_ignored(self) -> None:
        assert recompute_mood_patterns("u2", HISTORY) == []

    def test_recomputation_is_stable(self) -> None:
        assert recompute_mood_patterns("u1", HISTORY) == recompute_mood_patterns(
            "u1", list(reversed(HISTORY))
        )


class TestComputeLearningMetrics:
    def test_all_metric_types_reported(self) -> None:
        metrics = compute_learning_metrics("u1", TS, MetricPeriod.DAILY)
        assert [m.metric_type for m in metrics] == list(MetricType)
        assert all(m.sample_count == 0 and m.value == 0.0 for m in metrics)

    def test_values_over_window(self) -> None:
        now = TS + timedelta(hours=1)
        predictions = [
            MoodPrediction("p1", "u1", Mood.CHILL, 0.5, TS, accepted=True),
            MoodPrediction("p2", "u1", Mood.CHILL, 0.5, TS, accepted=False),
            MoodPrediction("p3", "u1", Mood.CHILL, 0.5, TS),
        ]
        actions = [_action(5, ActionType.RATE, rating=4), _action(6, ActionType.LAUNCH)]
        events = [_event(7, True), _event(8, False), _event(9, None)]
        selections = HISTORY + [_selection(10, Mood.ZEN, rating=5)]
        metrics = {
            m.metric_type: m
            for m in compute_learning_metrics(
                "u1",
                now,
                MetricPeriod.DAILY,
                selections=selections,
                actions=actions,
                events=events,
                predictions=predictions,
            )
        }
        assert metrics[MetricType.PREDICTION_ACCURACY].value == pytest.approx(0.5)
        assert metrics[MetricType.PREDICTION_ACCURACY].sample_count == 2
        assert metrics[MetricType.RECOMMENDATION_SUCCESS].value == pytest.approx(0.5)
        assert metrics[MetricType.USER_SATISFACTION].value == pytest.approx((0.8 + 1.0) / 2)
        # energetic → energetic → cozy → energetic → zen
        assert metrics[MetricType.ADAPTATION_RATE].value == pytest.approx(3 / 4)

    def test_rows_outside_period_are_excluded(self) -> None:
        now = TS + timedelta(days=2)
        metrics = compute_learning_metrics(
            "u1", now, MetricPeriod.DAILY, selections=HISTORY
        )
        assert all(m.sample_count == 0 for m in metrics)
        weekly = compute_learning_metrics("u1", now, MetricPeriod.WEEKLY, selections=HISTORY)
        assert weekly[2].sample_count == 3


class TestReplayProfile:
    def test_replay_matches_incremental_profile(self) -> None:
        repo = InMemoryRepository()
        loop = LearningLoop(repo, clock=lambda: TS)
        selections = HISTORY
        actions = [
            _action(4, ActionType.LAUNCH),
            _action(5, ActionType.IGNORE),
            _action(6, ActionType.RATE, rating=5),
            _action(7, ActionType.SESSION_COMPLETE, session_duration=50),
        ]
        event = _event(8, True)
        for selection in selections:
            loop.record_mood_selection(selection)
        for action in actions:
            loop.record_user_action(action)
        loop.record_recommendation_outcome(event)

        rebuilt = replay_profile("u1", selections, actions, [event])
        assert rebuilt == repo.get_profile("u1")

    def test_replay_order_does_not_depend_on_input_order(self) -> None:
        forward = replay_profile("u1", HISTORY)
        backward = replay_profile("u1", list(reversed(HISTORY)))
        assert forward == backward

    def test_empty_log_gives_neutral_profile(self) -> None:
        profile = replay_profile("u1")
        assert profile.sample_size == 0
        assert profile.mood_affinity == {}
        assert profile.confidence == pytest.approx(0.1)

    def test_duplicate_events_are_folded_once(self) -> None:
        profile = replay_profile("u1", HISTORY + [HISTORY[0]])
        assert profile.sample_size == len(HISTORY)

    def test_outcome_is_folded_when_it_was_recorded(self) -> None:
        repo = InMemoryRepository()
        loop = LearningLoop(repo, clock=lambda: TS)
        event = dataclasses.replace(_event(3, False), outcome_at=TS + timedelta(minutes=10))
        action = dataclasses.replace(_action(5, ActionType.LAUNCH), genres=("simulation",))
        loop.record_user_action(action)
        loop.record_recommendation_outcome(event)

        rebuilt = replay_profile("u1", actions=[action], events=[event])
        live = repo.get_profile("u1")
        assert rebuilt.genre_weights == live.genre_weights
        assert rebuilt.tag_weights == live.tag_weights
        assert rebuilt.updated_at == event.outcome_at


class TestPredictNextMood:
    def test_picks_dominant_mood_for_time_bucket(self) -> None:
        profile = replay_profile("u1", HISTORY)
        prediction = predict_next_mood("u1", profile, HISTORY, TS + timedelta(days=1))
        assert prediction.predicted_mood == Mood.ENERGETIC
        assert 0.0 < prediction.confidence <= profile.confidence
        assert "time_of_day:evening" in prediction.contextual_factors
        assert prediction.reasoning
        assert prediction.accepted is None

    def test_time_bucket_history_outweighs_overall_frequency(self) -> None:
        profile = replay_profile("u1", HISTORY)
        morning = TS.replace(hour=8) + timedelta(days=1)
        prediction = predict_next_mood("u1", profile, HISTORY, morning)
        assert prediction.predicted_mood == Mood.COZY

    def test_cold_start_suggests_typical_mood(self) -> None:
        late = TS.replace(hour=23)
        prediction = predict_next_mood("u1", new_profile("u1", TS), [], late, "p1")
        assert prediction.prediction_id == "p1"
        assert prediction.predicted_mood == Mood.CHILL
        assert prediction.confidence == pytest.approx(0.05)


class TestSummaries:
    def test_mood_history(self) -> None:
        summary = summarize_mood_history(HISTORY, recent=2)
        assert summary.total == 4
        assert summary.distribution == {Mood.ENERGETIC: 3, Mood.COZY: 1}
        assert summary.most_used == Mood.ENERGETIC
        assert summary.least_used == Mood.COZY
        assert summary.recent == (Mood.ENERGETIC, Mood.COZY)
        assert summary.average_intensity[Mood.COZY] == pytest.approx(0.62)

    def test_empty_history(self) -> None:
        summary = summarize_mood_history([])
        assert summary.total == 0
        assert summary.most_used is None

    def test_actions(self) -> None:
        actions = [
            _action(0, ActionType.LAUNCH),
            _action(1, ActionType.IGNORE),
            _action(2, ActionType.IGNORE),
            _action(3, ActionType.RATE, rating=4),
            _action(4, ActionType.RATE, rating=2),
        ]
        summary = summarize_actions(actions)
        assert summary.total == 5
        assert summary.by_type == {
            ActionType.LAUNCH: 1,
            ActionType.IGNORE: 2,
            ActionType.RATE: 2,
        }
        assert summary.launched_items == ("g0",)
        assert summary.ignore_rate == pytest.approx(2 / 3)
        assert summary.average_rating == pytest.approx(3.0)
