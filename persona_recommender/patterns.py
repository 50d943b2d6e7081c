"""Materialized views recomputed from the append-only event log.

Mood patterns, learning metrics and history summaries are caches: every
function here is a pure fold over MoodSelection / UserAction /
RecommendationEvent / MoodPrediction rows, so they can be dropped and
rebuilt at any time.  :func:`replay_profile` rebuilds the learned profile
itself the same way.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from persona_recommender.learning import (
    apply_mood_selection,
    apply_recommendation_outcome,
    apply_user_action,
    new_profile,
)
from persona_recommender.models import (
    ActionType,
    LearningMetrics,
    MetricPeriod,
    MetricType,
    Mood,
    MoodPattern,
    MoodPrediction,
    MoodSelection,
    PatternType,
    PersonaProfile,
    RecommendationEvent,
    TimeOfDay,
    UserAction,
)
from persona_recommender.normalizer import detect_time_of_day
from persona_recommender.settings import LearningParameters

logger = logging.getLogger(__name__)

PERIOD_LENGTHS = {
    MetricPeriod.DAILY: timedelta(days=1),
    MetricPeriod.WEEKLY: timedelta(days=7),
    MetricPeriod.MONTHLY: timedelta(days=30),
}

# Prediction blend: time-bucket history, overall frequency, learned affinity.
_RHYTHM_WEIGHT = 0.5
_FREQUENCY_WEIGHT = 0.3
_AFFINITY_WEIGHT = 0.2

_FALLBACK_MOODS = {
    TimeOfDay.MORNING: Mood.FOCUSED,
    TimeOfDay.AFTERNOON: Mood.CASUAL,
    TimeOfDay.EVENING: Mood.RELAXED,
    TimeOfDay.LATE_NIGHT: Mood.CHILL,
}


# ---------------------------------------------------------------------------
# Mood patterns
# ---------------------------------------------------------------------------


def recompute_mood_patterns(
    user_id: str, selections: Iterable[MoodSelection]
) -> list[MoodPattern]:
    """Rebuild every mood pattern row for *user_id* from its selections.

    One row is produced per (pattern type, pattern key, mood):

    - ``daily_rhythm`` keyed by time-of-day bucket,
    - ``weekly_pattern`` keyed by weekday (``"0"`` = Monday),
    - ``contextual_trigger`` keyed by trigger, plus ``after:<mood>`` for
      selections that followed a different mood.

    ``frequency`` counts the selections, ``success_rate`` averages the
    launch rate of those that produced recommendations and ``confidence``
    is the mood's share of all selections under the same key.

    Returns:
        Rows ordered by pattern type, key, then descending frequency.
    """
    groups: dict[tuple[PatternType, str], dict[Mood, list[MoodSelection]]] = defaultdict(
        lambda: defaultdict(list)
    )
    for selection in selections:
        if selection.user_id != user_id:
            continue
        ctx = selection.context
        keys = [
            (PatternType.DAILY_RHYTHM, ctx.time_of_day.value),
            (PatternType.WEEKLY_PATTERN, str(ctx.day_of_week)),
            (PatternType.CONTEXTUAL_TRIGGER, ctx.trigger.value),
        ]
        if ctx.previous_mood is not None and ctx.previous_mood != selection.primary_mood:
            keys.append((PatternType.CONTEXTUAL_TRIGGER, f"after:{ctx.previous_mood.value}"))
        for key in keys:
            groups[key][selection.primary_mood].append(selection)

    type_order = list(PatternType)
    patterns: list[MoodPattern] = []
    for (pattern_type, key), by_mood in groups.items():
        total = sum(len(rows) for rows in by_mood.values())
        for mood, rows in by_mood.items():
            rated = [r.outcomes.success_rate for r in rows if r.outcomes.items_recommended > 0]
            patterns.append(
                MoodPattern(
                    user_id=user_id,
                    pattern_type=pattern_type,
                    pattern_key=key,
                    mood=mood,
                    frequency=len(rows),
                    success_rate=sum(rated) / len(rated) if rated else 0.0,
                    last_seen=max(r.timestamp for r in rows),
                    confidence=len(rows) / total,
                )
            )
    patterns.sort(
        key=lambda p: (type_order.index(p.pattern_type), p.pattern_key, -p.frequency, p.mood.value)
    )
    return patterns


# ---------------------------------------------------------------------------
# Learning metrics
# ---------------------------------------------------------------------------


def compute_learning_metrics(
    user_id: str,
    now: datetime,
    period: MetricPeriod,
    selections: Iterable[MoodSelection] = (),
    actions: Iterable[UserAction] = (),
    events: Iterable[RecommendationEvent] = (),
    predictions: Iterable[MoodPrediction] = (),
) -> list[LearningMetrics]:
    """Compute one row per :class:`MetricType` over the trailing *period*.

    - ``prediction_accuracy``: share of resolved predictions the user
      accepted.
    - ``recommendation_success``: share of recommendation events with a
      recorded outcome that succeeded.
    - ``user_satisfaction``: mean explicit rating scaled to [0, 1], from
      ``rate`` actions and selection outcomes.
    - ``adaptation_rate``: share of mood selections that switched away
      from the previous selection's mood.

    A metric with no data in the window has value 0 and ``sample_count`` 0.
    """
    since = now - PERIOD_LENGTHS[period]

    def in_window(rows):
        return [r for r in rows if r.user_id == user_id and since <= r.timestamp <= now]

    window_selections = sorted(in_window(selections), key=lambda s: s.timestamp)
    window_actions = in_window(actions)
    window_events = in_window(events)
    window_predictions = in_window(predictions)

    resolved = [p.accepted for p in window_predictions if p.accepted is not None]
    outcomes = [e.success for e in window_events if e.success is not None]

    ratings: list[float] = []
    for action in window_actions:
        rating = action.metadata.get("rating")
        if action.action_type == ActionType.RATE and isinstance(rating, (int, float)):
            ratings.append(min(max(float(rating) / 5.0, 0.0), 1.0))
    for selection in window_selections:
        if selection.outcomes.user_rating is not None:
            ratings.append(min(max(selection.outcomes.user_rating / 5.0, 0.0), 1.0))

    switches = [
        current.primary_mood != previous.primary_mood
        for previous, current in zip(window_selections, window_selections[1:])
    ]

    def row(metric_type: MetricType, values: list) -> LearningMetrics:
        value = sum(float(v) for v in values) / len(values) if values else 0.0
        return LearningMetrics(
            user_id=user_id,
            metric_type=metric_type,
            value=value,
            period=period,
            timestamp=now,
            sample_count=len(values),
        )

    return [
        row(MetricType.PREDICTION_ACCURACY, resolved),
        row(MetricType.USER_SATISFACTION, ratings),
        row(MetricType.ADAPTATION_RATE, switches),
        row(MetricType.RECOMMENDATION_SUCCESS, outcomes),
    ]


# ---------------------------------------------------------------------------
# Profile reconstruction
# ---------------------------------------------------------------------------


def replay_profile(
    user_id: str,
    selections: Iterable[MoodSelection] = (),
    actions: Iterable[UserAction] = (),
    events: Iterable[RecommendationEvent] = (),
    params: LearningParameters | None = None,
) -> PersonaProfile:
    """Rebuild a profile from scratch by folding the event log in time order.

    Recommendation outcomes are placed at the time they were recorded
    (``outcome_at``), not when the recommendation was served.  Events with
    equal timestamps are applied selections first, then actions, then
    outcomes.  Events without an outcome are ignored.  Applied in the same
    order as they were recorded, the result carries the same learned
    weights as the incrementally built profile.
    """
    params = params or LearningParameters()
    log: list[tuple[datetime, int, object]] = []
    log.extend((s.timestamp, 0, s) for s in selections if s.user_id == user_id)
    log.extend((a.timestamp, 1, a) for a in actions if a.user_id == user_id)
    log.extend((e.learned_at, 2, e) for e in events if e.user_id == user_id)
    log.sort(key=lambda entry: (entry[0], entry[1]))

    profile = new_profile(user_id, log[0][0] if log else None)
    for _, kind, event in log:
        if kind == 0:
            updated = apply_mood_selection(profile, event, params)
        elif kind == 1:
            updated = apply_user_action(profile, event, params)
        else:
            updated = apply_recommendation_outcome(profile, event, params)
        if updated is not None:
            updated.version = profile.version + 1
            profile = updated
    logger.debug(
        "Replayed %d event(s) for user %r into version %d.",
        len(log),
        user_id,
        profile.version,
    )
    return profile


# ---------------------------------------------------------------------------
# Mood prediction
# ---------------------------------------------------------------------------


def predict_next_mood(
    user_id: str,
    profile: PersonaProfile,
    selections: Iterable[MoodSelection],
    now: datetime,
    prediction_id: str | None = None,
) -> MoodPrediction:
    """Forecast the user's next mood for the time bucket containing *now*.

    Each candidate mood scores a blend of its share of selections in the
    current time bucket, its share of all selections and its learned
    affinity.  The winner's blended score, scaled by the profile's
    confidence, becomes the prediction confidence.  Users without any
    history get a typical mood for the time of day at low confidence.
    """
    bucket = detect_time_of_day(now)
    rows = [s for s in selections if s.user_id == user_id]
    prediction_id = prediction_id or str(uuid.uuid4())

    overall = Counter(s.primary_mood for s in rows)
    in_bucket = Counter(s.primary_mood for s in rows if s.context.time_of_day == bucket)
    candidates = set(overall) | {m for m, w in profile.mood_affinity.items() if w > 0}

    if not candidates:
        return MoodPrediction(
            prediction_id=prediction_id,
            user_id=user_id,
            predicted_mood=_FALLBACK_MOODS[bucket],
            confidence=profile.confidence * 0.5,
            timestamp=now,
            reasoning=(f"No mood history yet; a typical {bucket.value} mood",),
            contextual_factors=(f"time_of_day:{bucket.value}",),
        )

    total = sum(overall.values())
    bucket_total = sum(in_bucket.values())

    def blended(mood: Mood) -> float:
        rhythm = in_bucket[mood] / bucket_total if bucket_total else 0.0
        frequency = overall[mood] / total if total else 0.0
        affinity = profile.mood_affinity.get(mood, 0.0)
        return (
            _RHYTHM_WEIGHT * rhythm
            + _FREQUENCY_WEIGHT * frequency
            + _AFFINITY_WEIGHT * affinity
        )

    best = min(candidates, key=lambda m: (-blended(m), m.value))
    reasoning: list[str] = []
    if in_bucket[best]:
        reasoning.append(
            f"You chose {best.value} {in_bucket[best]} time(s) in the {bucket.value}"
        )
    if overall[best]:
        reasoning.append(f"{best.value} is {overall[best]} of your {total} selections")
    if profile.mood_affinity.get(best):
        reasoning.append(f"Learned affinity for {best.value} is {profile.mood_affinity[best]:.2f}")

    factors = [f"time_of_day:{bucket.value}", f"day_of_week:{now.weekday()}"]
    if rows:
        latest = max(rows, key=lambda s: s.timestamp)
        factors.append(f"previous_mood:{latest.primary_mood.value}")

    return MoodPrediction(
        prediction_id=prediction_id,
        user_id=user_id,
        predicted_mood=best,
        confidence=min(blended(best), 1.0) * profile.confidence,
        timestamp=now,
        reasoning=tuple(reasoning),
        contextual_factors=tuple(factors),
    )


# ---------------------------------------------------------------------------
# History summaries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MoodHistorySummary:
    total: int = 0
    distribution: dict[Mood, int] = field(default_factory=dict)
    average_intensity: dict[Mood, float] = field(default_factory=dict)
    most_used: Mood | None = None
    least_used: Mood | None = None
    recent: tuple[Mood, ...] = ()


@dataclass(frozen=True)
class ActionSummary:
    total: int = 0
    by_type: dict[ActionType, int] = field(default_factory=dict)
    launched_items: tuple[str, ...] = ()
    ignore_rate: float = 0.0
    average_rating: float | None = None


def summarize_mood_history(
    selections: Iterable[MoodSelection], recent: int = 5
) -> MoodHistorySummary:
    """Aggregate a selection history into counts, intensities and recency."""
    rows = sorted(selections, key=lambda s: s.timestamp)
    if not rows:
        return MoodHistorySummary()
    counts = Counter(s.primary_mood for s in rows)
    intensities: dict[Mood, list[float]] = defaultdict(list)
    for s in rows:
        intensities[s.primary_mood].append(s.intensity)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0].value))
    return MoodHistorySummary(
        total=len(rows),
        distribution=dict(ranked),
        average_intensity={m: sum(v) / len(v) for m, v in sorted(intensities.items())},
        most_used=ranked[0][0],
        least_used=ranked[-1][0],
        recent=tuple(s.primary_mood for s in reversed(rows[-recent:])),
    )


def summarize_actions(actions: Iterable[UserAction]) -> ActionSummary:
    """Aggregate user actions into per-type counts and engagement ratios."""
    rows = sorted(actions, key=lambda a: a.timestamp)
    if not rows:
        return ActionSummary()
    by_type = Counter(a.action_type for a in rows)
    launched: list[str] = []
    for a in rows:
        if a.action_type == ActionType.LAUNCH and a.item_id not in launched:
            launched.append(a.item_id)
    ratings = [
        float(a.metadata["rating"])
        for a in rows
        if a.action_type == ActionType.RATE
        and isinstance(a.metadata.get("rating"), (int, float))
    ]
    shown = by_type[ActionType.LAUNCH] + by_type[ActionType.IGNORE]
    return ActionSummary(
        total=len(rows),
        by_type={t: by_type[t] for t in ActionType if by_type[t]},
        launched_items=tuple(launched),
        ignore_rate=by_type[ActionType.IGNORE] / shown if shown else 0.0,
        average_rating=sum(ratings) / len(ratings) if ratings else None,
    )
