"""Adaptive learning loop: folds events into the persisted PersonaProfile."""

from __future__ import annotations

import copy
import logging
import threading
import weakref
from datetime import datetime, timezone
from typing import Callable

from persona_recommender.errors import ConcurrentUpdateError, VersionConflictError
from persona_recommender.models import (
    ActionType,
    MoodContext,
    MoodSelection,
    PersonaProfile,
    RecommendationEvent,
    UserAction,
)
from persona_recommender.normalizer import detect_time_of_day
from persona_recommender.settings import LearningParameters
from persona_recommender.store import PersonaRepository

logger = logging.getLogger(__name__)

# Observed signal per action type; RATE is derived from the rating itself.
_ACTION_SIGNALS = {
    ActionType.LAUNCH: 1.0,
    ActionType.SESSION_COMPLETE: 1.0,
    ActionType.IGNORE: -1.0,
}
_SECONDARY_MOOD_FACTOR = 0.5

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Pure update rules
# ---------------------------------------------------------------------------


def confidence_for(sample_size: int, params: LearningParameters) -> float:
    """Saturating confidence: ``floor + (1 - floor)(1 - 1/(1 + n/k))``.

    Non-decreasing in *sample_size*, equal to the floor at zero and
    approaching 1 asymptotically.
    """
    n = max(sample_size, 0)
    saturation = 1.0 - 1.0 / (1.0 + n / params.confidence_half_life)
    return params.confidence_floor + (1.0 - params.confidence_floor) * saturation


def incremental_update(
    old: float, signal: float, rate: float, sample_size: int
) -> float:
    """Confidence-weighted moving update.

    ``new = old + rate × (signal - old) / (sample_size + 1)``.  With
    ``0 < rate < 1`` each step closes a strict fraction of the gap, so the
    result moves toward *signal* without ever reaching it.
    """
    return old + rate * (signal - old) / (max(sample_size, 0) + 1)


def new_profile(user_id: str, now: datetime | None = None) -> PersonaProfile:
    """Return the neutral profile a user starts with."""
    now = now or _utcnow()
    return PersonaProfile(user_id=user_id, created_at=now, updated_at=now)


def apply_mood_selection(
    profile: PersonaProfile,
    selection: MoodSelection,
    params: LearningParameters,
) -> PersonaProfile | None:
    """Fold one mood selection into a copy of *profile*.

    The primary mood's affinity moves toward 1 with a gain proportional to
    the selection's intensity; the secondary mood moves at half that gain.
    The selection is also counted in the daily/weekly rhythms.

    Returns:
        The updated copy, or ``None`` if the selection was already applied.
    """
    updated = _begin(profile, selection.selection_id, params)
    if updated is None:
        return None
    n = updated.sample_size
    rate = params.mood_learning_rate * selection.intensity

    old = updated.mood_affinity.get(selection.primary_mood, params.neutral_affinity)
    updated.mood_affinity[selection.primary_mood] = incremental_update(old, 1.0, rate, n)
    if selection.secondary_mood is not None and selection.secondary_mood != selection.primary_mood:
        old = updated.mood_affinity.get(selection.secondary_mood, params.neutral_affinity)
        updated.mood_affinity[selection.secondary_mood] = incremental_update(
            old, 1.0, rate * _SECONDARY_MOOD_FACTOR, n
        )

    ctx = selection.context
    patterns = updated.session_patterns
    mood_key = selection.primary_mood.value
    daily = patterns.daily_rhythms.setdefault(ctx.time_of_day.value, {})
    daily[mood_key] = daily.get(mood_key, 0) + 1
    weekly = patterns.weekly_patterns.setdefault(ctx.day_of_week, {})
    weekly[mood_key] = weekly.get(mood_key, 0) + 1
    patterns.contextual_triggers[ctx.trigger.value] = mood_key
    if ctx.previous_mood is not None and ctx.previous_mood != selection.primary_mood:
        patterns.contextual_triggers[f"after:{ctx.previous_mood.value}"] = mood_key

    outcomes = selection.outcomes
    if outcomes.average_session_minutes is not None and outcomes.average_session_minutes > 0:
        patterns.session_minutes_total += outcomes.average_session_minutes
        patterns.session_count += 1
    if selection.secondary_mood is not None and outcomes.items_recommended > 0:
        key = _hybrid_key(selection.primary_mood.value, selection.secondary_mood.value)
        old = updated.hybrid_success.get(key, 0.5)
        updated.hybrid_success[key] = incremental_update(
            old, outcomes.success_rate, params.mood_learning_rate, n
        )

    old = updated.time_preferences.get(ctx.time_of_day, 0.5)
    updated.time_preferences[ctx.time_of_day] = incremental_update(
        old, 1.0, rate, n
    )
    return _finish(updated, selection.timestamp, params, count_sample=True)


def apply_user_action(
    profile: PersonaProfile,
    action: UserAction,
    params: LearningParameters,
) -> PersonaProfile | None:
    """Fold one user action into a copy of *profile*.

    Launches, completed sessions and high ratings pull the item's genre,
    tag and platform weights toward +1; ignores and low ratings pull them
    toward -1.  ``switch_mood`` only records the transition.

    Returns:
        The updated copy, or ``None`` if the action was already applied.
    """
    updated = _begin(profile, action.action_id, params)
    if updated is None:
        return None
    n = updated.sample_size
    rate = params.action_learning_rate
    signal = _action_signal(action)

    if signal is not None:
        _pull_weights(updated, action.genres, action.tags, action.platform, signal, rate, n)
        if action.mood_context is not None:
            _update_hybrid(updated, action.mood_context, 1.0 if signal > 0 else 0.0, rate, n)
        if signal > 0:
            bucket = detect_time_of_day(action.timestamp)
            old = updated.time_preferences.get(bucket, 0.5)
            updated.time_preferences[bucket] = incremental_update(old, 1.0, rate, n)

    if action.action_type == ActionType.SWITCH_MOOD and action.mood_context is not None:
        previous = action.metadata.get("previous_mood")
        key = f"switch:{previous}" if previous else "switch"
        updated.session_patterns.contextual_triggers[key] = action.mood_context.primary_mood.value

    if action.action_type == ActionType.SESSION_COMPLETE:
        duration = _number(action.metadata.get("session_duration"))
        if duration is not None and duration > 0:
            updated.session_patterns.session_minutes_total += duration
            updated.session_patterns.session_count += 1

    return _finish(updated, action.timestamp, params, count_sample=True)


def apply_recommendation_outcome(
    profile: PersonaProfile,
    event: RecommendationEvent,
    params: LearningParameters,
) -> PersonaProfile | None:
    """Feed an implicit reward back into a copy of *profile*.

    The chosen candidate's genres/tags move toward +1 and the candidates
    passed over move toward -1, both at the (smaller) outcome learning
    rate.  Implicit signals do not count toward the sample size.

    Returns:
        The updated copy, or ``None`` if the outcome was already applied or
        the event carries no outcome yet.
    """
    if event.chosen_item_id is None and event.success is None:
        return None
    updated = _begin(profile, event.event_id, params)
    if updated is None:
        return None
    n = updated.sample_size
    rate = params.outcome_learning_rate
    for candidate in event.candidates:
        signal = 1.0 if candidate.item_id == event.chosen_item_id else -1.0
        _pull_weights(updated, candidate.genres, candidate.tags, None, signal, rate, n)
    if event.success is not None:
        _update_hybrid(updated, event.mood_context, 1.0 if event.success else 0.0, rate, n)
    return _finish(updated, event.learned_at, params, count_sample=False)


# ---------------------------------------------------------------------------
# Transactional loop
# ---------------------------------------------------------------------------


class LearningLoop:
    """Serialized read-modify-write of persona profiles.

    Each update loads the stored profile (or a neutral one), folds the
    event into a copy and saves it with a compare-and-set on ``version``.
    Updates for the same user are serialized by a per-user lock inside
    this process; the version check covers writers in other processes and
    is retried up to ``max_update_attempts`` times.

    Args:
        repository: Persistence collaborator.
        params: Learning parameters.
        clock: Time source used for newly created profiles.
    """

    def __init__(
        self,
        repository: PersonaRepository,
        params: LearningParameters | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._params = params or LearningParameters()
        self._clock = clock or _utcnow
        self._locks_guard = threading.Lock()
        # Entries vanish once no update holds the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def params(self) -> LearningParameters:
        return self._params

    def record_mood_selection(self, selection: MoodSelection) -> PersonaProfile:
        return self._update(
            selection.user_id,
            lambda p: apply_mood_selection(p, selection, self._params),
        )

    def record_user_action(self, action: UserAction) -> PersonaProfile:
        return self._update(
            action.user_id,
            lambda p: apply_user_action(p, action, self._params),
        )

    def record_recommendation_outcome(self, event: RecommendationEvent) -> PersonaProfile:
        return self._update(
            event.user_id,
            lambda p: apply_recommendation_outcome(p, event, self._params),
        )

    def replace_profile(self, rebuilt: PersonaProfile) -> PersonaProfile:
        """Store a rebuilt profile in place of the current one.

        The rebuilt profile takes the next version number so that readers
        holding the old version see the change.
        """
        return self._update(rebuilt.user_id, lambda _: copy.deepcopy(rebuilt))

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    def _update(
        self,
        user_id: str,
        fold: Callable[[PersonaProfile], PersonaProfile | None],
    ) -> PersonaProfile:
        attempts = self._params.max_update_attempts
        with self._lock_for(user_id):
            for attempt in range(1, attempts + 1):
                current = self._repository.get_profile(user_id)
                if current is None:
                    current = new_profile(user_id, self._clock())
                updated = fold(current)
                if updated is None:
                    logger.debug("Event already applied for user %r; skipping.", user_id)
                    return current
                updated.version = current.version + 1
                try:
                    self._repository.save_profile(updated, expected_version=current.version)
                except VersionConflictError as exc:
                    logger.warning(
                        "Version conflict updating user %r (attempt %d/%d): %s",
                        user_id,
                        attempt,
                        attempts,
                        exc,
                    )
                    continue
                return updated
        raise ConcurrentUpdateError(user_id, attempts)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _begin(
    profile: PersonaProfile, event_id: str, params: LearningParameters
) -> PersonaProfile | None:
    if event_id in profile.applied_event_ids:
        return None
    updated = copy.deepcopy(profile)
    updated.applied_event_ids.append(event_id)
    overflow = len(updated.applied_event_ids) - params.replay_guard_size
    if overflow > 0:
        del updated.applied_event_ids[:overflow]
    return updated


def _finish(
    profile: PersonaProfile,
    timestamp: datetime,
    params: LearningParameters,
    count_sample: bool,
) -> PersonaProfile:
    if count_sample:
        profile.sample_size += 1
    profile.confidence = max(profile.confidence, confidence_for(profile.sample_size, params))
    if profile.updated_at is None or timestamp > profile.updated_at:
        profile.updated_at = timestamp
    if profile.created_at is None:
        profile.created_at = timestamp
    return profile


def _action_signal(action: UserAction) -> float | None:
    if action.action_type == ActionType.RATE:
        rating = _number(action.metadata.get("rating"))
        if rating is None:
            return None
        return max(min((rating - 3.0) / 2.0, 1.0), -1.0)
    return _ACTION_SIGNALS.get(action.action_type)


def _pull_weights(
    profile: PersonaProfile,
    genres,
    tags,
    platform: str | None,
    signal: float,
    rate: float,
    n: int,
) -> None:
    for genre in genres:
        old = profile.genre_weights.get(genre, 0.0)
        profile.genre_weights[genre] = _clamp(incremental_update(old, signal, rate, n))
    for tag in tags:
        old = profile.tag_weights.get(tag, 0.0)
        profile.tag_weights[tag] = _clamp(incremental_update(old, signal, rate, n))
    if platform:
        old = profile.platform_biases.get(platform, 0.0)
        profile.platform_biases[platform] = _clamp(incremental_update(old, signal, rate, n))


def _update_hybrid(
    profile: PersonaProfile, mood: MoodContext, success: float, rate: float, n: int
) -> None:
    if mood.secondary_mood is None or mood.secondary_mood == mood.primary_mood:
        return
    key = _hybrid_key(mood.primary_mood.value, mood.secondary_mood.value)
    old = profile.hybrid_success.get(key, 0.5)
    profile.hybrid_success[key] = incremental_update(old, success, rate, n)


def _hybrid_key(primary: str, secondary: str) -> str:
    return f"{primary}+{secondary}"


def _number(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _clamp(value: float) -> float:
    return max(min(value, 1.0), -1.0)
