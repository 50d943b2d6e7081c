"""Persona context builder: library signals plus learned weights."""

from __future__ import annotations

import logging
import math
from typing import Iterable

from persona_recommender.models import (
    ContextualItem,
    Mood,
    PersonaContext,
    PersonaProfile,
    PlayPattern,
    SessionLength,
    TimeOfDay,
)
from persona_recommender.normalizer import detect_time_of_day

logger = logging.getLogger(__name__)

DEFAULT_TOP_MOODS = 5
DEFAULT_SESSION_MINUTES = 75.0

_SHORT_PREFERENCE_BELOW = 45.0
_LONG_PREFERENCE_ABOVE = 90.0
_COMPLETIONIST_ABOVE = 0.7
_SOCIAL_ABOVE = 0.5
_NIGHT_OWL_ABOVE = 0.3

NEUTRAL_CONTEXT = PersonaContext()


def preferred_session_length(average_minutes: float) -> SessionLength:
    """Map a mean session length onto a bucket (45 and 90 are ``medium``)."""
    if average_minutes < _SHORT_PREFERENCE_BELOW:
        return SessionLength.SHORT
    if average_minutes > _LONG_PREFERENCE_ABOVE:
        return SessionLength.LONG
    return SessionLength.MEDIUM


def build_persona_context(
    items: Iterable[ContextualItem] | None,
    profile: PersonaProfile | None,
    top_n: int = DEFAULT_TOP_MOODS,
) -> PersonaContext:
    """Aggregate a user's library and learned profile into a context.

    Pure and deterministic: identical inputs always produce an identical
    context.  Empty or corrupt input yields :data:`NEUTRAL_CONTEXT`
    (no dominant moods, ``medium`` sessions, ``evening`` play) rather than
    an exception.

    Args:
        items: The user's normalized library.
        profile: The user's learned profile, if any.
        top_n: Number of dominant moods to keep.

    Returns:
        The aggregated :class:`PersonaContext`.
    """
    try:
        item_list = [i for i in (items or []) if isinstance(i, ContextualItem)]
        if not item_list and (profile is None or profile.sample_size <= 0):
            return NEUTRAL_CONTEXT
        return _build(item_list, profile, top_n)
    except (AttributeError, TypeError, ValueError):
        logger.warning(
            "Could not build persona context; using neutral defaults.",
            exc_info=True,
        )
        return NEUTRAL_CONTEXT


def _build(
    items: list[ContextualItem], profile: PersonaProfile | None, top_n: int
) -> PersonaContext:
    affinity = _clean_affinity(profile)
    ranked = sorted(affinity.items(), key=lambda kv: (-kv[1], kv[0].value))
    dominant = tuple(mood for mood, weight in ranked[:top_n] if weight > 0)

    average_minutes = _average_session_minutes(items, profile)
    late_night_ratio = _late_night_ratio(items, profile)
    completion_rate = _ratio(items, lambda i: i.completed)
    multiplayer_ratio = _ratio(items, lambda i: i.is_multiplayer)

    times: list[TimeOfDay] = []
    if late_night_ratio > _NIGHT_OWL_ABOVE:
        times.append(TimeOfDay.LATE_NIGHT)
    if multiplayer_ratio > _SOCIAL_ABOVE:
        times.extend((TimeOfDay.AFTERNOON, TimeOfDay.EVENING))
    if not times:
        times.append(TimeOfDay.EVENING)

    patterns: list[PlayPattern] = []
    if completion_rate > _COMPLETIONIST_ABOVE:
        patterns.append(PlayPattern.COMPLETIONIST)
    if multiplayer_ratio > _SOCIAL_ABOVE:
        patterns.append(PlayPattern.SOCIAL)
    if late_night_ratio > _NIGHT_OWL_ABOVE:
        patterns.append(PlayPattern.NIGHT_OWL)

    return PersonaContext(
        dominant_moods=dominant,
        preferred_session_length=preferred_session_length(average_minutes),
        preferred_times=tuple(times),
        play_patterns=tuple(patterns),
        mood_affinity=affinity,
        average_session_minutes=average_minutes,
        late_night_ratio=late_night_ratio,
        completion_rate=completion_rate,
        multiplayer_ratio=multiplayer_ratio,
    )


def _clean_affinity(profile: PersonaProfile | None) -> dict[Mood, float]:
    if profile is None:
        return {}
    cleaned: dict[Mood, float] = {}
    for mood, weight in profile.mood_affinity.items():
        if not isinstance(mood, Mood):
            continue
        if not isinstance(weight, (int, float)) or math.isnan(weight):
            continue
        cleaned[mood] = min(max(float(weight), 0.0), 1.0)
    return dict(sorted(cleaned.items(), key=lambda kv: kv[0].value))


def _average_session_minutes(
    items: list[ContextualItem], profile: PersonaProfile | None
) -> float:
    if profile is not None:
        observed = profile.session_patterns.average_session_minutes
        if observed is not None:
            return observed
    durations = [i.minutes_played for i in items if i.minutes_played is not None]
    if not durations:
        return DEFAULT_SESSION_MINUTES
    return sum(durations) / len(durations)


def _late_night_ratio(
    items: list[ContextualItem], profile: PersonaProfile | None
) -> float:
    played = [i.last_played for i in items if i.last_played is not None]
    late = sum(1 for ts in played if detect_time_of_day(ts) == TimeOfDay.LATE_NIGHT)
    total = len(played)
    if profile is not None:
        for bucket, counts in profile.session_patterns.daily_rhythms.items():
            count = sum(counts.values())
            total += count
            if bucket == TimeOfDay.LATE_NIGHT.value:
                late += count
    return late / total if total else 0.0


def _ratio(items: list[ContextualItem], predicate) -> float:
    if not items:
        return 0.0
    return sum(1 for i in items if predicate(i)) / len(items)
