"""Signal normalizer: raw library records to canonical ContextualItems."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

from persona_recommender.models import (
    ContextualItem,
    Genre,
    Mood,
    SessionLength,
    TimeOfDay,
)
from persona_recommender.settings import TuningSettings

logger = logging.getLogger(__name__)

_SHORT_SESSION_MAX_MINUTES = 30.0
_MEDIUM_SESSION_MAX_MINUTES = 120.0

_MOOD_ALIASES = {
    "relaxing": "relaxed",
    "calm": "relaxed",
    "chillax": "chill",
    "storydriven": "story-driven",
    "story": "story-driven",
    "explore": "exploration",
    "exploratory": "exploration",
    "adventure": "adventurous",
    "competition": "competitive",
    "compete": "competitive",
    "cooperative": "cooperate",
    "co-op": "cooperate",
    "high-energy": "energetic",
    "low-energy": "chill",
    "deep-focus": "focused",
    "immerse": "immersive",
}

_GENRE_ALIASES = {
    "co-operative": "co-op",
    "cooperative": "co-op",
    "coop": "co-op",
    "online-co-op": "co-op",
    "first-person-shooter": "fps",
    "third-person-shooter": "shooter",
    "tps": "shooter",
    "role-playing": "rpg",
    "role-playing-game": "rpg",
    "action-rpg": "rpg",
    "jrpg": "rpg",
    "openworld": "open-world",
    "massively-multiplayer": "mmo",
    "mmorpg": "mmo",
    "multi-player": "multiplayer",
    "online-multiplayer": "multiplayer",
    "roguelite": "roguelike",
    "sim": "simulation",
    "sport": "sports",
}

# (minimum aggressiveness, trigger labels, times added); a rule fires only
# when the tuning aggressiveness is strictly above its minimum.
_TIME_RULES: tuple[tuple[float, frozenset[str], tuple[TimeOfDay, ...]], ...] = (
    (
        0.2,
        frozenset({"energetic", "competitive", "focused", "intense", "action", "fps"}),
        (TimeOfDay.MORNING,),
    ),
    (
        0.3,
        frozenset({"chill", "cozy", "casual", "puzzle", "relaxed", "simulation"}),
        (TimeOfDay.LATE_NIGHT,),
    ),
    (
        0.4,
        frozenset(
            {
                "creative",
                "immersive",
                "story-driven",
                "exploration",
                "rpg",
                "adventure",
                "strategy",
            }
        ),
        (TimeOfDay.AFTERNOON, TimeOfDay.EVENING),
    ),
)

_DEFAULT_TIMES = frozenset({TimeOfDay.EVENING})


def _fold_label(value: str) -> str:
    return re.sub(r"[\s_]+", "-", value.strip().lower())


def canonical_mood(value: Any) -> Mood | None:
    """Return the :class:`Mood` named by *value*, or ``None`` if unknown.

    Accepts enum members, plain strings in any case/spacing, and
    ``{"name": ...}`` / ``{"id": ...}`` mappings.
    """
    if isinstance(value, Mood):
        return value
    label = _label_of(value)
    if label is None:
        return None
    folded = _fold_label(label)
    folded = _MOOD_ALIASES.get(folded, folded)
    try:
        return Mood(folded)
    except ValueError:
        return None


def canonical_genre(value: Any) -> Genre | None:
    """Return the :class:`Genre` named by *value*, or ``None`` if unknown."""
    if isinstance(value, Genre):
        return value
    label = _label_of(value)
    if label is None:
        return None
    folded = _fold_label(label)
    folded = _GENRE_ALIASES.get(folded, folded)
    try:
        return Genre(folded)
    except ValueError:
        return None


def detect_time_of_day(moment: datetime) -> TimeOfDay:
    """Bucket a wall-clock time into a :class:`TimeOfDay`."""
    hour = moment.hour
    if 5 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 22:
        return TimeOfDay.EVENING
    return TimeOfDay.LATE_NIGHT


def infer_session_length(minutes_played: float | None) -> SessionLength:
    """Infer a session bucket from play duration.

    Unknown duration counts as zero minutes, i.e. ``short``.
    """
    minutes = minutes_played or 0.0
    if minutes < _SHORT_SESSION_MAX_MINUTES:
        return SessionLength.SHORT
    if minutes <= _MEDIUM_SESSION_MAX_MINUTES:
        return SessionLength.MEDIUM
    return SessionLength.LONG


def infer_recommended_times(
    moods: Iterable[Mood],
    genres: Iterable[Genre],
    aggressiveness: float,
) -> frozenset[TimeOfDay]:
    """Infer suitable times of day from mood and genre heuristics.

    Args:
        moods: Canonical moods of the item.
        genres: Canonical genres of the item.
        aggressiveness: 0–1 gate; each rule has a minimum above which it
            may fire.

    Returns:
        The inferred times, or ``{evening}`` if no rule fired.
    """
    labels = {m.value for m in moods} | {g.value for g in genres}
    times: set[TimeOfDay] = set()
    for minimum, triggers, added in _TIME_RULES:
        if aggressiveness > minimum and labels & triggers:
            times.update(added)
    return frozenset(times) if times else _DEFAULT_TIMES


def normalize_item(
    record: Mapping[str, Any], tuning: TuningSettings | None = None
) -> ContextualItem | None:
    """Convert one raw library record into a :class:`ContextualItem`.

    Args:
        record: Heterogeneous record (camelCase or snake_case keys).
        tuning: Supplies the auto-tagging aggressiveness.

    Returns:
        The canonical item, or ``None`` if the record has no id or title.
    """
    tuning = tuning or TuningSettings()
    if not isinstance(record, Mapping):
        return None
    item_id = _first(record, "item_id", "id", "gameId")
    title = _first(record, "title", "name")
    if item_id in (None, "") or not isinstance(title, str) or not title.strip():
        return None

    moods: set[Mood] = set()
    for raw in _as_list(_first(record, "moods", "moodTags", "mood")):
        mood = canonical_mood(raw)
        if mood is not None:
            moods.add(mood)

    genres: set[Genre] = set()
    tags: set[str] = set()
    for raw in _as_list(_first(record, "genres", "genre")):
        genre = canonical_genre(raw)
        if genre is not None:
            genres.add(genre)
        else:
            label = _label_of(raw)
            if label and label.strip():
                tags.add(label.strip().lower())
    for raw in _as_list(record.get("tags")):
        label = _label_of(raw)
        if label and label.strip():
            tags.add(label.strip().lower())

    minutes_played = _minutes_played(record)

    session_length = _parse_enum(
        SessionLength, _first(record, "session_length", "sessionLength")
    )
    if session_length is None:
        session_length = infer_session_length(minutes_played)

    explicit_times = _first(record, "recommended_times", "recommendedTimes")
    if explicit_times is not None:
        times = frozenset(
            t
            for t in (_parse_enum(TimeOfDay, raw) for raw in _as_list(explicit_times))
            if t is not None
        )
    else:
        times = infer_recommended_times(
            moods, genres, tuning.auto_tagging_aggressiveness
        )

    status = _first(record, "play_status", "playStatus", "status")
    completed = bool(record.get("completed")) or (
        isinstance(status, str) and status.strip().lower() == "completed"
    )

    platform = record.get("platform")
    return ContextualItem(
        item_id=str(item_id),
        title=title.strip(),
        moods=frozenset(moods),
        genres=frozenset(genres),
        tags=frozenset(tags),
        session_length=session_length,
        recommended_times=times,
        minutes_played=minutes_played,
        last_played=_parse_datetime(_first(record, "last_played", "lastPlayed")),
        completed=completed,
        platform=platform.strip().lower() if isinstance(platform, str) and platform.strip() else None,
    )


def normalize_items(
    records: Iterable[Mapping[str, Any]], tuning: TuningSettings | None = None
) -> tuple[list[ContextualItem], int]:
    """Normalize a batch, returning ``(items, skipped_count)``.

    Malformed records are skipped and counted, never raised.  Duplicate
    item ids keep their first occurrence.
    """
    items: list[ContextualItem] = []
    seen: set[str] = set()
    skipped = 0
    for record in records:
        try:
            item = normalize_item(record, tuning)
        except (TypeError, ValueError):
            logger.warning("Could not normalize library record; skipping.", exc_info=True)
            item = None
        if item is None:
            skipped += 1
            continue
        if item.item_id in seen:
            continue
        seen.add(item.item_id)
        items.append(item)
    if skipped:
        logger.warning("Skipped %d malformed library record(s).", skipped)
    return items, skipped


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return None


def _label_of(value: Any) -> str | None:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        for key in ("name", "id"):
            if isinstance(value.get(key), str):
                return value[key]
    return None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (str, Mapping)):
        return [value]
    if isinstance(value, Iterable):
        return list(value)
    # Scalars such as numbers carry no tags.
    return []


def _parse_enum(enum_cls: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(_fold_label(value))
        except ValueError:
            return None
    return None


def _minutes_played(record: Mapping[str, Any]) -> float | None:
    minutes = _first(record, "minutes_played", "minutesPlayed", "playtime_minutes")
    if isinstance(minutes, (int, float)) and not isinstance(minutes, bool):
        return max(float(minutes), 0.0)
    hours = _first(record, "hours_played", "hoursPlayed")
    if isinstance(hours, (int, float)) and not isinstance(hours, bool):
        return max(float(hours) * 60.0, 0.0)
    return None


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
