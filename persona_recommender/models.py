"""Core domain enums and dataclasses shared across all persona modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Mood(str, Enum):
    """Closed set of mood identifiers understood by the engine."""

    CHILL = "chill"
    COZY = "cozy"
    CASUAL = "casual"
    RELAXED = "relaxed"
    ZEN = "zen"
    LAZY = "lazy"
    FOCUSED = "focused"
    ENERGETIC = "energetic"
    INTENSE = "intense"
    COMPETITIVE = "competitive"
    SOCIAL = "social"
    COOPERATE = "cooperate"
    CREATIVE = "creative"
    IMMERSIVE = "immersive"
    STORY_DRIVEN = "story-driven"
    EXPLORATION = "exploration"
    ADVENTUROUS = "adventurous"
    CURIOUS = "curious"
    PUZZLE = "puzzle"
    STRATEGIC = "strategic"
    NOSTALGIC = "nostalgic"
    ESCAPE = "escape"
    GRIND = "grind"
    MASTER = "master"
    RAGE = "rage"
    HYPE = "hype"
    MYSTERIOUS = "mysterious"


class Genre(str, Enum):
    """Closed set of genre identifiers understood by the engine."""

    ACTION = "action"
    ADVENTURE = "adventure"
    RPG = "rpg"
    STRATEGY = "strategy"
    SIMULATION = "simulation"
    PUZZLE = "puzzle"
    CASUAL = "casual"
    SPORTS = "sports"
    RACING = "racing"
    FIGHTING = "fighting"
    FPS = "fps"
    SHOOTER = "shooter"
    PLATFORMER = "platformer"
    HORROR = "horror"
    SURVIVAL = "survival"
    SANDBOX = "sandbox"
    INDIE = "indie"
    ROGUELIKE = "roguelike"
    MMO = "mmo"
    MOBA = "moba"
    OPEN_WORLD = "open-world"
    PARTY = "party"
    MULTIPLAYER = "multiplayer"
    CO_OP = "co-op"
    COMPETITIVE = "competitive"


class SessionLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    LATE_NIGHT = "late-night"


class ActionType(str, Enum):
    """Categories of behavioural events fed to the learning loop."""

    LAUNCH = "launch"
    IGNORE = "ignore"
    RATE = "rate"
    SWITCH_MOOD = "switch_mood"
    SESSION_COMPLETE = "session_complete"


class Trigger(str, Enum):
    MANUAL = "manual"
    SUGGESTED = "suggested"
    AUTO = "auto"


class PlayPattern(str, Enum):
    COMPLETIONIST = "completionist"
    SOCIAL = "social"
    NIGHT_OWL = "night_owl"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class PatternType(str, Enum):
    DAILY_RHYTHM = "daily_rhythm"
    WEEKLY_PATTERN = "weekly_pattern"
    CONTEXTUAL_TRIGGER = "contextual_trigger"


class MetricType(str, Enum):
    PREDICTION_ACCURACY = "prediction_accuracy"
    USER_SATISFACTION = "user_satisfaction"
    ADAPTATION_RATE = "adaptation_rate"
    RECOMMENDATION_SUCCESS = "recommendation_success"


class MetricPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# ---------------------------------------------------------------------------
# Library items and contexts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContextualItem:
    """A library entry in canonical form, ready for scoring.

    Attributes:
        item_id: Unique identifier for the game.
        title: Human-readable title.
        moods: Canonical mood tags.
        genres: Canonical genre tags.
        tags: Free-form lower-cased tags, including genre names the
            :class:`Genre` enum does not know.
        session_length: Explicit or inferred session-length bucket.
        recommended_times: Explicit or inferred times of day.  Empty means
            "any time".
        minutes_played: Play duration in minutes, ``None`` when unknown.
        last_played: When the item was last played, if known.
        completed: Whether the user finished the game.
        platform: Lower-cased platform label, if known.
    """

    item_id: str
    title: str
    moods: frozenset[Mood] = frozenset()
    genres: frozenset[Genre] = frozenset()
    tags: frozenset[str] = frozenset()
    session_length: SessionLength = SessionLength.MEDIUM
    recommended_times: frozenset[TimeOfDay] = frozenset()
    minutes_played: float | None = None
    last_played: datetime | None = None
    completed: bool = False
    platform: str | None = None

    @property
    def is_multiplayer(self) -> bool:
        if self.genres & {Genre.MULTIPLAYER, Genre.CO_OP}:
            return True
        return any("multiplayer" in t or "co-op" in t for t in self.tags)

    def learning_keys(self) -> tuple[list[str], list[str]]:
        """Return ``(genre_keys, tag_keys)`` used for weight updates."""
        genres = sorted(g.value for g in self.genres)
        tags = sorted(self.tags)
        return genres, tags


@dataclass(frozen=True)
class PersonaContext:
    """Structured behavioural summary used by the scorer.

    Attributes:
        dominant_moods: Top moods by affinity, strongest first.
        preferred_session_length: Bucket derived from the mean session length.
        preferred_times: Times of day the user tends to play.
        play_patterns: Categorical play-pattern labels.
        mood_affinity: Mood → affinity weight (0–1).
        average_session_minutes: Mean session length the bucket came from.
        late_night_ratio: Share of play that happens late at night.
        completion_rate: Share of library items completed.
        multiplayer_ratio: Share of library items that are multiplayer/co-op.
    """

    dominant_moods: tuple[Mood, ...] = ()
    preferred_session_length: SessionLength = SessionLength.MEDIUM
    preferred_times: tuple[TimeOfDay, ...] = (TimeOfDay.EVENING,)
    play_patterns: tuple[PlayPattern, ...] = ()
    mood_affinity: dict[Mood, float] = field(default_factory=dict)
    average_session_minutes: float = 75.0
    late_night_ratio: float = 0.0
    completion_rate: float = 0.0
    multiplayer_ratio: float = 0.0


@dataclass(frozen=True)
class ContextualFilters:
    """Explicit filters chosen by the caller for one recommendation request.

    ``time_of_day=None`` means "any time"; ``persona_weight=None`` defers
    to the tuning default.
    """

    selected_moods: tuple[Mood, ...] = ()
    session_length: SessionLength | None = None
    time_of_day: TimeOfDay | None = None
    persona_weight: float | None = None


@dataclass(frozen=True)
class ContextualMatch:
    """The scored result of evaluating one item against one context."""

    item: ContextualItem
    matches_mood: bool
    matches_session: bool
    matches_time_of_day: bool
    base_score: float
    persona_score: float
    score: float
    reasons: tuple[str, ...] = ()

    @property
    def is_match(self) -> bool:
        return self.score > 0


@dataclass(frozen=True)
class RankingResult:
    """Ranked matches for a batch plus the number of malformed items skipped."""

    matches: list[ContextualMatch]
    skipped: int = 0


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelectionContext:
    time_of_day: TimeOfDay
    day_of_week: int
    trigger: Trigger = Trigger.MANUAL
    previous_mood: Mood | None = None
    session_minutes: float | None = None


@dataclass(frozen=True)
class SelectionOutcomes:
    items_recommended: int = 0
    items_launched: int = 0
    items_ignored: int = 0
    average_session_minutes: float | None = None
    user_rating: float | None = None

    @property
    def success_rate(self) -> float:
        if self.items_recommended <= 0:
            return 0.0
        return min(self.items_launched / self.items_recommended, 1.0)


@dataclass(frozen=True)
class MoodSelection:
    """One user-declared emotional state.  Never mutated after creation."""

    selection_id: str
    user_id: str
    primary_mood: Mood
    intensity: float
    context: SelectionContext
    timestamp: datetime
    secondary_mood: Mood | None = None
    outcomes: SelectionOutcomes = SelectionOutcomes()
    session_id: str | None = None


@dataclass(frozen=True)
class MoodContext:
    primary_mood: Mood
    secondary_mood: Mood | None = None
    intensity: float | None = None


@dataclass(frozen=True)
class UserAction:
    """A discrete behavioural event tied to one item.

    *genres* and *tags* are captured from the library at submission time so
    that the event log can be replayed without the library.
    """

    action_id: str
    user_id: str
    action_type: ActionType
    item_id: str
    timestamp: datetime
    mood_context: MoodContext | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    genres: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    platform: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class RecommendedItem:
    item_id: str
    title: str
    score: float
    reasons: tuple[str, ...] = ()
    genres: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class RecommendationEvent:
    """A logged scoring decision.

    Only *chosen_item_id*, *success* and *outcome_at* are ever set after
    creation.  *outcome_at* is when the outcome was recorded, which is the
    point at which it enters the learning history.
    """

    event_id: str
    user_id: str
    mood_context: MoodContext
    filters: ContextualFilters
    candidates: tuple[RecommendedItem, ...]
    timestamp: datetime
    chosen_item_id: str | None = None
    success: bool | None = None
    session_id: str | None = None
    outcome_at: datetime | None = None

    @property
    def learned_at(self) -> datetime:
        return self.outcome_at or self.timestamp


@dataclass(frozen=True)
class MoodPrediction:
    prediction_id: str
    user_id: str
    predicted_mood: Mood
    confidence: float
    timestamp: datetime
    reasoning: tuple[str, ...] = ()
    contextual_factors: tuple[str, ...] = ()
    accepted: bool | None = None
    session_id: str | None = None


# ---------------------------------------------------------------------------
# Learned state
# ---------------------------------------------------------------------------


@dataclass
class SessionPatterns:
    """Session-pattern histogram kept on the profile.

    Attributes:
        daily_rhythms: Time-of-day bucket → mood → selection count.
        weekly_patterns: Weekday (0 = Monday) → mood → selection count.
        contextual_triggers: Trigger → most recent mood chosen under it.
        session_minutes_total: Sum of observed session durations.
        session_count: Number of observed session durations.
    """

    daily_rhythms: dict[str, dict[str, int]] = field(default_factory=dict)
    weekly_patterns: dict[int, dict[str, int]] = field(default_factory=dict)
    contextual_triggers: dict[str, str] = field(default_factory=dict)
    session_minutes_total: float = 0.0
    session_count: int = 0

    @property
    def average_session_minutes(self) -> float | None:
        if self.session_count == 0:
            return None
        return self.session_minutes_total / self.session_count


@dataclass
class PersonaProfile:
    """Durable learned state for a single user.

    This is the aggregate the learning loop loads, folds one event into and
    saves back.  It is only ever mutated on a private copy; the stored
    instance is replaced as a whole under an optimistic version check.

    Attributes:
        user_id: Unique identifier for the user.
        genre_weights: Genre → weight in [-1, 1].
        tag_weights: Tag → weight in [-1, 1].
        mood_affinity: Mood → affinity in [0, 1].
        session_patterns: Daily/weekly rhythms and contextual triggers.
        hybrid_success: ``"primary+secondary"`` mood pair → success rate.
        platform_biases: Platform → weight in [-1, 1].
        time_preferences: Time-of-day bucket → preference in [0, 1].
        confidence: How much weight the learned state deserves (0–1).
        sample_size: Number of explicit observations folded in.
        version: Incremented on every successful save.
        applied_event_ids: Most recent event ids folded in, oldest first.
        created_at: When the profile was first created.
        updated_at: When the profile last changed.
    """

    user_id: str
    genre_weights: dict[str, float] = field(default_factory=dict)
    tag_weights: dict[str, float] = field(default_factory=dict)
    mood_affinity: dict[Mood, float] = field(default_factory=dict)
    session_patterns: SessionPatterns = field(default_factory=SessionPatterns)
    hybrid_success: dict[str, float] = field(default_factory=dict)
    platform_biases: dict[str, float] = field(default_factory=dict)
    time_preferences: dict[TimeOfDay, float] = field(
        default_factory=lambda: {t: 0.5 for t in TimeOfDay}
    )
    confidence: float = 0.1
    sample_size: int = 0
    version: int = 0
    applied_event_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class MoodPattern:
    """Derived pattern row; recomputable from the mood-selection log."""

    user_id: str
    pattern_type: PatternType
    pattern_key: str
    mood: Mood
    frequency: int
    success_rate: float
    last_seen: datetime
    confidence: float


@dataclass(frozen=True)
class LearningMetrics:
    """Derived metric row; recomputable from the event log."""

    user_id: str
    metric_type: MetricType
    value: float
    period: MetricPeriod
    timestamp: datetime
    sample_count: int = 0
