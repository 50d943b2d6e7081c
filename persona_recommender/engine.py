"""Persona engine: the operation contracts consumed by the outer layers."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from concurrent import futures
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from persona_recommender.errors import (
    PersistenceUnavailableError,
    ValidationError,
    VersionConflictError,
)
from persona_recommender.learning import LearningLoop, new_profile
from persona_recommender.library import LibraryCache
from persona_recommender.models import (
    ActionType,
    ContextualFilters,
    ContextualItem,
    ContextualMatch,
    LearningMetrics,
    MetricPeriod,
    Mood,
    MoodContext,
    MoodPattern,
    MoodPrediction,
    MoodSelection,
    PatternType,
    PersonaContext,
    PersonaProfile,
    RecommendationEvent,
    RecommendedItem,
    SelectionContext,
    SelectionOutcomes,
    SessionLength,
    TimeOfDay,
    Trigger,
    UserAction,
)
from persona_recommender.normalizer import canonical_mood, detect_time_of_day
from persona_recommender.observability import (
    HealthSnapshot,
    ObservabilityAggregator,
    PerformanceStats,
)
from persona_recommender.patterns import (
    ActionSummary,
    MoodHistorySummary,
    compute_learning_metrics,
    predict_next_mood,
    recompute_mood_patterns,
    replay_profile,
    summarize_actions,
    summarize_mood_history,
)
from persona_recommender.persona_context import build_persona_context
from persona_recommender.scoring import ContextualMatcher
from persona_recommender.settings import LearningParameters, TuningSettings
from persona_recommender.store import BoundedRepository, PersonaRepository

logger = logging.getLogger(__name__)

MAX_RECOMMENDATIONS = 50
DEFAULT_RECOMMENDATIONS = 10
DEFAULT_CACHED_USERS = 10_000
_MIN_RATING = 1.0
_MAX_RATING = 5.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RecommendationResult:
    """Ranked matches for one request.

    Attributes:
        matches: Positively scored matches, best first.
        persona: The context the matches were scored against.
        filters: The explicit filters applied.
        skipped: Malformed library records ignored.
        event_id: Id of the logged :class:`RecommendationEvent`, or ``None``
            if it could not be logged.
        degraded: ``True`` if persistence was unavailable and cached or
            neutral data was used.
    """

    matches: list[ContextualMatch]
    persona: PersonaContext
    filters: ContextualFilters
    skipped: int = 0
    event_id: str | None = None
    degraded: bool = False


class PersonaEngine:
    """Wires normalizer, context builder, matcher, learning loop and
    observability behind the public operations.

    Inputs are validated here, before any profile access; a rejected
    input raises :class:`ValidationError` naming the offending field.
    Every stage runs inside an observability span, so failures show up in
    the statistics whether they propagate or are recovered.

    Args:
        repository: Persistence collaborator.
        tuning: Scoring weights.
        params: Learning parameters.
        observability: Aggregator to record into.  One probing the
            repository is created when omitted.
        clock: Time source for timestamps and time-of-day bucketing.
        repository_timeout_seconds: When set, every repository call is
            bounded by this timeout.
        max_recommendations: Upper bound for ``limit``.
        cached_users: Number of users whose last-known-good profile and
            library are kept for degraded responses.
    """

    def __init__(
        self,
        repository: PersonaRepository,
        tuning: TuningSettings | None = None,
        params: LearningParameters | None = None,
        observability: ObservabilityAggregator | None = None,
        clock: Callable[[], datetime] | None = None,
        repository_timeout_seconds: float | None = None,
        max_recommendations: int = MAX_RECOMMENDATIONS,
        cached_users: int = DEFAULT_CACHED_USERS,
    ) -> None:
        if cached_users < 1:
            raise ValueError("cached_users must be at least 1")
        self._executor: futures.ThreadPoolExecutor | None = None
        if repository_timeout_seconds is not None:
            self._executor = futures.ThreadPoolExecutor(
                max_workers=4, thread_name_prefix="repository"
            )
            repository = BoundedRepository(
                repository, repository_timeout_seconds, self._executor
            )
        self._repository = repository
        self._tuning = tuning or TuningSettings()
        self._params = params or LearningParameters()
        self._clock = clock or _utcnow
        self._observability = observability or ObservabilityAggregator(
            persistence_check=repository.ping, clock=self._clock
        )
        self._matcher = ContextualMatcher(self._tuning)
        self._library = LibraryCache(repository, self._tuning, max_users=cached_users)
        self._learning = LearningLoop(repository, self._params, self._clock)
        self._max_recommendations = max_recommendations
        self._profiles_lock = threading.Lock()
        self._cached_users = cached_users
        self._profiles: OrderedDict[str, PersonaProfile] = OrderedDict()

    @property
    def observability(self) -> ObservabilityAggregator:
        return self._observability

    @property
    def library(self) -> LibraryCache:
        return self._library

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Learning events
    # ------------------------------------------------------------------

    def submit_mood_selection(
        self,
        user_id: str,
        primary_mood: Any,
        secondary_mood: Any = None,
        intensity: Any = 1.0,
        context: Mapping[str, Any] | None = None,
        outcomes: Mapping[str, Any] | None = None,
        selection_id: str | None = None,
        session_id: str | None = None,
    ) -> MoodSelection:
        """Record a declared mood and fold it into the user's profile.

        Args:
            user_id: The user declaring the mood.
            primary_mood: Mood identifier.
            secondary_mood: Optional second mood identifier.
            intensity: Strength of the mood in [0, 1].
            context: ``time_of_day``, ``day_of_week``, ``trigger``,
                ``previous_mood`` and ``session_minutes``; missing keys are
                filled from the clock.
            outcomes: ``items_recommended``, ``items_launched``,
                ``items_ignored``, ``average_session_minutes`` and
                ``user_rating`` counters.
            selection_id: Idempotency key; generated when omitted.
            session_id: Optional session reference.

        Returns:
            The recorded :class:`MoodSelection`.

        Raises:
            ValidationError: On malformed input.
            PersistenceUnavailableError: If the store could not be reached.
            ConcurrentUpdateError: If the profile kept changing underneath.
        """
        now = self._clock()
        selection = MoodSelection(
            selection_id=selection_id or str(uuid.uuid4()),
            user_id=_require_user_id(user_id),
            primary_mood=_require_mood("primary_mood", primary_mood),
            secondary_mood=_optional_mood("secondary_mood", secondary_mood),
            intensity=_require_unit_interval("intensity", intensity),
            context=_parse_selection_context(context, now),
            outcomes=_parse_outcomes(outcomes),
            timestamp=now,
            session_id=session_id,
        )
        with self._observability.track("submit_mood_selection"):
            with self._observability.track("persistence.append_mood_selection"):
                self._repository.append_mood_selection(selection)
            with self._observability.track("learning.record_mood_selection"):
                profile = self._learning.record_mood_selection(selection)
        self._remember(profile)
        logger.debug(
            "Recorded mood %s (intensity %.2f) for user %r.",
            selection.primary_mood.value,
            selection.intensity,
            selection.user_id,
        )
        return selection

    def submit_user_action(
        self,
        user_id: str,
        action_type: Any,
        item_id: str,
        mood_context: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        action_id: str | None = None,
        session_id: str | None = None,
    ) -> UserAction:
        """Record a behavioural event on one item and learn from it.

        The item's genres, tags and platform are captured from the user's
        library so the event can be replayed later without it.

        Raises:
            ValidationError: On malformed input, including a ``rate`` action
                without a 1–5 ``metadata.rating``.
        """
        user_id = _require_user_id(user_id)
        kind = _require_enum("action_type", ActionType, action_type)
        if not isinstance(item_id, str) or not item_id.strip():
            raise ValidationError("item_id", "must be a non-empty string")
        meta = dict(metadata or {})
        if kind == ActionType.RATE:
            rating = meta.get("rating")
            if (
                isinstance(rating, bool)
                or not isinstance(rating, (int, float))
                or not _MIN_RATING <= rating <= _MAX_RATING
            ):
                raise ValidationError("metadata.rating", "must be a number from 1 to 5")
        duration = meta.get("session_duration")
        if duration is not None and (
            isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0
        ):
            raise ValidationError("metadata.session_duration", "must be a non-negative number")
        mood = _parse_mood_context(mood_context)

        with self._observability.track("submit_user_action"):
            item = self._find_item(user_id, item_id)
            genres, tags = item.learning_keys() if item is not None else ([], [])
            action = UserAction(
                action_id=action_id or str(uuid.uuid4()),
                user_id=user_id,
                action_type=kind,
                item_id=item_id,
                timestamp=self._clock(),
                mood_context=mood,
                metadata=meta,
                genres=tuple(genres),
                tags=tuple(tags),
                platform=item.platform if item is not None else None,
                session_id=session_id,
            )
            with self._observability.track("persistence.append_user_action"):
                self._repository.append_user_action(action)
            with self._observability.track("learning.record_user_action"):
                profile = self._learning.record_user_action(action)
        self._remember(profile)
        return action

    def record_recommendation_outcome(
        self,
        user_id: str,
        event_id: str,
        chosen_item_id: str | None = None,
        success: bool | None = None,
    ) -> PersonaProfile:
        """Set the outcome of a logged recommendation and learn from it.

        Args:
            user_id: Owner of the event.
            event_id: Id returned by :meth:`get_recommendations`.
            chosen_item_id: Candidate the user picked; ``None`` if none.
            success: Defaults to whether a candidate was chosen.

        Returns:
            The updated profile.
        """
        user_id = _require_user_id(user_id)
        with self._observability.track("record_recommendation_outcome"):
            event = self._repository.get_recommendation_event(event_id)
            if event is None or event.user_id != user_id:
                raise ValidationError("event_id", f"unknown recommendation event {event_id!r}")
            if event.success is not None:
                raise ValidationError("event_id", "outcome already recorded")
            if chosen_item_id is not None and chosen_item_id not in {
                c.item_id for c in event.candidates
            }:
                raise ValidationError("chosen_item_id", "was not among the recommended items")
            if success is None:
                success = chosen_item_id is not None
            event = self._repository.set_recommendation_outcome(
                event_id, chosen_item_id, bool(success), outcome_at=self._clock()
            )
            with self._observability.track("learning.record_recommendation_outcome"):
                profile = self._learning.record_recommendation_outcome(event)
        self._remember(profile)
        return profile

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def get_recommendations(
        self,
        user_id: str,
        primary_mood: Any,
        secondary_mood: Any = None,
        limit: Any = DEFAULT_RECOMMENDATIONS,
        context: Mapping[str, Any] | None = None,
        session_id: str | None = None,
    ) -> RecommendationResult:
        """Rank the user's library for a mood and optional context.

        If persistence is unavailable the last cached library and profile
        are used, or neutral defaults when nothing is cached; the result is
        then flagged ``degraded`` instead of raising.

        Args:
            user_id: The requesting user.
            primary_mood: Mood the user is in.
            secondary_mood: Optional second mood.
            limit: Maximum number of matches, 1 to 50.
            context: ``session_length``, ``time_of_day`` (``None`` for any
                time) and ``persona_weight`` in [0, 1].
            session_id: Optional session reference for the logged event.
        """
        user_id = _require_user_id(user_id)
        primary = _require_mood("primary_mood", primary_mood)
        secondary = _optional_mood("secondary_mood", secondary_mood)
        limit = _require_limit(limit, self._max_recommendations)
        filters = _parse_filters(context, primary, secondary)

        with self._observability.track("get_recommendations"):
            degraded = False
            try:
                with self._observability.track("library.refresh"):
                    snapshot = self._library.refresh(user_id)
            except PersistenceUnavailableError:
                snapshot = self._library.cached(user_id)
                degraded = True
            items = snapshot.items
            try:
                profile = self._load_profile(user_id)
            except PersistenceUnavailableError:
                profile = self._cached_profile(user_id)
                degraded = True

            with self._observability.track("persona.build_context"):
                persona = build_persona_context(items, profile)
            with self._observability.track("scoring.rank"):
                ranking = self._matcher.rank(items, persona, filters, limit=limit)

            event_id = self._log_event(
                user_id, MoodContext(primary, secondary), filters, ranking.matches, session_id
            )
        if degraded:
            logger.warning(
                "Served recommendations for user %r from cached/neutral data.", user_id
            )
        return RecommendationResult(
            matches=ranking.matches,
            persona=persona,
            filters=filters,
            skipped=snapshot.skipped + ranking.skipped,
            event_id=event_id,
            degraded=degraded,
        )

    # ------------------------------------------------------------------
    # Profile and derived views
    # ------------------------------------------------------------------

    def get_persona_profile(self, user_id: str) -> PersonaProfile:
        """Return the user's profile, creating the neutral default on first call."""
        user_id = _require_user_id(user_id)
        with self._observability.track("get_persona_profile"):
            profile = self._load_profile(user_id)
            if profile is not None:
                return profile
            profile = new_profile(user_id, self._clock())
            try:
                with self._observability.track("persistence.save_profile"):
                    self._repository.save_profile(profile, expected_version=0)
            except VersionConflictError:
                # Someone else created it first.
                stored = self._load_profile(user_id)
                if stored is not None:
                    return stored
                raise
            self._remember(profile)
            logger.info("Created default persona profile for user %r.", user_id)
            return profile

    def get_persona_context(self, user_id: str) -> PersonaContext:
        user_id = _require_user_id(user_id)
        items = self._library.get_items(user_id)
        try:
            profile = self._load_profile(user_id)
        except PersistenceUnavailableError:
            profile = self._cached_profile(user_id)
        return build_persona_context(items, profile)

    def rebuild_profile(self, user_id: str) -> PersonaProfile:
        """Reconstruct the profile from the event log and store it."""
        user_id = _require_user_id(user_id)
        with self._observability.track("rebuild_profile"):
            rebuilt = replay_profile(
                user_id,
                self._repository.list_mood_selections(user_id),
                self._repository.list_user_actions(user_id),
                self._repository.list_recommendation_events(user_id),
                self._params,
            )
            profile = self._learning.replace_profile(rebuilt)
        self._remember(profile)
        logger.info("Rebuilt profile for user %r at version %d.", user_id, profile.version)
        return profile

    def get_mood_patterns(
        self, user_id: str, pattern_type: Any = None
    ) -> list[MoodPattern]:
        user_id = _require_user_id(user_id)
        wanted = None
        if pattern_type is not None:
            wanted = _require_enum("pattern_type", PatternType, pattern_type)
        with self._observability.track("get_mood_patterns"):
            patterns = recompute_mood_patterns(
                user_id, self._repository.list_mood_selections(user_id)
            )
        if wanted is not None:
            patterns = [p for p in patterns if p.pattern_type == wanted]
        return patterns

    def get_learning_metrics(
        self, user_id: str, period: Any = MetricPeriod.WEEKLY
    ) -> list[LearningMetrics]:
        user_id = _require_user_id(user_id)
        period = _require_enum("period", MetricPeriod, period)
        with self._observability.track("get_learning_metrics"):
            return compute_learning_metrics(
                user_id,
                self._clock(),
                period,
                selections=self._repository.list_mood_selections(user_id),
                actions=self._repository.list_user_actions(user_id),
                events=self._repository.list_recommendation_events(user_id),
                predictions=self._repository.list_predictions(user_id),
            )

    def get_mood_history(self, user_id: str) -> MoodHistorySummary:
        user_id = _require_user_id(user_id)
        return summarize_mood_history(self._repository.list_mood_selections(user_id))

    def get_action_summary(self, user_id: str) -> ActionSummary:
        user_id = _require_user_id(user_id)
        return summarize_actions(self._repository.list_user_actions(user_id))

    # ------------------------------------------------------------------
    # Mood prediction
    # ------------------------------------------------------------------

    def predict_mood(self, user_id: str, session_id: str | None = None) -> MoodPrediction:
        """Forecast and persist the user's next likely mood."""
        user_id = _require_user_id(user_id)
        with self._observability.track("predict_mood"):
            profile = self._load_profile(user_id) or new_profile(user_id, self._clock())
            prediction = predict_next_mood(
                user_id,
                profile,
                self._repository.list_mood_selections(user_id),
                self._clock(),
            )
            if session_id is not None:
                prediction = replace(prediction, session_id=session_id)
            self._repository.save_prediction(prediction)
        return prediction

    def resolve_mood_prediction(
        self, user_id: str, prediction_id: str, accepted: Any
    ) -> MoodPrediction:
        """Set the acceptance flag of a prediction.  Allowed once."""
        user_id = _require_user_id(user_id)
        if not isinstance(accepted, bool):
            raise ValidationError("accepted", "must be a boolean")
        with self._observability.track("resolve_mood_prediction"):
            prediction = self._repository.get_prediction(prediction_id)
            if prediction is None or prediction.user_id != user_id:
                raise ValidationError("prediction_id", f"unknown prediction {prediction_id!r}")
            if prediction.accepted is not None:
                raise ValidationError("prediction_id", "prediction already resolved")
            return self._repository.set_prediction_accepted(prediction_id, accepted)

    # ------------------------------------------------------------------
    # Diagnostics and lifecycle
    # ------------------------------------------------------------------

    def get_performance_stats(
        self, operation: str | None = None, window_hours: Any = None
    ) -> PerformanceStats:
        if window_hours is not None and (
            isinstance(window_hours, bool)
            or not isinstance(window_hours, (int, float))
            or window_hours <= 0
        ):
            raise ValidationError("window_hours", "must be a positive number")
        return self._observability.get_performance_stats(operation, window_hours)

    def get_health_snapshot(self) -> HealthSnapshot:
        """Capture system health.  Never raises on an unreachable store."""
        return self._observability.capture_health_snapshot()

    def erase_user(self, user_id: str) -> None:
        """Delete every record held for the user, including the profile."""
        user_id = _require_user_id(user_id)
        with self._observability.track("erase_user"):
            self._repository.delete_user(user_id)
        self._library.evict(user_id)
        with self._profiles_lock:
            self._profiles.pop(user_id, None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load_profile(self, user_id: str) -> PersonaProfile | None:
        with self._observability.track("persistence.get_profile"):
            profile = self._repository.get_profile(user_id)
        if profile is not None:
            self._remember(profile)
        return profile

    def _remember(self, profile: PersonaProfile) -> None:
        with self._profiles_lock:
            cached = self._profiles.get(profile.user_id)
            if cached is None or cached.version <= profile.version:
                self._profiles[profile.user_id] = profile
            self._profiles.move_to_end(profile.user_id)
            while len(self._profiles) > self._cached_users:
                self._profiles.popitem(last=False)

    def _cached_profile(self, user_id: str) -> PersonaProfile | None:
        with self._profiles_lock:
            return self._profiles.get(user_id)

    def _find_item(self, user_id: str, item_id: str) -> ContextualItem | None:
        item = self._library.get_item(user_id, item_id)
        if item is None:
            self._library.get_items(user_id)
            item = self._library.get_item(user_id, item_id)
        return item

    def _log_event(
        self,
        user_id: str,
        mood: MoodContext,
        filters: ContextualFilters,
        matches: list[ContextualMatch],
        session_id: str | None,
    ) -> str | None:
        candidates = []
        for match in matches:
            genres, tags = match.item.learning_keys()
            candidates.append(
                RecommendedItem(
                    item_id=match.item.item_id,
                    title=match.item.title,
                    score=match.score,
                    reasons=match.reasons,
                    genres=tuple(genres),
                    tags=tuple(tags),
                )
            )
        event = RecommendationEvent(
            event_id=str(uuid.uuid4()),
            user_id=user_id,
            mood_context=mood,
            filters=filters,
            candidates=tuple(candidates),
            timestamp=self._clock(),
            session_id=session_id,
        )
        try:
            with self._observability.track("persistence.append_recommendation_event"):
                self._repository.append_recommendation_event(event)
        except PersistenceUnavailableError:
            logger.warning("Could not log recommendation event for user %r.", user_id)
            return None
        return event.event_id


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def _require_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("user_id", "must be a non-empty string")
    return user_id


def _require_mood(field: str, value: Any) -> Mood:
    mood = canonical_mood(value) if value is not None else None
    if mood is None:
        raise ValidationError(field, f"unknown mood {value!r}")
    return mood


def _optional_mood(field: str, value: Any) -> Mood | None:
    if value is None or value == "":
        return None
    return _require_mood(field, value)


def _require_unit_interval(field: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field, "must be a number")
    if not 0.0 <= value <= 1.0:
        raise ValidationError(field, f"must be within [0, 1], got {value!r}")
    return float(value)


def _require_count(field: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field, "must be a number")
    if value < 0 or int(value) != value:
        raise ValidationError(field, "must be a non-negative integer")
    return int(value)


def _require_limit(value: Any, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ValidationError("limit", "must be an integer")
    if not 1 <= value <= maximum:
        raise ValidationError("limit", f"must be between 1 and {maximum}")
    return int(value)


def _require_enum(field: str, enum_cls: Any, value: Any) -> Any:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        label = value.strip().lower()
        for candidate in (label, label.replace("_", "-"), label.replace("-", "_")):
            try:
                return enum_cls(candidate)
            except ValueError:
                continue
    allowed = ", ".join(m.value for m in enum_cls)
    raise ValidationError(field, f"must be one of {allowed}; got {value!r}")


def _parse_selection_context(
    context: Mapping[str, Any] | None, now: datetime
) -> SelectionContext:
    context = context or {}
    time_of_day = context.get("time_of_day")
    day_of_week = context.get("day_of_week")
    if day_of_week is None:
        day_of_week = now.weekday()
    elif _require_count("context.day_of_week", day_of_week) > 6:
        raise ValidationError("context.day_of_week", "must be between 0 and 6")
    session_minutes = context.get("session_minutes")
    if session_minutes is not None and (
        isinstance(session_minutes, bool)
        or not isinstance(session_minutes, (int, float))
        or session_minutes < 0
    ):
        raise ValidationError("context.session_minutes", "must be a non-negative number")
    return SelectionContext(
        time_of_day=(
            detect_time_of_day(now)
            if time_of_day is None
            else _require_enum("context.time_of_day", TimeOfDay, time_of_day)
        ),
        day_of_week=int(day_of_week),
        trigger=_require_enum("context.trigger", Trigger, context.get("trigger", "manual")),
        previous_mood=_optional_mood("context.previous_mood", context.get("previous_mood")),
        session_minutes=session_minutes,
    )


def _parse_outcomes(outcomes: Mapping[str, Any] | None) -> SelectionOutcomes:
    outcomes = outcomes or {}
    recommended = _require_count(
        "outcomes.items_recommended", outcomes.get("items_recommended", 0)
    )
    launched = _require_count("outcomes.items_launched", outcomes.get("items_launched", 0))
    ignored = _require_count("outcomes.items_ignored", outcomes.get("items_ignored", 0))
    average = outcomes.get("average_session_minutes")
    if average is not None and (
        isinstance(average, bool) or not isinstance(average, (int, float)) or average < 0
    ):
        raise ValidationError("outcomes.average_session_minutes", "must be a non-negative number")
    rating = outcomes.get("user_rating")
    if rating is not None and (
        isinstance(rating, bool)
        or not isinstance(rating, (int, float))
        or not _MIN_RATING <= rating <= _MAX_RATING
    ):
        raise ValidationError("outcomes.user_rating", "must be a number from 1 to 5")
    return SelectionOutcomes(
        items_recommended=recommended,
        items_launched=launched,
        items_ignored=ignored,
        average_session_minutes=average,
        user_rating=rating,
    )


def _parse_mood_context(mood_context: Mapping[str, Any] | None) -> MoodContext | None:
    if not mood_context:
        return None
    intensity = mood_context.get("intensity")
    return MoodContext(
        primary_mood=_require_mood("mood_context.primary_mood", mood_context.get("primary_mood")),
        secondary_mood=_optional_mood(
            "mood_context.secondary_mood", mood_context.get("secondary_mood")
        ),
        intensity=(
            None
            if intensity is None
            else _require_unit_interval("mood_context.intensity", intensity)
        ),
    )


def _parse_filters(
    context: Mapping[str, Any] | None, primary: Mood, secondary: Mood | None
) -> ContextualFilters:
    context = context or {}
    moods = (primary,) if secondary is None or secondary == primary else (primary, secondary)
    session_length = context.get("session_length")
    time_of_day = context.get("time_of_day")
    persona_weight = context.get("persona_weight")
    return ContextualFilters(
        selected_moods=moods,
        session_length=(
            None
            if session_length is None
            else _require_enum("context.session_length", SessionLength, session_length)
        ),
        time_of_day=(
            None
            if time_of_day is None
            else _require_enum("context.time_of_day", TimeOfDay, time_of_day)
        ),
        persona_weight=(
            None
            if persona_weight is None
            else _require_unit_interval("context.persona_weight", persona_weight)
        ),
    )
