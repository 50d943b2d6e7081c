"""Contextual matcher: scores library items against a request context."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from persona_recommender.models import (
    ContextualFilters,
    ContextualItem,
    ContextualMatch,
    PersonaContext,
    PlayPattern,
    RankingResult,
)
from persona_recommender.normalizer import normalize_item
from persona_recommender.settings import TuningSettings

logger = logging.getLogger(__name__)

BASE_POINTS_PER_CRITERION = 25.0
SESSION_PREFERENCE_POINTS = 25.0
TIME_PREFERENCE_POINTS = 20.0
PLAY_PATTERN_POINTS = 15.0
MAX_REASONS = 4


class ContextualMatcher:
    """Scores :class:`ContextualItem` objects against a context.

    **Scoring:**

    ==========================  =========================================
    Component                   Points
    ==========================  =========================================
    Each explicit criterion     25 (mood, session length, time of day)
    Dominant mood hit           ``affinity × mood_weight`` per mood
    Preferred session length    ``25 × session_length_weight``
    Preferred time of day       ``20 × time_of_day_weight``
    Play-pattern rule           ``15 × play_pattern_weight`` per rule
    ==========================  =========================================

    The persona components are summed and then scaled by the request's
    ``persona_weight`` (or the tuning default when unset) before being
    added to the base score.

    The matcher holds no mutable state and may be shared across threads.

    Args:
        tuning: Scoring weights.  Defaults to :class:`TuningSettings`.
    """

    def __init__(self, tuning: TuningSettings | None = None) -> None:
        self._tuning = tuning or TuningSettings()

    @property
    def tuning(self) -> TuningSettings:
        return self._tuning

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def match(
        self,
        item: ContextualItem,
        persona: PersonaContext | None,
        filters: ContextualFilters,
    ) -> ContextualMatch:
        """Score a single item.

        Args:
            item: Canonical library item.
            persona: The user's persona context; ``None`` disables the
                persona component.
            filters: The caller's explicit filters.

        Returns:
            The :class:`ContextualMatch` for *item*.
        """
        tuning = self._tuning
        matches_mood = not filters.selected_moods or any(
            m in item.moods for m in filters.selected_moods
        )
        matches_session = (
            filters.session_length is None
            or item.session_length == filters.session_length
        )
        matches_time = (
            filters.time_of_day is None
            or not item.recommended_times
            or filters.time_of_day in item.recommended_times
        )
        base_score = BASE_POINTS_PER_CRITERION * sum(
            (matches_mood, matches_session, matches_time)
        )

        reasons: list[str] = []
        if filters.selected_moods and matches_mood:
            hit = next(m for m in filters.selected_moods if m in item.moods)
            reasons.append(f"Matches your {hit.value} mood")
        if filters.session_length is not None and matches_session:
            reasons.append(f"Fits a {item.session_length.value} session")
        if filters.time_of_day is not None and matches_time:
            reasons.append(f"Good for {filters.time_of_day.value} play")

        persona_score = 0.0
        if persona is not None:
            persona_score = self._persona_score(item, persona, reasons)

        weight = (
            filters.persona_weight
            if filters.persona_weight is not None
            else tuning.persona_weight
        )
        score = base_score + persona_score * weight
        return ContextualMatch(
            item=item,
            matches_mood=matches_mood,
            matches_session=matches_session,
            matches_time_of_day=matches_time,
            base_score=base_score,
            persona_score=persona_score,
            score=score,
            reasons=tuple(reasons[:MAX_REASONS]),
        )

    def rank(
        self,
        items: Iterable[ContextualItem | Mapping[str, Any]],
        persona: PersonaContext | None,
        filters: ContextualFilters,
        limit: int | None = None,
    ) -> RankingResult:
        """Score a batch and return matching items best-first.

        Raw mappings are normalized on the way in.  Items without an id or
        title are skipped and counted rather than failing the batch.  Ties
        keep their input order.

        Args:
            items: Canonical items or raw library records.
            persona: The user's persona context.
            filters: The caller's explicit filters.
            limit: Maximum number of matches to return.

        Returns:
            A :class:`RankingResult` with only positively scored matches.
        """
        skipped = 0
        matches: list[ContextualMatch] = []
        for raw in items:
            item = raw if isinstance(raw, ContextualItem) else None
            if item is None and isinstance(raw, Mapping):
                try:
                    item = normalize_item(raw, self._tuning)
                except (TypeError, ValueError):
                    logger.warning("Could not normalize library record; skipping.", exc_info=True)
                    item = None
            if item is None or not item.item_id or not item.title:
                skipped += 1
                continue
            result = self.match(item, persona, filters)
            if result.is_match:
                matches.append(result)

        matches.sort(key=lambda m: m.score, reverse=True)
        if limit is not None:
            matches = matches[:limit]
        if skipped:
            logger.warning("Skipped %d malformed item(s) while ranking.", skipped)
        return RankingResult(matches=matches, skipped=skipped)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _persona_score(
        self, item: ContextualItem, persona: PersonaContext, reasons: list[str]
    ) -> float:
        tuning = self._tuning
        score = 0.0

        hits = [m for m in persona.dominant_moods if m in item.moods]
        for mood in hits:
            score += max(persona.mood_affinity.get(mood, 0.0), 0.0) * tuning.mood_weight
        if hits:
            reasons.append(
                "In line with moods you often pick: "
                + ", ".join(m.value for m in hits)
            )

        if item.session_length == persona.preferred_session_length:
            score += SESSION_PREFERENCE_POINTS * tuning.session_length_weight
            reasons.append(f"Suits your usual {item.session_length.value} sessions")

        if any(t in persona.preferred_times for t in item.recommended_times):
            score += TIME_PREFERENCE_POINTS * tuning.time_of_day_weight
            reasons.append("Matches when you usually play")

        for pattern in persona.play_patterns:
            if pattern == PlayPattern.COMPLETIONIST and item.completed:
                score += PLAY_PATTERN_POINTS * tuning.play_pattern_weight
                reasons.append("You finished this one before")
            elif pattern == PlayPattern.SOCIAL and item.is_multiplayer:
                score += PLAY_PATTERN_POINTS * tuning.play_pattern_weight
                reasons.append("Great to play with friends")

        return score
