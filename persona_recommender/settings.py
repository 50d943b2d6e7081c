"""Immutable tuning and learning parameters passed into the engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TuningSettings:
    """Scoring and auto-tagging knobs.

    Attributes:
        persona_weight: Default scale applied to the persona score when a
            request does not supply its own.
        mood_weight: Multiplier on mood affinity for dominant-mood hits.
        session_length_weight: Multiplier on the 25-point session bonus.
        time_of_day_weight: Multiplier on the 20-point time-of-day bonus.
        play_pattern_weight: Multiplier on the 15-point play-pattern bonus.
        auto_tagging_aggressiveness: Gate for time-of-day inference rules;
            higher values let weaker rules fire.
    """

    persona_weight: float = 0.4
    mood_weight: float = 0.3
    session_length_weight: float = 0.2
    time_of_day_weight: float = 0.1
    play_pattern_weight: float = 0.15
    auto_tagging_aggressiveness: float = 0.5

    def __post_init__(self) -> None:
        for name in (
            "persona_weight",
            "mood_weight",
            "session_length_weight",
            "time_of_day_weight",
            "play_pattern_weight",
            "auto_tagging_aggressiveness",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value!r}")


@dataclass(frozen=True)
class LearningParameters:
    """Rates and constants of the adaptive learning loop.

    These are product-calibration values, not fixed constants.

    Attributes:
        mood_learning_rate: Fraction of the gap to the observed signal closed
            by a mood selection of intensity 1 on an empty profile.
        action_learning_rate: Same, for explicit user actions.
        outcome_learning_rate: Same, for implicit recommendation outcomes.
            Kept below the explicit rates.
        confidence_half_life: Sample size at which confidence is halfway
            between the floor and 1.
        confidence_floor: Confidence of a profile with no samples.
        neutral_affinity: Starting affinity for a mood never seen before.
        replay_guard_size: Number of recent event ids remembered per profile.
        max_update_attempts: Attempts at an optimistic save before giving up.
    """

    mood_learning_rate: float = 0.5
    action_learning_rate: float = 0.4
    outcome_learning_rate: float = 0.1
    confidence_half_life: float = 10.0
    confidence_floor: float = 0.1
    neutral_affinity: float = 0.5
    replay_guard_size: int = 1000
    max_update_attempts: int = 3

    def __post_init__(self) -> None:
        for name in ("mood_learning_rate", "action_learning_rate", "outcome_learning_rate"):
            value = getattr(self, name)
            if not 0.0 < value < 1.0:
                raise ValueError(f"{name} must be within (0, 1), got {value!r}")
        if self.outcome_learning_rate > min(self.mood_learning_rate, self.action_learning_rate):
            raise ValueError("outcome_learning_rate must not exceed the explicit learning rates")
        if self.confidence_half_life <= 0:
            raise ValueError("confidence_half_life must be positive")
        if not 0.0 <= self.confidence_floor < 1.0:
            raise ValueError("confidence_floor must be within [0, 1)")
        if not 0.0 <= self.neutral_affinity < 1.0:
            raise ValueError("neutral_affinity must be within [0, 1)")
        if self.replay_guard_size < 1:
            raise ValueError("replay_guard_size must be at least 1")
        if self.max_update_attempts < 1:
            raise ValueError("max_update_attempts must be at least 1")
