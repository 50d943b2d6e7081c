"""Persistence contract for the engine plus an in-memory implementation."""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
from abc import ABC, abstractmethod
from concurrent import futures
from datetime import datetime
from typing import Any, Mapping

from persona_recommender.errors import PersistenceUnavailableError, VersionConflictError
from persona_recommender.models import (
    MoodPrediction,
    MoodSelection,
    PersonaProfile,
    RecommendationEvent,
    UserAction,
)

logger = logging.getLogger(__name__)


class PersonaRepository(ABC):
    """Get/put/delete by user id for every persisted entity.

    Implementations raise :class:`PersistenceUnavailableError` when the
    backing store cannot be reached and :class:`VersionConflictError` when
    a profile save loses its compare-and-set.
    """

    # Profiles -----------------------------------------------------------

    @abstractmethod
    def get_profile(self, user_id: str) -> PersonaProfile | None:
        """Return the stored profile, or ``None`` if the user has none."""

    @abstractmethod
    def save_profile(self, profile: PersonaProfile, expected_version: int) -> None:
        """Store *profile* if the stored version equals *expected_version*.

        A missing profile counts as version 0.
        """

    @abstractmethod
    def delete_profile(self, user_id: str) -> None:
        """Remove the user's profile, if any."""

    # Append-only event log ----------------------------------------------

    @abstractmethod
    def append_mood_selection(self, selection: MoodSelection) -> None: ...

    @abstractmethod
    def list_mood_selections(
        self, user_id: str, since: datetime | None = None
    ) -> list[MoodSelection]:
        """Return the user's selections in chronological order."""

    @abstractmethod
    def append_user_action(self, action: UserAction) -> None: ...

    @abstractmethod
    def list_user_actions(
        self, user_id: str, since: datetime | None = None
    ) -> list[UserAction]:
        """Return the user's actions in chronological order."""

    @abstractmethod
    def append_recommendation_event(self, event: RecommendationEvent) -> None: ...

    @abstractmethod
    def get_recommendation_event(self, event_id: str) -> RecommendationEvent | None: ...

    @abstractmethod
    def list_recommendation_events(
        self, user_id: str, since: datetime | None = None
    ) -> list[RecommendationEvent]: ...

    @abstractmethod
    def set_recommendation_outcome(
        self,
        event_id: str,
        chosen_item_id: str | None,
        success: bool,
        outcome_at: datetime | None = None,
    ) -> RecommendationEvent:
        """Record the outcome of a logged event and return the updated event.

        *outcome_at* is stored on the event so that replay folds the outcome
        where it happened in the history.

        Raises:
            KeyError: If no event has *event_id*.
        """

    # Predictions --------------------------------------------------------

    @abstractmethod
    def save_prediction(self, prediction: MoodPrediction) -> None: ...

    @abstractmethod
    def get_prediction(self, prediction_id: str) -> MoodPrediction | None: ...

    @abstractmethod
    def list_predictions(
        self, user_id: str, since: datetime | None = None
    ) -> list[MoodPrediction]: ...

    @abstractmethod
    def set_prediction_accepted(self, prediction_id: str, accepted: bool) -> MoodPrediction:
        """Set the acceptance flag and return the updated prediction.

        Raises:
            KeyError: If no prediction has *prediction_id*.
        """

    # Library ------------------------------------------------------------

    @abstractmethod
    def get_library(self, user_id: str) -> list[Mapping[str, Any]]:
        """Return the user's raw library records (possibly empty)."""

    @abstractmethod
    def put_library(self, user_id: str, records: list[Mapping[str, Any]]) -> None: ...

    # Lifecycle ----------------------------------------------------------

    @abstractmethod
    def delete_user(self, user_id: str) -> None:
        """Erase every record held for *user_id*."""

    @abstractmethod
    def ping(self) -> bool:
        """Return ``True`` if the backing store is reachable."""


class InMemoryRepository(PersonaRepository):
    """Thread-safe in-memory repository.

    Values are copied on the way in and out so callers can never mutate
    stored state by accident.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._profiles: dict[str, PersonaProfile] = {}
        self._selections: dict[str, list[MoodSelection]] = {}
        self._actions: dict[str, list[UserAction]] = {}
        self._events: dict[str, RecommendationEvent] = {}
        self._predictions: dict[str, MoodPrediction] = {}
        self._libraries: dict[str, list[Mapping[str, Any]]] = {}

    # Profiles -----------------------------------------------------------

    def get_profile(self, user_id: str) -> PersonaProfile | None:
        with self._lock:
            profile = self._profiles.get(user_id)
            return copy.deepcopy(profile) if profile is not None else None

    def save_profile(self, profile: PersonaProfile, expected_version: int) -> None:
        with self._lock:
            stored = self._profiles.get(profile.user_id)
            actual = stored.version if stored is not None else 0
            if actual != expected_version:
                raise VersionConflictError(profile.user_id, expected_version, actual)
            self._profiles[profile.user_id] = copy.deepcopy(profile)

    def delete_profile(self, user_id: str) -> None:
        with self._lock:
            self._profiles.pop(user_id, None)

    # Event log ----------------------------------------------------------

    def append_mood_selection(self, selection: MoodSelection) -> None:
        with self._lock:
            self._selections.setdefault(selection.user_id, []).append(selection)

    def list_mood_selections(
        self, user_id: str, since: datetime | None = None
    ) -> list[MoodSelection]:
        with self._lock:
            rows = list(self._selections.get(user_id, []))
        return _chronological(rows, since)

    def append_user_action(self, action: UserAction) -> None:
        with self._lock:
            self._actions.setdefault(action.user_id, []).append(action)

    def list_user_actions(
        self, user_id: str, since: datetime | None = None
    ) -> list[UserAction]:
        with self._lock:
            rows = list(self._actions.get(user_id, []))
        return _chronological(rows, since)

    def append_recommendation_event(self, event: RecommendationEvent) -> None:
        with self._lock:
            self._events[event.event_id] = event

    def get_recommendation_event(self, event_id: str) -> RecommendationEvent | None:
        with self._lock:
            return self._events.get(event_id)

    def list_recommendation_events(
        self, user_id: str, since: datetime | None = None
    ) -> list[RecommendationEvent]:
        with self._lock:
            rows = [e for e in self._events.values() if e.user_id == user_id]
        return _chronological(rows, since)

    def set_recommendation_outcome(
        self,
        event_id: str,
        chosen_item_id: str | None,
        success: bool,
        outcome_at: datetime | None = None,
    ) -> RecommendationEvent:
        with self._lock:
            event = self._events[event_id]
            updated = dataclasses.replace(
                event,
                chosen_item_id=chosen_item_id,
                success=success,
                outcome_at=outcome_at,
            )
            self._events[event_id] = updated
            return updated

    # Predictions --------------------------------------------------------

    def save_prediction(self, prediction: MoodPrediction) -> None:
        with self._lock:
            self._predictions[prediction.prediction_id] = prediction

    def get_prediction(self, prediction_id: str) -> MoodPrediction | None:
        with self._lock:
            return self._predictions.get(prediction_id)

    def list_predictions(
        self, user_id: str, since: datetime | None = None
    ) -> list[MoodPrediction]:
        with self._lock:
            rows = [p for p in self._predictions.values() if p.user_id == user_id]
        return _chronological(rows, since)

    def set_prediction_accepted(self, prediction_id: str, accepted: bool) -> MoodPrediction:
        with self._lock:
            prediction = self._predictions[prediction_id]
            updated = dataclasses.replace(prediction, accepted=accepted)
            self._predictions[prediction_id] = updated
            return updated

    # Library ------------------------------------------------------------

    def get_library(self, user_id: str) -> list[Mapping[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._libraries.get(user_id, []))

    def put_library(self, user_id: str, records: list[Mapping[str, Any]]) -> None:
        with self._lock:
            self._libraries[user_id] = copy.deepcopy(list(records))

    # Lifecycle ----------------------------------------------------------

    def delete_user(self, user_id: str) -> None:
        with self._lock:
            self._profiles.pop(user_id, None)
            self._selections.pop(user_id, None)
            self._actions.pop(user_id, None)
            self._libraries.pop(user_id, None)
            self._events = {k: e for k, e in self._events.items() if e.user_id != user_id}
            self._predictions = {
                k: p for k, p in self._predictions.items() if p.user_id != user_id
            }
        logger.info("Erased all stored data for user %r.", user_id)

    def ping(self) -> bool:
        return True


class BoundedRepository:
    """Proxy that bounds every repository call with a timeout.

    A call that times out, or whose backend reports itself unreachable,
    surfaces as :class:`PersistenceUnavailableError`.  Version conflicts,
    ``KeyError`` and validation errors propagate unchanged.

    Args:
        repository: The repository to wrap.
        timeout_seconds: Upper bound on each call.
        executor: Pool the calls run on.  Owned by the caller.
    """

    def __init__(
        self,
        repository: PersonaRepository,
        timeout_seconds: float,
        executor: futures.Executor,
    ) -> None:
        self._repository = repository
        self._timeout = timeout_seconds
        self._executor = executor

    @property
    def inner(self) -> PersonaRepository:
        return self._repository

    def __getattr__(self, name: str) -> Any:
        target = getattr(self._repository, name)
        if not callable(target):
            return target

        def bounded(*args: Any, **kwargs: Any) -> Any:
            future = self._executor.submit(target, *args, **kwargs)
            try:
                return future.result(timeout=self._timeout)
            except futures.TimeoutError as exc:
                future.cancel()
                raise PersistenceUnavailableError(
                    f"Repository call {name!r} exceeded {self._timeout:.2f}s"
                ) from exc
            except (ConnectionError, OSError) as exc:
                raise PersistenceUnavailableError(
                    f"Repository call {name!r} failed: {exc}"
                ) from exc

        return bounded


def _chronological(rows: list[Any], since: datetime | None) -> list[Any]:
    if since is not None:
        rows = [r for r in rows if r.timestamp >= since]
    return sorted(rows, key=lambda r: r.timestamp)
