"""gRPC servicer: exposes the persona engine over ``google.protobuf.Struct``.

Requests and responses are ``Struct`` messages with snake_case keys, so
the service can be registered through a generic handler without
generated stubs.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import grpc
from google.protobuf import json_format, struct_pb2

from persona_recommender.engine import PersonaEngine, RecommendationResult
from persona_recommender.errors import (
    ConcurrentUpdateError,
    PersistenceUnavailableError,
)
from persona_recommender.models import (
    ContextualMatch,
    MoodPrediction,
    MoodSelection,
    PersonaContext,
    PersonaProfile,
    UserAction,
)
from persona_recommender.observability import HealthSnapshot, PerformanceStats

logger = logging.getLogger(__name__)

SERVICE_NAME = "persona.PersonaService"

_SLOW_CALL_WARN_MS = 450


class PersonaServicer:
    """Implements ``persona.PersonaService``.

    Every method takes and returns a ``Struct``.  Errors are reported
    through the context status:

    - ``ValidationError`` or any ``ValueError``: ``INVALID_ARGUMENT``
    - ``PersistenceUnavailableError``: ``UNAVAILABLE``
    - ``ConcurrentUpdateError``: ``ABORTED``
    - anything else: ``INTERNAL``, logged with the traceback

    Args:
        engine: The :class:`~persona_recommender.engine.PersonaEngine`.
    """

    def __init__(self, engine: PersonaEngine) -> None:
        self._engine = engine

    # ------------------------------------------------------------------
    # Learning events
    # ------------------------------------------------------------------

    def SubmitMoodSelection(self, request: struct_pb2.Struct, context: Any) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            selection = self._engine.submit_mood_selection(
                body.get("user_id"),
                body.get("primary_mood"),
                secondary_mood=body.get("secondary_mood"),
                intensity=body.get("intensity", 1.0),
                context=body.get("context"),
                outcomes=body.get("outcomes"),
                selection_id=body.get("selection_id"),
                session_id=body.get("session_id"),
            )
            return _selection_payload(selection)

        return self._call("SubmitMoodSelection", request, context, handle)

    def SubmitUserAction(self, request: struct_pb2.Struct, context: Any) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            action = self._engine.submit_user_action(
                body.get("user_id"),
                body.get("type", body.get("action_type")),
                body.get("item_id"),
                mood_context=body.get("mood_context"),
                metadata=body.get("metadata"),
                action_id=body.get("action_id"),
                session_id=body.get("session_id"),
            )
            return _action_payload(action)

        return self._call("SubmitUserAction", request, context, handle)

    def RecordRecommendationOutcome(
        self, request: struct_pb2.Struct, context: Any
    ) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            profile = self._engine.record_recommendation_outcome(
                body.get("user_id"),
                body.get("event_id"),
                chosen_item_id=body.get("chosen_item_id"),
                success=body.get("success"),
            )
            return _profile_payload(profile)

        return self._call("RecordRecommendationOutcome", request, context, handle)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def GetRecommendations(self, request: struct_pb2.Struct, context: Any) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            result = self._engine.get_recommendations(
                body.get("user_id"),
                body.get("primary_mood"),
                secondary_mood=body.get("secondary_mood"),
                limit=body.get("limit", 10),
                context=body.get("context"),
                session_id=body.get("session_id"),
            )
            return _recommendations_payload(result)

        return self._call("GetRecommendations", request, context, handle)

    def GetPersonaProfile(self, request: struct_pb2.Struct, context: Any) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            return _profile_payload(self._engine.get_persona_profile(body.get("user_id")))

        return self._call("GetPersonaProfile", request, context, handle)

    def GetPerformanceStats(self, request: struct_pb2.Struct, context: Any) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            stats = self._engine.get_performance_stats(
                body.get("operation"), body.get("window_hours")
            )
            return _stats_payload(stats)

        return self._call("GetPerformanceStats", request, context, handle)

    def GetHealthSnapshot(self, request: struct_pb2.Struct, context: Any) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            return _health_payload(self._engine.get_health_snapshot())

        return self._call("GetHealthSnapshot", request, context, handle)

    def PredictMood(self, request: struct_pb2.Struct, context: Any) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            prediction = self._engine.predict_mood(
                body.get("user_id"), session_id=body.get("session_id")
            )
            return _prediction_payload(prediction)

        return self._call("PredictMood", request, context, handle)

    def ResolveMoodPrediction(
        self, request: struct_pb2.Struct, context: Any
    ) -> struct_pb2.Struct:
        def handle(body: dict[str, Any]) -> dict[str, Any]:
            prediction = self._engine.resolve_mood_prediction(
                body.get("user_id"), body.get("prediction_id"), body.get("accepted")
            )
            return _prediction_payload(prediction)

        return self._call("ResolveMoodPrediction", request, context, handle)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _call(
        self,
        method: str,
        request: struct_pb2.Struct,
        context: Any,
        handle: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> struct_pb2.Struct:
        start_ms = time.monotonic() * 1000
        try:
            body = json_format.MessageToDict(request)
            return _to_struct(handle(body))
        except ValueError as exc:
            context.set_code(grpc.StatusCode.INVALID_ARGUMENT)
            context.set_details(str(exc))
        except PersistenceUnavailableError as exc:
            logger.warning("%s: persistence unavailable: %s", method, exc)
            context.set_code(grpc.StatusCode.UNAVAILABLE)
            context.set_details(str(exc))
        except ConcurrentUpdateError as exc:
            context.set_code(grpc.StatusCode.ABORTED)
            context.set_details(str(exc))
        except Exception:
            logger.exception("Unexpected error in %s", method)
            context.set_code(grpc.StatusCode.INTERNAL)
            context.set_details(f"Internal error in {method}.")
        finally:
            elapsed_ms = time.monotonic() * 1000 - start_ms
            if elapsed_ms > _SLOW_CALL_WARN_MS:
                logger.warning("%s took %.1fms", method, elapsed_ms)
            else:
                logger.debug("%s took %.1fms", method, elapsed_ms)
        return struct_pb2.Struct()


def add_persona_servicer_to_server(servicer: PersonaServicer, server: grpc.Server) -> None:
    """Register *servicer* under :data:`SERVICE_NAME` on *server*."""
    methods = (
        "SubmitMoodSelection",
        "SubmitUserAction",
        "RecordRecommendationOutcome",
        "GetRecommendations",
        "GetPersonaProfile",
        "GetPerformanceStats",
        "GetHealthSnapshot",
        "PredictMood",
        "ResolveMoodPrediction",
    )
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            getattr(servicer, name),
            request_deserializer=struct_pb2.Struct.FromString,
            response_serializer=struct_pb2.Struct.SerializeToString,
        )
        for name in methods
    }
    server.add_generic_rpc_handlers(
        (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
    )


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _to_struct(payload: dict[str, Any]) -> struct_pb2.Struct:
    return json_format.ParseDict(_plain(payload), struct_pb2.Struct())


def _plain(value: Any) -> Any:
    """Reduce *value* to JSON-compatible types."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(_plain(k)): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value


def _selection_payload(selection: MoodSelection) -> dict[str, Any]:
    ctx = selection.context
    return {
        "selection_id": selection.selection_id,
        "user_id": selection.user_id,
        "primary_mood": selection.primary_mood,
        "secondary_mood": selection.secondary_mood,
        "intensity": selection.intensity,
        "timestamp": selection.timestamp,
        "context": {
            "time_of_day": ctx.time_of_day,
            "day_of_week": ctx.day_of_week,
            "trigger": ctx.trigger,
            "previous_mood": ctx.previous_mood,
        },
    }


def _action_payload(action: UserAction) -> dict[str, Any]:
    return {
        "action_id": action.action_id,
        "user_id": action.user_id,
        "type": action.action_type,
        "item_id": action.item_id,
        "timestamp": action.timestamp,
        "metadata": action.metadata,
    }


def _match_payload(match: ContextualMatch) -> dict[str, Any]:
    return {
        "item_id": match.item.item_id,
        "title": match.item.title,
        "score": match.score,
        "base_score": match.base_score,
        "persona_score": match.persona_score,
        "matches_mood": match.matches_mood,
        "matches_session": match.matches_session,
        "matches_time_of_day": match.matches_time_of_day,
        "reasons": match.reasons,
    }


def _persona_payload(persona: PersonaContext) -> dict[str, Any]:
    return {
        "dominant_moods": persona.dominant_moods,
        "preferred_session_length": persona.preferred_session_length,
        "preferred_times": persona.preferred_times,
        "play_patterns": persona.play_patterns,
    }


def _recommendations_payload(result: RecommendationResult) -> dict[str, Any]:
    return {
        "event_id": result.event_id,
        "matches": [_match_payload(m) for m in result.matches],
        "persona": _persona_payload(result.persona),
        "skipped": result.skipped,
        "degraded": result.degraded,
    }


def _profile_payload(profile: PersonaProfile) -> dict[str, Any]:
    patterns = profile.session_patterns
    return {
        "user_id": profile.user_id,
        "genre_weights": profile.genre_weights,
        "tag_weights": profile.tag_weights,
        "mood_affinity": profile.mood_affinity,
        "session_patterns": {
            "daily_rhythms": patterns.daily_rhythms,
            "weekly_patterns": patterns.weekly_patterns,
            "contextual_triggers": patterns.contextual_triggers,
            "average_session_minutes": patterns.average_session_minutes,
        },
        "hybrid_success": profile.hybrid_success,
        "platform_biases": profile.platform_biases,
        "time_preferences": profile.time_preferences,
        "confidence": profile.confidence,
        "sample_size": profile.sample_size,
        "version": profile.version,
        "created_at": profile.created_at,
        "updated_at": profile.updated_at,
    }


def _stats_payload(stats: PerformanceStats) -> dict[str, Any]:
    return {
        "operation": stats.operation,
        "window_hours": stats.window_hours,
        "count": stats.count,
        "mean_duration_ms": stats.mean_duration_ms,
        "success_rate": stats.success_rate,
        "min_duration_ms": stats.min_duration_ms,
        "max_duration_ms": stats.max_duration_ms,
        "p95_duration_ms": stats.p95_duration_ms,
        "slow_count": stats.slow_count,
    }


def _health_payload(snapshot: HealthSnapshot) -> dict[str, Any]:
    return {
        "status": snapshot.status,
        "timestamp": snapshot.timestamp,
        "details": {
            "persistence_ok": snapshot.persistence_ok,
            "success_rate": snapshot.success_rate,
            "mean_duration_ms": snapshot.mean_duration_ms,
            "issues": snapshot.issues,
            **snapshot.details,
        },
    }


def _prediction_payload(prediction: MoodPrediction) -> dict[str, Any]:
    return {
        "prediction_id": prediction.prediction_id,
        "user_id": prediction.user_id,
        "predicted_mood": prediction.predicted_mood,
        "confidence": prediction.confidence,
        "timestamp": prediction.timestamp,
        "reasoning": prediction.reasoning,
        "contextual_factors": prediction.contextual_factors,
        "accepted": prediction.accepted,
    }
