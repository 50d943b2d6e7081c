"""Entry point: wires all components and starts the gRPC server."""

from __future__ import annotations

import logging
import signal
import sys
from concurrent import futures

import grpc

import config
from persona_recommender.engine import PersonaEngine
from persona_recommender.observability import HealthMonitor, ObservabilityAggregator
from persona_recommender.service import PersonaServicer, add_persona_servicer_to_server
from persona_recommender.settings import LearningParameters, TuningSettings
from persona_recommender.store import BoundedRepository, InMemoryRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_engine(repository_pool: futures.Executor) -> PersonaEngine:
    """Construct the engine from :mod:`config`.

    Args:
        repository_pool: Executor the bounded repository calls run on,
            including the health check.

    Returns:
        A :class:`~persona_recommender.engine.PersonaEngine` backed by the
        in-memory repository behind a call timeout.
    """
    tuning = TuningSettings(
        persona_weight=config.PERSONA_WEIGHT,
        mood_weight=config.MOOD_WEIGHT,
        session_length_weight=config.SESSION_LENGTH_WEIGHT,
        time_of_day_weight=config.TIME_OF_DAY_WEIGHT,
        play_pattern_weight=config.PLAY_PATTERN_WEIGHT,
        auto_tagging_aggressiveness=config.AUTO_TAGGING_AGGRESSIVENESS,
    )
    params = LearningParameters(
        mood_learning_rate=config.MOOD_LEARNING_RATE,
        action_learning_rate=config.ACTION_LEARNING_RATE,
        outcome_learning_rate=config.OUTCOME_LEARNING_RATE,
        confidence_half_life=config.CONFIDENCE_HALF_LIFE,
        confidence_floor=config.CONFIDENCE_FLOOR,
        replay_guard_size=config.REPLAY_GUARD_SIZE,
        max_update_attempts=config.MAX_UPDATE_ATTEMPTS,
    )
    repository = BoundedRepository(
        InMemoryRepository(), config.PERSISTENCE_TIMEOUT_SECONDS, repository_pool
    )
    observability = ObservabilityAggregator(
        persistence_check=repository.ping,
        window_hours=config.STATS_WINDOW_HOURS,
        slow_threshold_ms=config.SLOW_OPERATION_THRESHOLD_MS,
        slow_percentile=config.SLOW_OPERATION_PERCENTILE,
    )
    return PersonaEngine(
        repository,
        tuning=tuning,
        params=params,
        observability=observability,
        max_recommendations=config.MAX_RECOMMENDATIONS,
        cached_users=config.CACHED_USERS,
    )


def build_server(engine: PersonaEngine) -> grpc.Server:
    """Construct and configure the gRPC server with all dependencies wired.

    Args:
        engine: The engine the servicer delegates to.

    Returns:
        A configured but not-yet-started :class:`grpc.Server`.
    """
    server = grpc.server(
        futures.ThreadPoolExecutor(max_workers=config.GRPC_MAX_WORKERS)
    )
    add_persona_servicer_to_server(PersonaServicer(engine), server)
    server.add_insecure_port(
        f"{config.GRPC_SERVER_HOST}:{config.GRPC_SERVER_PORT}"
    )
    return server


def main() -> None:
    """Initialise all components and start the gRPC server.

    Startup sequence:
    1. Build the engine from environment settings.
    2. Start the periodic health monitor.
    3. Register ``SIGTERM``/``SIGINT`` shutdown handlers.
    4. Build and start the gRPC server.
    """
    repository_pool = futures.ThreadPoolExecutor(
        max_workers=config.PERSISTENCE_MAX_WORKERS, thread_name_prefix="repository"
    )
    engine = build_engine(repository_pool)

    monitor = HealthMonitor(
        engine.observability, config.HEALTH_SNAPSHOT_INTERVAL_SECONDS
    )
    monitor.start()

    server = build_server(engine)

    def handle_shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, shutting down.", sig_name)
        monitor.stop()
        server.stop(grace=5)
        repository_pool.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    server.start()
    logger.info(
        "Persona gRPC server listening on %s:%d",
        config.GRPC_SERVER_HOST,
        config.GRPC_SERVER_PORT,
    )
    server.wait_for_termination()


if __name__ == "__main__":
    main()
