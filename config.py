"""Application configuration driven by environment variables.

All settings have sensible defaults for local development.
"""

import os

# ---------------------------------------------------------------------------
# gRPC server
# ---------------------------------------------------------------------------

GRPC_SERVER_HOST: str = os.getenv("GRPC_SERVER_HOST", "0.0.0.0")
GRPC_SERVER_PORT: int = int(os.getenv("GRPC_SERVER_PORT", "50051"))

# Thread pool size for the gRPC server.  Each concurrent RPC occupies one
# thread, so this caps concurrent request handling.
GRPC_MAX_WORKERS: int = int(os.getenv("GRPC_MAX_WORKERS", "10"))

# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

# Upper bound on any single repository call.
PERSISTENCE_TIMEOUT_SECONDS: float = float(
    os.getenv("PERSISTENCE_TIMEOUT_SECONDS", "2.0")
)

# Threads available to in-flight repository calls.
PERSISTENCE_MAX_WORKERS: int = int(os.getenv("PERSISTENCE_MAX_WORKERS", "4"))

# Users whose last-known-good profile and library are kept in memory for
# degraded responses; least recently used are evicted first.
CACHED_USERS: int = int(os.getenv("CACHED_USERS", "10000"))

# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

MAX_RECOMMENDATIONS: int = int(os.getenv("MAX_RECOMMENDATIONS", "50"))

# ---------------------------------------------------------------------------
# Scoring weights and auto-tagging
# ---------------------------------------------------------------------------

PERSONA_WEIGHT: float = float(os.getenv("PERSONA_WEIGHT", "0.4"))
MOOD_WEIGHT: float = float(os.getenv("MOOD_WEIGHT", "0.3"))
SESSION_LENGTH_WEIGHT: float = float(os.getenv("SESSION_LENGTH_WEIGHT", "0.2"))
TIME_OF_DAY_WEIGHT: float = float(os.getenv("TIME_OF_DAY_WEIGHT", "0.1"))
PLAY_PATTERN_WEIGHT: float = float(os.getenv("PLAY_PATTERN_WEIGHT", "0.15"))

# 0 disables time-of-day inference; 1 lets every heuristic rule fire.
AUTO_TAGGING_AGGRESSIVENESS: float = float(
    os.getenv("AUTO_TAGGING_AGGRESSIVENESS", "0.5")
)

# ---------------------------------------------------------------------------
# Adaptive learning
# ---------------------------------------------------------------------------

MOOD_LEARNING_RATE: float = float(os.getenv("MOOD_LEARNING_RATE", "0.5"))
ACTION_LEARNING_RATE: float = float(os.getenv("ACTION_LEARNING_RATE", "0.4"))
OUTCOME_LEARNING_RATE: float = float(os.getenv("OUTCOME_LEARNING_RATE", "0.1"))

# Sample size at which confidence is halfway between the floor and 1.
CONFIDENCE_HALF_LIFE: float = float(os.getenv("CONFIDENCE_HALF_LIFE", "10"))
CONFIDENCE_FLOOR: float = float(os.getenv("CONFIDENCE_FLOOR", "0.1"))

REPLAY_GUARD_SIZE: int = int(os.getenv("REPLAY_GUARD_SIZE", "1000"))
MAX_UPDATE_ATTEMPTS: int = int(os.getenv("MAX_UPDATE_ATTEMPTS", "3"))

# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

STATS_WINDOW_HOURS: float = float(os.getenv("STATS_WINDOW_HOURS", "24"))
SLOW_OPERATION_THRESHOLD_MS: float = float(
    os.getenv("SLOW_OPERATION_THRESHOLD_MS", "1000")
)

# When set (e.g. "95"), slow operations are those above this percentile of
# the window instead of the fixed threshold.
_SLOW_PERCENTILE = os.getenv("SLOW_OPERATION_PERCENTILE", "")
SLOW_OPERATION_PERCENTILE: float | None = float(_SLOW_PERCENTILE) if _SLOW_PERCENTILE else None

HEALTH_SNAPSHOT_INTERVAL_SECONDS: float = float(
    os.getenv("HEALTH_SNAPSHOT_INTERVAL_SECONDS", "300")
)
