"""Observability aggregator: stage timings, error statistics and health."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator

import numpy as np

from persona_recommender.models import HealthStatus

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_HOURS = 24.0
DEFAULT_SLOW_THRESHOLD_MS = 1000.0
DEFAULT_HISTORY_SIZE = 1000

_UNHEALTHY_SUCCESS_RATE = 0.5
_DEGRADED_SUCCESS_RATE = 0.9
_RECENT_ERRORS = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OperationSample:
    """One timed stage.  *top_level* is false for spans nested in another."""

    operation: str
    duration_ms: float
    success: bool
    timestamp: datetime
    error: str | None = None
    top_level: bool = True


@dataclass(frozen=True)
class PerformanceStats:
    """Rolling statistics for one operation.

    When unnamed, only top-level spans are aggregated so that nested stages
    are not counted twice.  An empty window reports zero for every figure.
    """

    operation: str | None
    window_hours: float
    count: int = 0
    mean_duration_ms: float = 0.0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    slow_count: int = 0


@dataclass(frozen=True)
class ErrorStats:
    total: int = 0
    by_operation: dict[str, int] = field(default_factory=dict)
    recent: tuple[OperationSample, ...] = ()


@dataclass(frozen=True)
class TrendPoint:
    start: datetime
    count: int
    mean_duration_ms: float
    success_rate: float


@dataclass(frozen=True)
class HealthSnapshot:
    """Point-in-time system health.

    Attributes:
        status: Overall status.
        timestamp: When the snapshot was taken.
        persistence_ok: Whether the persistence check succeeded.
        success_rate: Pipeline success rate over the stats window, or
            ``None`` when nothing ran.
        mean_duration_ms: Mean stage latency over the stats window.
        issues: Human-readable problems; empty when healthy.
        details: Per-operation counts and the thresholds applied.
    """

    status: HealthStatus
    timestamp: datetime
    persistence_ok: bool
    success_rate: float | None
    mean_duration_ms: float
    issues: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)


class ObservabilityAggregator:
    """Records the duration and outcome of every pipeline stage.

    Samples are kept in memory, bounded per operation.  Statistics are
    computed over a trailing window with numpy.  The aggregator never
    raises from its reporting methods: a failing persistence check turns
    into an ``unhealthy`` snapshot.

    All public methods are thread-safe.

    Args:
        persistence_check: Callable returning ``True`` when the store is
            reachable.  ``None`` skips the connectivity check.
        window_hours: Default trailing window for statistics.
        slow_threshold_ms: Fixed slow-operation threshold.
        slow_percentile: When set, the slow threshold is this percentile of
            the window's durations instead of the fixed value.
        history_size: Samples retained per operation.
        snapshot_history: Health snapshots retained.
        clock: Time source.
    """

    def __init__(
        self,
        persistence_check: Callable[[], bool] | None = None,
        window_hours: float = DEFAULT_WINDOW_HOURS,
        slow_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS,
        slow_percentile: float | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        snapshot_history: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if window_hours <= 0:
            raise ValueError("window_hours must be positive")
        if slow_percentile is not None and not 0 < slow_percentile < 100:
            raise ValueError("slow_percentile must be within (0, 100)")
        self._persistence_check = persistence_check
        self._window_hours = window_hours
        self._slow_threshold_ms = slow_threshold_ms
        self._slow_percentile = slow_percentile
        self._history_size = history_size
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._local = threading.local()
        self._samples: dict[str, deque[OperationSample]] = {}
        self._snapshots: deque[HealthSnapshot] = deque(maxlen=snapshot_history)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    @contextmanager
    def track(self, operation: str) -> Iterator[None]:
        """Time the enclosed block and record it under *operation*.

        Exceptions are recorded as failures and re-raised unchanged.  A block
        tracked inside another tracked block on the same thread is recorded
        as a nested span.
        """
        depth = getattr(self._local, "depth", 0)
        top_level = depth == 0
        self._local.depth = depth + 1
        started = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record(
                operation,
                _elapsed_ms(started),
                success=False,
                error=repr(exc),
                top_level=top_level,
            )
            raise
        finally:
            self._local.depth = depth
        self.record(operation, _elapsed_ms(started), success=True, top_level=top_level)

    def record(
        self,
        operation: str,
        duration_ms: float,
        success: bool = True,
        error: str | None = None,
        top_level: bool = True,
    ) -> None:
        """Record one sample.  Used directly for recovered failures."""
        sample = OperationSample(
            operation=operation,
            duration_ms=float(duration_ms),
            success=success,
            timestamp=self._clock(),
            error=error,
            top_level=top_level,
        )
        with self._lock:
            history = self._samples.get(operation)
            if history is None:
                history = self._samples[operation] = deque(maxlen=self._history_size)
            history.append(sample)
        if duration_ms > self._slow_threshold_ms:
            logger.warning("Slow operation %s took %.1fms", operation, duration_ms)
        if not success:
            logger.debug("Operation %s failed: %s", operation, error)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_performance_stats(
        self, operation: str | None = None, window_hours: float | None = None
    ) -> PerformanceStats:
        """Return rolling statistics over the trailing window.

        Args:
            operation: Operation name; ``None`` aggregates every top-level
                operation.
            window_hours: Window length; defaults to the configured window.
        """
        hours = window_hours if window_hours is not None else self._window_hours
        samples = self._window(operation, hours)
        if operation is None:
            samples = [s for s in samples if s.top_level]
        if not samples:
            return PerformanceStats(operation=operation, window_hours=hours)
        durations = np.fromiter((s.duration_ms for s in samples), dtype=float)
        successes = np.fromiter((s.success for s in samples), dtype=float)
        threshold = self._slow_threshold(durations)
        return PerformanceStats(
            operation=operation,
            window_hours=hours,
            count=len(samples),
            mean_duration_ms=float(durations.mean()),
            success_rate=float(successes.mean()),
            min_duration_ms=float(durations.min()),
            max_duration_ms=float(durations.max()),
            p95_duration_ms=float(np.percentile(durations, 95)),
            slow_count=int((durations > threshold).sum()),
        )

    def get_error_stats(self, window_hours: float | None = None) -> ErrorStats:
        hours = window_hours if window_hours is not None else self._window_hours
        failures = [s for s in self._window(None, hours) if not s.success]
        if not failures:
            return ErrorStats()
        by_operation: dict[str, int] = {}
        for sample in failures:
            by_operation[sample.operation] = by_operation.get(sample.operation, 0) + 1
        failures.sort(key=lambda s: s.timestamp, reverse=True)
        return ErrorStats(
            total=len(failures),
            by_operation=dict(sorted(by_operation.items())),
            recent=tuple(failures[:_RECENT_ERRORS]),
        )

    def get_slow_operations(
        self, window_hours: float | None = None, limit: int = 20
    ) -> list[OperationSample]:
        """Return samples above the slow threshold, slowest first."""
        hours = window_hours if window_hours is not None else self._window_hours
        samples = self._window(None, hours)
        if not samples:
            return []
        durations = np.fromiter((s.duration_ms for s in samples), dtype=float)
        threshold = self._slow_threshold(durations)
        slow = [s for s in samples if s.duration_ms > threshold]
        slow.sort(key=lambda s: s.duration_ms, reverse=True)
        return slow[:limit]

    def get_latency_trend(
        self,
        operation: str | None = None,
        window_hours: float | None = None,
        bucket_minutes: int = 60,
    ) -> list[TrendPoint]:
        """Bucket the window's samples by time, oldest bucket first.

        Buckets without samples are omitted.
        """
        if bucket_minutes <= 0:
            raise ValueError("bucket_minutes must be positive")
        hours = window_hours if window_hours is not None else self._window_hours
        samples = self._window(operation, hours)
        if not samples:
            return []
        start = self._clock() - timedelta(hours=hours)
        width = timedelta(minutes=bucket_minutes)
        buckets: dict[int, list[OperationSample]] = {}
        for sample in samples:
            index = int((sample.timestamp - start) / width)
            buckets.setdefault(index, []).append(sample)
        trend: list[TrendPoint] = []
        for index in sorted(buckets):
            rows = buckets[index]
            trend.append(
                TrendPoint(
                    start=start + index * width,
                    count=len(rows),
                    mean_duration_ms=float(np.mean([s.duration_ms for s in rows])),
                    success_rate=float(np.mean([s.success for s in rows])),
                )
            )
        return trend

    def operations(self) -> list[str]:
        with self._lock:
            return sorted(self._samples)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def capture_health_snapshot(self) -> HealthSnapshot:
        """Combine connectivity, success rate and latency into one status.

        - persistence unreachable, or success rate below 50%: ``unhealthy``
        - success rate below 90%, or mean latency above the slow
          threshold: ``degraded``
        - otherwise ``healthy``

        Success rate and latency are taken over top-level operations only;
        nested stages are already part of the operation that ran them.
        """
        issues: list[str] = []
        persistence_ok = self._check_persistence()
        if not persistence_ok:
            issues.append("Persistence layer is unavailable")

        stats = self.get_performance_stats()
        success_rate = stats.success_rate if stats.count else None
        status = HealthStatus.HEALTHY
        if not persistence_ok:
            status = HealthStatus.UNHEALTHY
        if success_rate is not None:
            if success_rate < _UNHEALTHY_SUCCESS_RATE:
                status = HealthStatus.UNHEALTHY
                issues.append(f"Pipeline success rate is {success_rate:.0%}")
            elif success_rate < _DEGRADED_SUCCESS_RATE:
                if status == HealthStatus.HEALTHY:
                    status = HealthStatus.DEGRADED
                issues.append(f"Pipeline success rate is {success_rate:.0%}")
        if stats.count and stats.mean_duration_ms > self._slow_threshold_ms:
            if status == HealthStatus.HEALTHY:
                status = HealthStatus.DEGRADED
            issues.append(f"Mean latency is {stats.mean_duration_ms:.0f}ms")

        snapshot = HealthSnapshot(
            status=status,
            timestamp=self._clock(),
            persistence_ok=persistence_ok,
            success_rate=success_rate,
            mean_duration_ms=stats.mean_duration_ms,
            issues=tuple(issues),
            details={
                "operations": {
                    name: self.get_performance_stats(name).count
                    for name in self.operations()
                },
                "window_hours": self._window_hours,
                "slow_threshold_ms": self._slow_threshold_ms,
                "errors": self.get_error_stats().total,
            },
        )
        with self._lock:
            previous = self._snapshots[-1].status if self._snapshots else None
            self._snapshots.append(snapshot)
        if previous is not None and previous != status:
            logger.warning("Health status changed from %s to %s", previous.value, status.value)
        return snapshot

    def recent_snapshots(self, limit: int = 10) -> list[HealthSnapshot]:
        """Return up to *limit* snapshots, newest first."""
        with self._lock:
            return list(self._snapshots)[::-1][:limit]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _window(self, operation: str | None, hours: float) -> list[OperationSample]:
        cutoff = self._clock() - timedelta(hours=hours)
        with self._lock:
            if operation is None:
                histories = list(self._samples.values())
            else:
                histories = [self._samples.get(operation, ())]
            return [s for h in histories for s in h if s.timestamp >= cutoff]

    def _slow_threshold(self, durations: np.ndarray) -> float:
        if self._slow_percentile is None:
            return self._slow_threshold_ms
        return float(np.percentile(durations, self._slow_percentile))

    def _check_persistence(self) -> bool:
        if self._persistence_check is None:
            return True
        try:
            return bool(self._persistence_check())
        except Exception:
            logger.warning("Persistence health check failed.", exc_info=True)
            return False


class HealthMonitor:
    """Background thread capturing a health snapshot on a fixed interval.

    Args:
        aggregator: The aggregator to snapshot.
        interval_seconds: Delay between snapshots.
    """

    def __init__(self, aggregator: ObservabilityAggregator, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._aggregator = aggregator
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitor thread.  Safe to call more than once."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="health-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.info("Health monitor started (interval=%.1fs).", self._interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the thread to exit and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Health monitor stopped.")

    def _run(self) -> None:
        while True:
            try:
                self._aggregator.capture_health_snapshot()
            except Exception:
                logger.exception("Health snapshot failed.")
            if self._stop_event.wait(self._interval):
                return


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
