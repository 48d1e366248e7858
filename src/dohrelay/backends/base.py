"""Abstract base classes for statistics and settings persistence backends.

This module defines:

- BackendError: raised by concrete backends when the external store is
  unreachable or answers with an error.
- BaseStatsStore: query-log + counter store. Derived metrics are computed here
  from raw StatsCounters so every backend reports them identically.
- BaseSettingsStore: upstream list + credentials store.
- BackgroundWorker: bounded queue drained by a daemon thread, used by external
  backends so request handling never waits on backend latency.

Concrete backends register themselves with ``backend_aliases`` and are
discovered by ``dohrelay.backends.registry``.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models import AggregateStats, Credentials, QueryLogRecord, UpstreamEndpoint, UpstreamStats

logger = logging.getLogger(__name__)

MAX_LOGS = 1000
RECENT_QUERIES = 50
DEFAULT_QUEUE_SIZE = 10000
DEFAULT_SHUTDOWN_TIMEOUT = 5.0


class BackendError(Exception):
    """Raised when an external stats/settings store fails."""


def backend_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a backend class for discovery.

    Inputs:
      - *aliases: Variable number of alias strings.

    Outputs:
      - Callable that applies the aliases to the class and returns it.

    Example:
      >>> @backend_aliases('memory', 'local')
      ... class MemoryStatsStore(BaseStatsStore):
      ...     pass
      >>> MemoryStatsStore.aliases
      ('memory', 'local')
    """

    def _wrap(cls: type) -> type:
        cls.aliases = tuple(aliases)
        return cls

    return _wrap


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class StatsCounters:
    """Raw counters as persisted by a backend; AggregateStats is derived from these."""

    total_queries: int = 0
    cache_hits: int = 0
    success_count: int = 0
    total_response_time: float = 0.0
    type_counts: Dict[str, int] = field(default_factory=dict)
    upstream_counts: Dict[str, Tuple[int, float]] = field(default_factory=dict)
    start_time_ms: Optional[int] = None


def compute_aggregate(
    counters: StatsCounters,
    recent: List[QueryLogRecord],
    now: Optional[int] = None,
) -> AggregateStats:
    """Brief: Derive hit rate, averages and rate metrics from raw counters.

    Inputs:
      - counters: StatsCounters snapshot.
      - recent: Most-recent-first log records to embed.
      - now: Current time in ms (defaults to wall clock).

    Outputs:
      - AggregateStats.

    Example:
      >>> c = StatsCounters(total_queries=4, cache_hits=1, success_count=2,
      ...                   total_response_time=30.0, start_time_ms=0)
      >>> s = compute_aggregate(c, [], now=60000)
      >>> (s.cache_hit_rate, s.average_response_time, s.queries_per_minute)
      (25.0, 15.0, 4.0)
    """

    now = now_ms() if now is None else now
    total = counters.total_queries
    start = counters.start_time_ms if counters.start_time_ms is not None else now
    uptime_minutes = (now - start) / 1000.0 / 60.0

    upstreams = [
        UpstreamStats(
            name=name,
            queries=queries,
            avg_response_time=(total_time / queries) if queries > 0 else 0.0,
        )
        for name, (queries, total_time) in counters.upstream_counts.items()
    ]

    return AggregateStats(
        total_queries=total,
        cache_hit_rate=(counters.cache_hits / total) * 100 if total > 0 else 0.0,
        average_response_time=(
            counters.total_response_time / counters.success_count
            if counters.success_count > 0
            else 0.0
        ),
        queries_per_minute=total / uptime_minutes if uptime_minutes > 0 else 0.0,
        upstream_servers=upstreams,
        query_type_distribution=dict(counters.type_counts),
        recent_queries=list(recent[:RECENT_QUERIES]),
    )


class BackgroundWorker:
    """Brief: Bounded FIFO of callables executed by one daemon thread.

    Inputs (constructor):
      - name: Thread name.
      - maxsize: Queue bound; submissions beyond it are dropped with a warning.

    Outputs:
      - BackgroundWorker; call submit() to enqueue and stop() to drain + join.

    Notes:
      - A failing job is logged and never kills the thread.
    """

    _SENTINEL = None

    def __init__(self, name: str, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.name = name
        self._queue: "queue.Queue[Optional[Callable[[], Any]]]" = queue.Queue(
            maxsize=max(1, int(maxsize))
        )
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self.dropped: int = 0

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def submit(self, job: Callable[[], Any]) -> bool:
        """Brief: Enqueue a job without blocking.

        Inputs:
          - job: Zero-argument callable.

        Outputs:
          - bool: False when the queue was full and the job was dropped.
        """

        self._ensure_started()
        try:
            self._queue.put_nowait(job)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning("%s queue full; dropping job (%d dropped so far)", self.name, self.dropped)
            return False

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is self._SENTINEL:
                    break
                job()
            except Exception:
                logger.exception("%s job failed", self.name)
            finally:
                self._queue.task_done()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Brief: Wait until every queued job has run.

        Inputs:
          - timeout: Seconds to wait; None waits for the whole backlog.

        Outputs:
          - bool: False when jobs were still pending at the deadline.
        """

        thread = self._thread
        if thread is None or not thread.is_alive():
            return True
        q = self._queue
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        with q.all_tasks_done:
            while q.unfinished_tasks:
                if deadline is None:
                    q.all_tasks_done.wait()
                    continue
                left = deadline - time.monotonic()
                if left <= 0:
                    return False
                q.all_tasks_done.wait(left)
        return True

    def _discard_pending(self) -> int:
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
            discarded += 1
        self.dropped += discarded
        return discarded

    def stop(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Brief: Drain for at most timeout seconds, then discard the rest and stop.

        Inputs:
          - timeout: Total seconds to spend, including the in-flight job.

        Outputs:
          - None. Discarded jobs are counted in ``dropped`` and logged.
        """

        thread = self._thread
        if thread is None or not thread.is_alive():
            return
        deadline = time.monotonic() + max(0.0, timeout)
        if not self.join(timeout):
            discarded = self._discard_pending()
            logger.warning(
                "%s did not drain within %.1fs; discarded %d queued jobs",
                self.name,
                timeout,
                discarded,
            )
        try:
            self._queue.put_nowait(self._SENTINEL)
        except queue.Full:
            logger.warning("%s did not accept stop request; abandoning queue", self.name)
            return
        thread.join(timeout=max(0.0, deadline - time.monotonic()))


class BaseStatsStore:
    """Brief: Base class for query statistics backends.

    Implementations are responsible for:
      - Appending QueryLogRecords to a bounded, most-recent-first log.
      - Maintaining the raw StatsCounters.
      - Reporting uptime since the first recorded query or process start.

    Inputs (constructor):
      - **config: Backend-specific configuration mapping.

    Outputs:
      - Initialized backend instance when implemented by a subclass.

    Notes:
      - get_stats() is implemented here in terms of read_counters() and
        get_logs() so derived metrics are recomputed identically on every read.
    """

    aliases: tuple[str, ...] = ()
    storage_type_name: str = "unknown"

    def __init__(self, **config: object) -> None:  # pragma: no cover - interface only
        raise NotImplementedError("BaseStatsStore.__init__ must be implemented")

    def log_query(self, record: QueryLogRecord) -> None:  # pragma: no cover - interface only
        """Brief: Record one completed query (log entry + counters)."""

        raise NotImplementedError("log_query() must be implemented by a subclass")

    def read_counters(self) -> StatsCounters:  # pragma: no cover - interface only
        raise NotImplementedError("read_counters() must be implemented by a subclass")

    def get_logs(self, limit: int = 100, offset: int = 0) -> List[QueryLogRecord]:  # pragma: no cover - interface only
        raise NotImplementedError("get_logs() must be implemented by a subclass")

    def get_uptime(self) -> int:  # pragma: no cover - interface only
        """Brief: Milliseconds since the stats start timestamp (0 when unknown)."""

        raise NotImplementedError("get_uptime() must be implemented by a subclass")

    def clear(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError("clear() must be implemented by a subclass")

    def get_stats(self) -> AggregateStats:
        """Brief: Recompute AggregateStats from the backend's current counters.

        Inputs:
          - None.

        Outputs:
          - AggregateStats with the 50 most recent queries attached.
        """

        counters = self.read_counters()
        recent = self.get_logs(RECENT_QUERIES, 0)
        return compute_aggregate(counters, recent)

    def health_check(self) -> bool:
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Brief: Wait for queued writes (no-op for synchronous backends).

        Outputs:
          - bool: False when writes were still pending after timeout seconds.
        """

        return True

    def close(self) -> None:
        """Brief: Release resources (no-op by default)."""


class BaseSettingsStore:
    """Brief: Base class for upstream list + credential persistence.

    Notes:
      - get_* return None when nothing has been stored yet so callers can keep
        their defaults.
      - Every method may raise BackendError.
    """

    aliases: tuple[str, ...] = ()
    storage_type_name: str = "unknown"
    # External stores need initialize() to pull their state into memory.
    is_external: bool = False

    def __init__(self, **config: object) -> None:  # pragma: no cover - interface only
        raise NotImplementedError("BaseSettingsStore.__init__ must be implemented")

    def get_upstream_servers(self) -> Optional[List[UpstreamEndpoint]]:  # pragma: no cover - interface only
        raise NotImplementedError("get_upstream_servers() must be implemented by a subclass")

    def set_upstream_servers(self, servers: List[UpstreamEndpoint]) -> None:  # pragma: no cover - interface only
        raise NotImplementedError("set_upstream_servers() must be implemented by a subclass")

    def get_credentials(self) -> Optional[Credentials]:  # pragma: no cover - interface only
        raise NotImplementedError("get_credentials() must be implemented by a subclass")

    def set_credentials(self, credentials: Credentials) -> None:  # pragma: no cover - interface only
        raise NotImplementedError("set_credentials() must be implemented by a subclass")

    def close(self) -> None:
        """Brief: Release resources (no-op by default)."""
