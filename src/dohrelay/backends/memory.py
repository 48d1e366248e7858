"""Process-local stats and settings backends.

State lives only in this process: nothing is shared between gateway
instances and everything is lost on restart.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from ..models import Credentials, QueryLogRecord, UpstreamEndpoint
from .base import (
    MAX_LOGS,
    BaseSettingsStore,
    BaseStatsStore,
    StatsCounters,
    backend_aliases,
    now_ms,
)


@backend_aliases("memory", "in_memory", "local")
class MemoryStatsStore(BaseStatsStore):
    """In-process statistics backend.

    Brief:
      log_query() updates the bounded log and every counter under one lock,
      so a reader never sees a log entry without its counters.

    Inputs:
      - **config:
          - max_logs (int): Retained log capacity (default 1000).

    Outputs:
      - MemoryStatsStore instance.
    """

    storage_type_name = "Memory"

    def __init__(self, **config: object) -> None:
        self.max_logs = max(1, int(config.get("max_logs", MAX_LOGS) or MAX_LOGS))
        self._lock = threading.RLock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._logs: Deque[QueryLogRecord] = deque(maxlen=self.max_logs)
        self._total_queries = 0
        self._cache_hits = 0
        self._success_count = 0
        self._total_response_time = 0.0
        self._type_counts: Dict[str, int] = {}
        self._upstream_counts: Dict[str, Tuple[int, float]] = {}
        self._start_time_ms = now_ms()

    def log_query(self, record: QueryLogRecord) -> None:
        with self._lock:
            # appendleft on a bounded deque drops the oldest entry from the right.
            self._logs.appendleft(record)
            self._total_queries += 1
            if record.cached:
                self._cache_hits += 1
            if record.status == "success":
                self._success_count += 1
                self._total_response_time += float(record.response_time)
            self._type_counts[record.type] = self._type_counts.get(record.type, 0) + 1
            if record.upstream:
                queries, total_time = self._upstream_counts.get(record.upstream, (0, 0.0))
                self._upstream_counts[record.upstream] = (
                    queries + 1,
                    total_time + float(record.response_time),
                )

    def read_counters(self) -> StatsCounters:
        with self._lock:
            return StatsCounters(
                total_queries=self._total_queries,
                cache_hits=self._cache_hits,
                success_count=self._success_count,
                total_response_time=self._total_response_time,
                type_counts=dict(self._type_counts),
                upstream_counts=dict(self._upstream_counts),
                start_time_ms=self._start_time_ms,
            )

    def get_logs(self, limit: int = 100, offset: int = 0) -> List[QueryLogRecord]:
        offset = max(0, int(offset))
        limit = max(0, int(limit))
        with self._lock:
            return list(self._logs)[offset : offset + limit]

    def get_uptime(self) -> int:
        with self._lock:
            return max(0, now_ms() - self._start_time_ms)

    def clear(self) -> None:
        with self._lock:
            self._reset_locked()


@backend_aliases("memory", "in_memory", "local")
class MemorySettingsStore(BaseSettingsStore):
    """In-process settings backend; nothing is stored until first written."""

    storage_type_name = "Memory"

    def __init__(self, **config: object) -> None:
        self._lock = threading.RLock()
        self._servers: Optional[List[UpstreamEndpoint]] = None
        self._credentials: Optional[Credentials] = None

    def get_upstream_servers(self) -> Optional[List[UpstreamEndpoint]]:
        with self._lock:
            if self._servers is None:
                return None
            return [s.model_copy() for s in self._servers]

    def set_upstream_servers(self, servers: List[UpstreamEndpoint]) -> None:
        with self._lock:
            self._servers = [s.model_copy() for s in servers]

    def get_credentials(self) -> Optional[Credentials]:
        with self._lock:
            return self._credentials.model_copy() if self._credentials else None

    def set_credentials(self, credentials: Credentials) -> None:
        with self._lock:
            self._credentials = credentials.model_copy()
