"""Stats and settings logic shared by the external key-value backends.

Both external services speak Redis commands (a native Redis server through
redis-py, or a Redis-compatible REST API through requests), so the key layout
and the write pipeline are defined once here on top of a small
KeyValueCommands transport.

Key layout (prefix defaults to ``dns:``)::

    dns:logs                  list, most-recent-first JSON QueryLogRecords
    dns:total_queries         counter
    dns:cache_hits            counter
    dns:total_response_time   float counter, successful queries only
    dns:success_count         counter
    dns:start_time            epoch ms, set once
    dns:upstream:<name>       hash {queries, totalTime}
    dns:type:<type>           counter
    dns:settings:upstreams    JSON list of upstream endpoints
    dns:settings:credentials  JSON credentials object
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..models import AggregateStats, Credentials, QueryLogRecord, UpstreamEndpoint
from .base import (
    DEFAULT_QUEUE_SIZE,
    DEFAULT_SHUTDOWN_TIMEOUT,
    MAX_LOGS,
    BackendError,
    BackgroundWorker,
    BaseSettingsStore,
    BaseStatsStore,
    StatsCounters,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "dns:"


class KeyValueCommands:
    """Brief: Minimal Redis-command transport used by the key-value backends.

    Every method raises BackendError when the service fails.
    """

    def execute(self, *args: Any) -> Any:  # pragma: no cover - interface only
        raise NotImplementedError

    def pipeline(self, commands: Sequence[Sequence[Any]]) -> List[Any]:  # pragma: no cover - interface only
        """Brief: Send commands as one non-transactional batch, returning results in order."""

        raise NotImplementedError

    def keys(self, pattern: str) -> List[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    def ping(self) -> bool:
        try:
            return bool(self.execute("PING"))
        except BackendError:
            return False

    def close(self) -> None:
        """Brief: Release the underlying connection (no-op by default)."""


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _num(value: Any, default: float = 0.0) -> float:
    try:
        return float(_text(value)) if value is not None else default
    except (TypeError, ValueError):
        return default


def _as_hash(value: Any) -> Dict[str, Any]:
    """Normalize HGETALL replies: redis-py returns a dict, REST a flat list."""
    if isinstance(value, dict):
        return {_text(k): v for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        it = iter(value)
        return {_text(k): v for k, v in zip(it, it)}
    return {}


class KeyValueStatsStore(BaseStatsStore):
    """Statistics backend on top of a Redis-compatible key-value service.

    Brief:
      log_query() only enqueues; a background worker issues one pipelined,
      non-transactional batch per record. Concurrent writers from several
      gateway instances may interleave, so counters are eventually and
      approximately consistent. Write failures are logged and dropped.
      Read failures are logged and produce empty results.

    Inputs:
      - commands: KeyValueCommands transport.
      - key_prefix: Prefix for every key (default 'dns:').
      - max_logs: Retained log length (default 1000).
      - queue_size: Bound of the pending-write queue (default 10000).
      - shutdown_timeout: Seconds close() waits for pending writes (default 5).
    """

    def __init__(
        self,
        commands: KeyValueCommands,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        max_logs: int = MAX_LOGS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        self._commands = commands
        self.prefix = str(key_prefix or DEFAULT_KEY_PREFIX)
        self.max_logs = max(1, int(max_logs))
        self.shutdown_timeout = float(shutdown_timeout)
        self._worker = BackgroundWorker(f"{self.__class__.__name__}Writer", queue_size)

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    @property
    def _counter_keys(self) -> List[str]:
        return [
            self._key("total_queries"),
            self._key("cache_hits"),
            self._key("total_response_time"),
            self._key("success_count"),
            self._key("start_time"),
        ]

    def log_query(self, record: QueryLogRecord) -> None:
        self._worker.submit(lambda: self._write_record(record))

    def _write_record(self, record: QueryLogRecord) -> None:
        logs_key = self._key("logs")
        cmds: List[List[Any]] = [
            ["LPUSH", logs_key, record.to_json()],
            ["LTRIM", logs_key, 0, self.max_logs - 1],
            ["INCR", self._key("total_queries")],
        ]
        if record.cached:
            cmds.append(["INCR", self._key("cache_hits")])
        if record.status == "success":
            cmds.append(["INCRBYFLOAT", self._key("total_response_time"), record.response_time])
            cmds.append(["INCR", self._key("success_count")])
        cmds.append(["INCR", self._key(f"type:{record.type}")])
        if record.upstream:
            upstream_key = self._key(f"upstream:{record.upstream}")
            cmds.append(["HINCRBY", upstream_key, "queries", 1])
            cmds.append(["HINCRBYFLOAT", upstream_key, "totalTime", record.response_time])
        cmds.append(["SETNX", self._key("start_time"), str(now_ms())])
        try:
            self._commands.pipeline(cmds)
        except BackendError as exc:
            logger.warning("Stats write skipped for %s/%s: %s", record.domain, record.type, exc)

    def read_counters(self) -> StatsCounters:
        total, hits, total_time, success, start = self._commands.execute("MGET", *self._counter_keys)

        upstream_prefix = self._key("upstream:")
        upstream_keys = sorted(self._commands.keys(f"{upstream_prefix}*"))
        upstream_counts = {}
        if upstream_keys:
            hashes = self._commands.pipeline([["HGETALL", k] for k in upstream_keys])
            for key, raw in zip(upstream_keys, hashes):
                data = _as_hash(raw)
                upstream_counts[key[len(upstream_prefix) :]] = (
                    int(_num(data.get("queries"))),
                    _num(data.get("totalTime")),
                )

        type_prefix = self._key("type:")
        type_keys = sorted(self._commands.keys(f"{type_prefix}*"))
        type_counts = {}
        if type_keys:
            values = self._commands.execute("MGET", *type_keys)
            for key, raw in zip(type_keys, values):
                type_counts[key[len(type_prefix) :]] = int(_num(raw))

        return StatsCounters(
            total_queries=int(_num(total)),
            cache_hits=int(_num(hits)),
            success_count=int(_num(success)),
            total_response_time=_num(total_time),
            type_counts=type_counts,
            upstream_counts=upstream_counts,
            start_time_ms=int(_num(start)) if start is not None else None,
        )

    def get_stats(self) -> AggregateStats:
        try:
            return super().get_stats()
        except BackendError as exc:
            logger.warning("Stats read failed: %s", exc)
            return AggregateStats()

    def get_logs(self, limit: int = 100, offset: int = 0) -> List[QueryLogRecord]:
        offset = max(0, int(offset))
        limit = max(0, int(limit))
        if limit == 0:
            return []
        try:
            raw = self._commands.execute("LRANGE", self._key("logs"), offset, offset + limit - 1)
        except BackendError as exc:
            logger.warning("Query log read failed: %s", exc)
            return []
        records = (QueryLogRecord.from_json(item) for item in raw or [])
        return [r for r in records if r is not None]

    def get_uptime(self) -> int:
        try:
            start = self._commands.execute("GET", self._key("start_time"))
        except BackendError as exc:
            logger.warning("Uptime read failed: %s", exc)
            return 0
        if start is None:
            return 0
        return max(0, now_ms() - int(_num(start)))

    def clear(self) -> None:
        try:
            keys = [self._key("logs"), *self._counter_keys]
            keys += self._commands.keys(self._key("upstream:*"))
            keys += self._commands.keys(self._key("type:*"))
            self._commands.execute("DEL", *keys)
        except BackendError as exc:
            logger.warning("Stats clear failed: %s", exc)

    def health_check(self) -> bool:
        return self._commands.ping()

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self._worker.join(timeout)

    def close(self) -> None:
        self._worker.stop(self.shutdown_timeout)
        self._commands.close()


class KeyValueSettingsStore(BaseSettingsStore):
    """Settings backend storing JSON documents in a Redis-compatible service.

    Inputs:
      - commands: KeyValueCommands transport.
      - key_prefix: Prefix for every key (default 'dns:').
    """

    is_external = True

    def __init__(self, commands: KeyValueCommands, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._commands = commands
        self.prefix = str(key_prefix or DEFAULT_KEY_PREFIX)

    def _key(self, name: str) -> str:
        return f"{self.prefix}settings:{name}"

    def _get_json(self, name: str) -> Any:
        raw = self._commands.execute("GET", self._key(name))
        if raw is None:
            return None
        try:
            return json.loads(_text(raw))
        except ValueError as exc:
            raise BackendError(f"corrupt settings document {self._key(name)!r}") from exc

    def _set_json(self, name: str, value: Any) -> None:
        self._commands.execute("SET", self._key(name), json.dumps(value, separators=(",", ":")))

    def get_upstream_servers(self) -> Optional[List[UpstreamEndpoint]]:
        data = self._get_json("upstreams")
        if data is None:
            return None
        try:
            return [UpstreamEndpoint.model_validate(item) for item in data]
        except Exception as exc:
            raise BackendError("invalid stored upstream list") from exc

    def set_upstream_servers(self, servers: List[UpstreamEndpoint]) -> None:
        self._set_json("upstreams", [s.to_json_dict() for s in servers])

    def get_credentials(self) -> Optional[Credentials]:
        data = self._get_json("credentials")
        if data is None:
            return None
        try:
            return Credentials.model_validate(data)
        except Exception as exc:
            raise BackendError("invalid stored credentials") from exc

    def set_credentials(self, credentials: Credentials) -> None:
        self._set_json("credentials", credentials.to_json_dict())

    def close(self) -> None:
        self._commands.close()
