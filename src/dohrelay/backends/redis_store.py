from __future__ import annotations

import importlib
import logging
from typing import Any, List, Optional, Sequence

from .base import DEFAULT_QUEUE_SIZE, MAX_LOGS, BackendError, backend_aliases
from .kv_base import DEFAULT_KEY_PREFIX, KeyValueCommands, KeyValueSettingsStore, KeyValueStatsStore

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_SOCKET_TIMEOUT = 2.0


def _import_redis() -> Any:
    """Brief: Import the `redis` client library.

    Inputs:
      - None.

    Outputs:
      - redis module.

    Notes:
      - Imported lazily so the memory-only deployment never touches it.
    """

    try:
        return importlib.import_module("redis")
    except Exception as exc:  # pragma: no cover
        raise ImportError(
            "The redis backend requires the 'redis' package. "
            "Install it with: pip install redis"
        ) from exc


class RedisCommands(KeyValueCommands):
    """Redis/Valkey command transport backed by redis-py.

    Inputs:
      - url (str): Redis URL (default redis://localhost:6379/0).
      - socket_timeout (float|None): Per-command socket timeout seconds (default 2).
      - socket_connect_timeout (float|None): Connect timeout seconds (default 2).
      - client: Optional pre-built client (tests).
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        socket_timeout: Optional[float] = DEFAULT_SOCKET_TIMEOUT,
        socket_connect_timeout: Optional[float] = DEFAULT_SOCKET_TIMEOUT,
        client: Any = None,
    ) -> None:
        redis = _import_redis()
        self._errors = (redis.RedisError,)
        if client is not None:
            self._client = client
            return
        self._client = redis.Redis.from_url(
            (url or DEFAULT_REDIS_URL).strip(),
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
        )

    def execute(self, *args: Any) -> Any:
        try:
            return self._client.execute_command(*args)
        except self._errors as exc:
            raise BackendError(f"redis {args[0]} failed: {exc}") from exc

    def pipeline(self, commands: Sequence[Sequence[Any]]) -> List[Any]:
        try:
            pipe = self._client.pipeline(transaction=False)
            for cmd in commands:
                pipe.execute_command(*cmd)
            return list(pipe.execute())
        except self._errors as exc:
            raise BackendError(f"redis pipeline failed: {exc}") from exc

    def keys(self, pattern: str) -> List[str]:
        try:
            return [str(k) for k in self._client.scan_iter(match=pattern, count=500)]
        except self._errors as exc:
            raise BackendError(f"redis SCAN failed: {exc}") from exc

    def close(self) -> None:
        try:
            self._client.close()
        except self._errors:
            logger.debug("Ignoring error while closing redis client", exc_info=True)


def _timeout(config: dict, key: str) -> Optional[float]:
    # An explicit null disables the timeout.
    value = config.get(key, DEFAULT_SOCKET_TIMEOUT)
    return float(value) if value is not None else None


def _commands_from_config(config: dict) -> RedisCommands:
    return RedisCommands(
        str(config.get("url") or DEFAULT_REDIS_URL),
        socket_timeout=_timeout(config, "socket_timeout"),
        socket_connect_timeout=_timeout(config, "socket_connect_timeout"),
        client=config.get("client"),
    )


@backend_aliases("redis", "valkey")
class RedisStatsStore(KeyValueStatsStore):
    """Redis-backed statistics store.

    Inputs:
      - **config:
          - url (str): Redis URL.
          - socket_timeout (float|None): Per-command socket timeout seconds (default 2).
          - socket_connect_timeout (float|None): Connect timeout seconds (default 2).
          - key_prefix (str): Key prefix (default 'dns:').
          - max_logs (int): Retained log length (default 1000).
          - queue_size (int): Pending-write bound (default 10000).

    Example:
      storage:
        backend: redis
        redis:
          url: redis://localhost:6379/0
    """

    storage_type_name = "Redis"

    def __init__(self, **config: Any) -> None:
        super().__init__(
            _commands_from_config(config),
            key_prefix=str(config.get("key_prefix") or DEFAULT_KEY_PREFIX),
            max_logs=int(config.get("max_logs") or MAX_LOGS),
            queue_size=int(config.get("queue_size") or DEFAULT_QUEUE_SIZE),
        )


@backend_aliases("redis", "valkey")
class RedisSettingsStore(KeyValueSettingsStore):
    """Redis-backed settings store (same config keys as RedisStatsStore)."""

    storage_type_name = "Redis"

    def __init__(self, **config: Any) -> None:
        super().__init__(
            _commands_from_config(config),
            key_prefix=str(config.get("key_prefix") or DEFAULT_KEY_PREFIX),
        )
