"""Backends for Redis-compatible REST key-value services (Upstash / Vercel KV).

Commands are sent as JSON arrays: a single command is POSTed to the base URL
and answered with ``{"result": ...}``; a batch is POSTed to ``<url>/pipeline``
and answered with one ``{"result": ...}`` or ``{"error": ...}`` per command.
Authentication is a bearer token.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

import requests

from .base import DEFAULT_QUEUE_SIZE, MAX_LOGS, BackendError, backend_aliases
from .kv_base import DEFAULT_KEY_PREFIX, KeyValueCommands, KeyValueSettingsStore, KeyValueStatsStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class RestCommands(KeyValueCommands):
    """Command transport for a Redis-over-HTTP REST API.

    Inputs:
      - url: Base REST URL (KV_REST_API_URL).
      - token: Bearer token (KV_REST_API_TOKEN).
      - timeout: Per-request timeout in seconds (default 5).
      - session: Optional requests.Session (tests).
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not url or not token:
            raise ValueError("KV REST backend requires both url and token")
        self.url = url.rstrip("/")
        self.timeout = float(timeout)
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {token}"})

    def _post(self, url: str, payload: Any) -> Any:
        try:
            resp = self._session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise BackendError(f"KV REST request failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise BackendError(f"KV REST returned HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError("KV REST returned invalid JSON") from exc

    @staticmethod
    def _result(body: Any) -> Any:
        if not isinstance(body, dict):
            raise BackendError(f"unexpected KV REST reply: {body!r}")
        if body.get("error"):
            raise BackendError(f"KV REST error: {body['error']}")
        return body.get("result")

    def execute(self, *args: Any) -> Any:
        return self._result(self._post(self.url, [str(a) for a in args]))

    def pipeline(self, commands: Sequence[Sequence[Any]]) -> List[Any]:
        body = self._post(f"{self.url}/pipeline", [[str(a) for a in cmd] for cmd in commands])
        if not isinstance(body, list):
            raise BackendError(f"unexpected KV REST pipeline reply: {body!r}")
        return [self._result(item) for item in body]

    def keys(self, pattern: str) -> List[str]:
        return [str(k) for k in (self.execute("KEYS", pattern) or [])]

    def close(self) -> None:
        self._session.close()


def _commands_from_config(config: dict) -> RestCommands:
    return RestCommands(
        str(config.get("url") or ""),
        str(config.get("token") or ""),
        timeout=float(config.get("timeout") or DEFAULT_TIMEOUT),
        session=config.get("session"),
    )


@backend_aliases("kv_rest", "vercel_kv", "upstash")
class KVRestStatsStore(KeyValueStatsStore):
    """REST key-value statistics store.

    Inputs:
      - **config:
          - url (str): REST endpoint base URL.
          - token (str): Bearer token.
          - timeout (float): Request timeout seconds (default 5).
          - key_prefix (str): Key prefix (default 'dns:').
          - max_logs (int): Retained log length (default 1000).
          - queue_size (int): Pending-write bound (default 10000).
    """

    storage_type_name = "KV REST"

    def __init__(self, **config: Any) -> None:
        super().__init__(
            _commands_from_config(config),
            key_prefix=str(config.get("key_prefix") or DEFAULT_KEY_PREFIX),
            max_logs=int(config.get("max_logs") or MAX_LOGS),
            queue_size=int(config.get("queue_size") or DEFAULT_QUEUE_SIZE),
        )


@backend_aliases("kv_rest", "vercel_kv", "upstash")
class KVRestSettingsStore(KeyValueSettingsStore):
    storage_type_name = "KV REST"

    def __init__(self, **config: Any) -> None:
        super().__init__(
            _commands_from_config(config),
            key_prefix=str(config.get("key_prefix") or DEFAULT_KEY_PREFIX),
        )
