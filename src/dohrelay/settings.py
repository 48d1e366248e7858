"""
Runtime settings: the upstream registry contents and admin credentials.

SettingsStore keeps an in-process copy that every request reads from. Writes
replace that copy immediately and, for external backends, are persisted in
the background so the caller never waits on the store.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .backends.base import BackendError, BackgroundWorker, BaseSettingsStore
from .models import Credentials, UpstreamEndpoint
from .upstreams import active_upstreams, default_upstreams

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "admin"
DEFAULT_PASSWORD = "changeme"


class SettingsStore:
    """
    Brief: Process-wide settings service backed by a BaseSettingsStore.

    Inputs (constructor):
      - backend: Settings backend chosen at startup.
      - upstreams: Initial registry (defaults to Cloudflare, Google, Quad9).
      - credentials: Initial credentials (defaults to admin/changeme).
      - queue_size: Bound of the background persist queue.

    Outputs:
      - SettingsStore instance. Call initialize() once before serving.

    Example:
      >>> from dohrelay.backends.memory import MemorySettingsStore
      >>> store = SettingsStore(MemorySettingsStore())
      >>> store.initialize()
      >>> store.get_upstream_servers()[0].name
      'Cloudflare DNS'
    """

    def __init__(
        self,
        backend: BaseSettingsStore,
        *,
        upstreams: Optional[List[UpstreamEndpoint]] = None,
        credentials: Optional[Credentials] = None,
        queue_size: int = 100,
    ) -> None:
        self.backend = backend
        self._lock = threading.RLock()
        self._servers: List[UpstreamEndpoint] = (
            [u.model_copy() for u in upstreams] if upstreams is not None else default_upstreams()
        )
        self._credentials = (
            credentials.model_copy()
            if credentials is not None
            else Credentials(username=DEFAULT_USERNAME, password=DEFAULT_PASSWORD)
        )
        self._initialized = False
        self._worker: Optional[BackgroundWorker] = None
        if backend.is_external:
            self._worker = BackgroundWorker("SettingsPersist", queue_size)

    @property
    def storage_type_name(self) -> str:
        return self.backend.storage_type_name

    def initialize(self) -> None:
        """
        Brief: Load persisted settings into the in-process copy (once).

        Inputs:
          - None.

        Outputs:
          - None. Later calls are no-ops. Values the backend has never stored
            keep their defaults; a backend failure is logged and the defaults
            stay in effect.
        """

        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            if not self.backend.is_external:
                return
            try:
                servers = self.backend.get_upstream_servers()
                credentials = self.backend.get_credentials()
            except BackendError as exc:
                logger.warning(
                    "Could not load settings from %s, using defaults: %s",
                    self.storage_type_name,
                    exc,
                )
                return
            if servers is not None:
                self._servers = servers
            if credentials is not None:
                self._credentials = credentials
            logger.info(
                "Loaded settings from %s (%d upstream servers)",
                self.storage_type_name,
                len(self._servers),
            )

    def get_upstream_servers(self) -> List[UpstreamEndpoint]:
        """Brief: Enabled upstreams sorted by ascending priority."""

        with self._lock:
            return [u.model_copy() for u in active_upstreams(self._servers)]

    def get_all_upstream_servers(self) -> List[UpstreamEndpoint]:
        with self._lock:
            return [u.model_copy() for u in self._servers]

    def set_upstream_servers(self, servers: List[UpstreamEndpoint]) -> None:
        copies = [u.model_copy() for u in servers]
        with self._lock:
            self._servers = copies
        logger.info("Upstream registry replaced (%d servers)", len(copies))
        self._persist("upstream servers", lambda: self.backend.set_upstream_servers(copies))

    def get_credentials(self) -> Credentials:
        with self._lock:
            return self._credentials.model_copy()

    def set_credentials(self, credentials: Credentials) -> None:
        copy = credentials.model_copy()
        with self._lock:
            self._credentials = copy
        logger.info("Admin credentials replaced for user %s", copy.username)
        self._persist("credentials", lambda: self.backend.set_credentials(copy))

    def _persist(self, what: str, write) -> None:
        def _job() -> None:
            try:
                write()
            except BackendError as exc:
                logger.warning("Failed to persist %s to %s: %s", what, self.storage_type_name, exc)

        if self._worker is None:
            _job()
        else:
            self._worker.submit(_job)

    def flush(self) -> None:
        """Brief: Wait for pending background writes."""

        if self._worker is not None:
            self._worker.join()

    def shutdown(self) -> None:
        if self._worker is not None:
            self._worker.stop()
        self.backend.close()
