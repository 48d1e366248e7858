"""
Service wiring for one gateway process.

Services.build() constructs every component from a complete configuration
mapping (see dohrelay.config.config_parser.load_config). Backends are chosen
once here; nothing re-probes the environment afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .backends.registry import load_settings_store, load_stats_store
from .cache import CacheSweeper, ResponseCache
from .config.config_parser import credentials_from_config, normalize_upstream_config
from .executor import QueryExecutor
from .gateway import DoHGateway
from .settings import SettingsStore
from .stats import StatsAggregator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """
    Brief: The long-lived objects shared by every request.

    Inputs (fields):
      - config: Complete configuration mapping.
      - cache: ResponseCache, or None when caching is disabled.
      - settings: SettingsStore.
      - stats: StatsAggregator.
      - executor: QueryExecutor (diagnostic path).
      - gateway: DoHGateway (relay path).
      - sweeper: CacheSweeper thread, started by initialize().
    """

    config: Dict[str, Any]
    cache: Optional[ResponseCache]
    settings: SettingsStore
    stats: StatsAggregator
    executor: QueryExecutor
    gateway: DoHGateway
    sweeper: Optional[CacheSweeper] = None

    @classmethod
    def build(
        cls,
        config: Dict[str, Any],
        *,
        environ: Optional[Mapping[str, str]] = None,
        transport: Optional[Callable[..., bytes]] = None,
    ) -> "Services":
        """
        Brief: Construct all components from configuration.

        Inputs:
          - config: Complete configuration (defaults already applied).
          - environ: Environment used for backend auto-selection.
          - transport: Optional upstream transport override (tests).

        Outputs:
          - Services (not yet initialized).
        """

        cache_cfg = config.get("cache") or {}
        stats_cfg = config.get("stats") or {}
        storage_cfg = config.get("storage") or {}

        cache: Optional[ResponseCache] = None
        if cache_cfg.get("enabled", True):
            cache = ResponseCache(
                max_entries=int(cache_cfg.get("max_entries", 10000)),
                default_ttl=int(cache_cfg.get("default_ttl", 300)),
            )

        upstreams, timeout_ms = normalize_upstream_config(config)

        stats_backend = load_stats_store(
            storage_cfg,
            environ,
            max_logs=int(stats_cfg.get("max_logs", 1000)),
            queue_size=int(stats_cfg.get("queue_size", 10000)),
        )
        settings = SettingsStore(
            load_settings_store(storage_cfg, environ),
            upstreams=upstreams,
            credentials=credentials_from_config(config),
        )
        stats = StatsAggregator(stats_backend)

        return cls(
            config=config,
            cache=cache,
            settings=settings,
            stats=stats,
            executor=QueryExecutor(settings, cache, timeout_ms=timeout_ms, transport=transport),
            gateway=DoHGateway(settings, stats, timeout_ms=timeout_ms, transport=transport),
        )

    def initialize(self) -> None:
        """Brief: Load persisted settings and start the cache sweeper (idempotent)."""

        self.settings.initialize()
        if self.cache is not None and self.sweeper is None:
            interval = float((self.config.get("cache") or {}).get("sweep_interval_seconds", 60))
            self.sweeper = CacheSweeper(self.cache, interval_seconds=interval)
            self.sweeper.start()
        if not self.stats.health_check():
            logger.warning("%s statistics backend is not reachable", self.stats.storage_type_name)

    def shutdown(self) -> None:
        """Brief: Stop background threads and release backend connections."""

        if self.sweeper is not None:
            self.sweeper.stop()
            self.sweeper = None
        self.settings.shutdown()
        self.stats.close()
