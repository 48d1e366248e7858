from __future__ import annotations

"""Statistics and settings persistence backends.

Inputs:
  - None directly; this package is imported by code that needs a backend
    interface or the startup-time loaders.

Outputs:
  - Exposes the base backend interfaces and the loaders that construct the
    configured concrete implementation (memory, Redis, KV REST).
"""

from .base import BackendError, BaseSettingsStore, BaseStatsStore
from .registry import load_settings_store, load_stats_store, resolve_backend_alias

__all__ = [
    "BackendError",
    "BaseSettingsStore",
    "BaseStatsStore",
    "load_settings_store",
    "load_stats_store",
    "resolve_backend_alias",
]
