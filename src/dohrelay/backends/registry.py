from __future__ import annotations

"""Registry, alias resolution and startup selection for storage backends.

Inputs:
  - None directly; load_stats_store()/load_settings_store() are called once at
    startup with the ``storage`` config section.

Outputs:
  - discover_backends(): mapping of normalized aliases to backend classes for
    one base class (stats or settings), built by walking dohrelay.backends.*.
  - resolve_backend_alias(): turn 'auto' into a concrete alias by inspecting
    the environment once.
  - load_stats_store()/load_settings_store(): construct the selected backend.
"""

import difflib
import functools
import importlib
import inspect
import logging
import os
import pkgutil
import re
from typing import Any, Dict, Iterable, Mapping, Optional

from .base import BaseSettingsStore, BaseStatsStore

logger = logging.getLogger(__name__)

_CAMEL_1 = re.compile(r"(.)([A-Z][a-z]+)")
_CAMEL_2 = re.compile(r"([a-z0-9])([A-Z])")

_SUFFIXES = ("StatsStore", "SettingsStore", "Store")


@functools.lru_cache(maxsize=256)
def _camel_to_snake(name: str) -> str:
    s1 = _CAMEL_1.sub(r"\1_\2", name)
    s2 = _CAMEL_2.sub(r"\1_\2", s1)
    return s2.lower()


def _default_alias_for(cls: type) -> str:
    name = cls.__name__
    for suffix in _SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return _camel_to_snake(name)


@functools.lru_cache(maxsize=256)
def _normalize(alias: str) -> str:
    """Brief: Normalize alias strings: lowercase, trimmed, dashes to underscores."""

    return alias.strip().lower().replace("-", "_")


def _iter_backend_modules(package_name: str = "dohrelay.backends") -> Iterable[str]:
    pkg = importlib.import_module(package_name)
    for modinfo in pkgutil.walk_packages(pkg.__path__, pkg.__name__ + "."):
        yield modinfo.name


@functools.lru_cache(maxsize=8)
def discover_backends(
    base: type, package_name: str = "dohrelay.backends"
) -> Dict[str, type]:
    """Brief: Discover concrete subclasses of ``base`` and register them by alias.

    Inputs:
      - base: BaseStatsStore or BaseSettingsStore.
      - package_name: Package path to scan.

    Outputs:
      - Dict[str, type] mapping normalized aliases to classes.

    Raises ValueError when two classes claim the same alias.
    """

    registry: Dict[str, type] = {}
    for modname in _iter_backend_modules(package_name):
        module = importlib.import_module(modname)
        for _, obj in inspect.getmembers(module, inspect.isclass):
            if not issubclass(obj, base) or obj is base or not obj.aliases:
                continue
            # Intermediate bases (the key-value layer) declare no aliases of
            # their own and are skipped above.
            if "aliases" not in vars(obj):
                continue
            claimed = {_normalize(a) for a in obj.aliases}
            claimed.add(_normalize(_default_alias_for(obj)))
            for alias in claimed:
                if alias in registry and registry[alias] is not obj:
                    other = registry[alias]
                    raise ValueError(
                        f"Duplicate backend alias '{alias}' claimed by {obj.__module__}.{obj.__name__} "
                        f"and {other.__module__}.{other.__name__}"
                    )
                registry[alias] = obj
    return registry


def get_backend_class(identifier: str, base: type) -> type:
    """Brief: Resolve an alias or dotted import path to a backend class.

    Inputs:
      - identifier: Alias ('redis') or dotted path ('pkg.mod.Class').
      - base: Required base class.

    Outputs:
      - Backend class.
    """

    ident = str(identifier or "").strip()
    if "." in ident:
        modname, _, classname = ident.rpartition(".")
        if not modname or not classname:
            raise ValueError(f"Invalid backend path '{identifier}'")
        module = importlib.import_module(modname)
        cls = getattr(module, classname)
        if not issubclass(cls, base):
            raise TypeError(f"{identifier} is not a {base.__name__} subclass")
        return cls

    reg = discover_backends(base)
    key = _normalize(ident)
    try:
        return reg[key]
    except KeyError:
        suggestions = difflib.get_close_matches(key, list(reg.keys()), n=3)
        raise KeyError(
            f"Unknown backend alias '{identifier}'. "
            f"Known aliases: {', '.join(sorted(reg.keys()))}. "
            f"Suggestions: {suggestions}"
        )


def resolve_backend_alias(
    requested: Optional[str], environ: Optional[Mapping[str, str]] = None
) -> str:
    """Brief: Pick the storage backend alias.

    Inputs:
      - requested: Configured storage.backend; None or 'auto' probes the
        environment.
      - environ: Environment mapping (defaults to os.environ).

    Outputs:
      - 'kv_rest' when KV_REST_API_URL and KV_REST_API_TOKEN are set, else
        'redis' when REDIS_URL is set, else 'memory'. Explicit values are
        returned normalized.

    Example:
      >>> resolve_backend_alias("auto", {"REDIS_URL": "redis://r:6379/0"})
      'redis'
    """

    choice = _normalize(str(requested or "auto"))
    if choice != "auto":
        return choice
    env = os.environ if environ is None else environ
    if env.get("KV_REST_API_URL") and env.get("KV_REST_API_TOKEN"):
        return "kv_rest"
    if env.get("REDIS_URL"):
        return "redis"
    return "memory"


def backend_options(
    alias: str,
    storage_cfg: Optional[Mapping[str, Any]],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Build constructor kwargs for a backend from config + environment.

    Inputs:
      - alias: Resolved backend alias.
      - storage_cfg: The ``storage`` config section.
      - environ: Environment mapping used to fill a missing url/token.

    Outputs:
      - dict of keyword arguments for the backend constructor.
    """

    cfg = dict(storage_cfg or {})
    env = os.environ if environ is None else environ
    opts: Dict[str, Any] = {}
    if cfg.get("key_prefix"):
        opts["key_prefix"] = cfg["key_prefix"]

    if alias in ("redis", "valkey"):
        sub = dict(cfg.get("redis") or {})
        sub.setdefault("url", env.get("REDIS_URL"))
        opts.update({k: v for k, v in sub.items() if v is not None})
    elif alias in ("kv_rest", "vercel_kv", "upstash"):
        sub = dict(cfg.get("kv_rest") or {})
        sub.setdefault("url", env.get("KV_REST_API_URL"))
        sub.setdefault("token", env.get("KV_REST_API_TOKEN"))
        opts.update({k: v for k, v in sub.items() if v is not None})
    return opts


def load_stats_store(
    storage_cfg: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    **extra: Any,
) -> BaseStatsStore:
    """Brief: Construct the statistics backend selected by config/environment.

    Inputs:
      - storage_cfg: ``storage`` config section.
      - environ: Environment mapping (defaults to os.environ).
      - **extra: Additional constructor options (max_logs, queue_size).

    Outputs:
      - BaseStatsStore instance.
    """

    alias = resolve_backend_alias((storage_cfg or {}).get("backend"), environ)
    cls = get_backend_class(alias, BaseStatsStore)
    store = cls(**backend_options(alias, storage_cfg, environ), **extra)
    logger.info("Statistics backend: %s", store.storage_type_name)
    return store


def load_settings_store(
    storage_cfg: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BaseSettingsStore:
    """Brief: Construct the settings backend selected by config/environment."""

    alias = resolve_backend_alias((storage_cfg or {}).get("backend"), environ)
    cls = get_backend_class(alias, BaseSettingsStore)
    store = cls(**backend_options(alias, storage_cfg, environ))
    logger.info("Settings backend: %s", store.storage_type_name)
    return store
