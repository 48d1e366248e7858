"""Configuration parsing and normalization helpers for dohrelay.

Brief:
  This module contains the configuration-parsing utilities used by the CLI
  entrypoint. It centralizes:
    - reading YAML config files
    - JSON Schema validation (with ``${VAR}`` expansion performed by
      validate_config)
    - filling in defaults for every optional section
    - normalization helpers for upstreams and credentials

Inputs:
  - YAML config files and dicts

Outputs:
  - Normalized config dicts and typed upstream/credential objects
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from ..models import Credentials, UpstreamEndpoint
from ..settings import DEFAULT_PASSWORD, DEFAULT_USERNAME
from ..transports.doh import DEFAULT_TIMEOUT_MS
from .config_schema import validate_config

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 8053, "doh_path": "/dns-query"},
    "upstream_timeout_ms": DEFAULT_TIMEOUT_MS,
    "cache": {
        "enabled": True,
        "default_ttl": 300,
        "max_entries": 10000,
        "sweep_interval_seconds": 60,
    },
    "stats": {"max_logs": 1000, "queue_size": 10000},
    "storage": {"backend": "auto", "key_prefix": "dns:", "redis": {}, "kv_rest": {}},
    "auth": {"username": DEFAULT_USERNAME, "password": DEFAULT_PASSWORD},
    "logging": {"level": "info", "stderr": True},
}


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def apply_defaults(cfg: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Brief: Return a new config with every optional section filled in.

    Inputs:
      - cfg: Validated configuration mapping (may be empty or None).

    Outputs:
      - dict: DEFAULT_CONFIG deep-merged with cfg (cfg wins).

    Example:
      >>> apply_defaults({"server": {"port": 9000}})["server"]
      {'host': '127.0.0.1', 'port': 9000, 'doh_path': '/dns-query'}
    """

    return _merge(DEFAULT_CONFIG, cfg or {})


def load_config(
    cfg: Optional[Dict[str, Any]] = None,
    *,
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Validate a config mapping and fill in defaults.

    Inputs:
      - cfg: Parsed YAML mapping (mutated by placeholder expansion).
      - config_path: Optional path for error messages.
      - environ: Environment for ``${VAR}`` expansion.

    Outputs:
      - dict: Complete configuration.

    Raises:
      - ValueError: When schema validation fails.
    """

    cfg = cfg if cfg is not None else {}
    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")
    validate_config(cfg, config_path=config_path, environ=environ)
    return apply_defaults(cfg)


def parse_config_file(
    config_path: str,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, schema-validate and default a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: Complete configuration mapping.

    Raises:
      - ValueError: When the root is not a mapping or validation fails.
      - OSError: When the file cannot be read.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    return load_config(cfg, config_path=config_path, environ=environ)


def normalize_upstream_config(
    cfg: Mapping[str, Any],
) -> Tuple[Optional[List[UpstreamEndpoint]], int]:
    """Brief: Normalize upstream configuration to endpoints + timeout.

    Inputs:
      - cfg: Complete configuration mapping.

    Outputs:
      - (upstreams, timeout_ms):
        - upstreams: list[UpstreamEndpoint], or None when the config does not
          list any (the built-in registry applies).
        - timeout_ms: int timeout in milliseconds for every upstream request.

    Raises:
      - ValueError: For entries missing a name or url.
    """

    raw = cfg.get("upstreams")
    upstreams: Optional[List[UpstreamEndpoint]] = None
    if raw is not None:
        if not isinstance(raw, list):
            raise ValueError("config.upstreams must be a list of upstream definitions")
        upstreams = []
        for u in raw:
            if not isinstance(u, Mapping) or not u.get("name") or not u.get("url"):
                raise ValueError("each upstream entry must include 'name' and 'url'")
            upstreams.append(
                UpstreamEndpoint(
                    name=str(u["name"]),
                    url=str(u["url"]),
                    priority=int(u.get("priority", 1)),
                    enabled=bool(u.get("enabled", True)),
                )
            )

    try:
        timeout_ms = int(cfg.get("upstream_timeout_ms", DEFAULT_TIMEOUT_MS))
    except (TypeError, ValueError):
        timeout_ms = DEFAULT_TIMEOUT_MS

    return upstreams, timeout_ms


def credentials_from_config(cfg: Mapping[str, Any]) -> Credentials:
    auth = cfg.get("auth") or {}
    return Credentials(
        username=str(auth.get("username") or DEFAULT_USERNAME),
        password=str(auth.get("password") or DEFAULT_PASSWORD),
    )
