"""JSON Schema-based validation for dohrelay YAML configuration.

This module holds the configuration schema and validates a parsed
``config.yaml`` against it after ``${VAR}`` placeholders have been expanded
from the environment.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional

import yaml
from jsonschema import Draft202012Validator, ValidationError

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")

_UPSTREAM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "url": {"type": "string", "pattern": "^https?://"},
        "priority": {"type": "integer"},
        "enabled": {"type": "boolean"},
    },
    "required": ["name", "url"],
    "additionalProperties": False,
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "dohrelay configuration",
    "type": "object",
    "properties": {
        "server": {
            "type": "object",
            "properties": {
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                "doh_path": {"type": "string", "pattern": "^/"},
            },
            "additionalProperties": False,
        },
        "upstreams": {"type": "array", "items": _UPSTREAM_SCHEMA},
        "upstream_timeout_ms": {"type": "integer", "minimum": 1},
        "cache": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "default_ttl": {"type": "integer", "minimum": 1},
                "max_entries": {"type": "integer", "minimum": 1},
                "sweep_interval_seconds": {"type": "number", "exclusiveMinimum": 0},
            },
            "additionalProperties": False,
        },
        "stats": {
            "type": "object",
            "properties": {
                "max_logs": {"type": "integer", "minimum": 1},
                "queue_size": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "storage": {
            "type": "object",
            "properties": {
                "backend": {"type": "string", "minLength": 1},
                "key_prefix": {"type": "string"},
                "redis": {
                    "type": "object",
                    "properties": {
                        "url": {"type": ["string", "null"]},
                        "socket_timeout": {"type": ["number", "null"]},
                        "socket_connect_timeout": {"type": ["number", "null"]},
                    },
                    "additionalProperties": False,
                },
                "kv_rest": {
                    "type": "object",
                    "properties": {
                        "url": {"type": ["string", "null"]},
                        "token": {"type": ["string", "null"]},
                        "timeout": {"type": "number", "exclusiveMinimum": 0},
                    },
                    "additionalProperties": False,
                },
            },
            "additionalProperties": False,
        },
        "auth": {
            "type": "object",
            "properties": {
                "username": {"type": "string", "minLength": 1},
                "password": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {
                    "type": "string",
                    "enum": ["debug", "info", "warn", "warning", "error", "crit", "critical"],
                },
                "stderr": {"type": "boolean"},
                "file": {"type": ["string", "null"]},
                "syslog": {"type": ["boolean", "object"]},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


def _parse_env_value(text: Optional[str]) -> Any:
    """Brief: Parse an environment value as a YAML scalar (falls back to the raw text)."""

    if text is None:
        return None
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def expand_env_vars(cfg: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> None:
    """Brief: Replace ``${VAR}`` placeholders with environment values in-place.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - environ: Environment mapping (defaults to os.environ).

    Outputs:
      - None.

    Behavior:
      - A mapping value that is exactly ``${VAR}`` becomes the variable's
        value parsed as YAML (numbers and booleans keep their type). When
        the variable is unset the key is dropped so it falls back to its
        default.
      - ``${VAR}`` inside a longer string is substituted; unset variables are
        left as written.
      - Keys are never substituted, only values.

    Example:
      >>> cfg = {"storage": {"redis": {"url": "${REDIS_URL}"}}}
      >>> expand_env_vars(cfg, {"REDIS_URL": "redis://cache:6379/0"})
      >>> cfg["storage"]["redis"]["url"]
      'redis://cache:6379/0'
    """

    env = os.environ if environ is None else environ

    def _expand_string(text: str) -> Any:
        whole = _VAR_PATTERN.fullmatch(text)
        if whole:
            return _parse_env_value(env.get(whole.group(1)))
        return _VAR_PATTERN.sub(lambda m: env.get(m.group(1), m.group(0)), text)

    def _expand_obj(obj: Any) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj)
        if isinstance(obj, list):
            return [_expand_obj(item) for item in obj]
        if isinstance(obj, dict):
            out = {}
            for k, v in obj.items():
                whole = _VAR_PATTERN.fullmatch(v) if isinstance(v, str) else None
                if whole and whole.group(1) not in env:
                    continue
                out[k] = _expand_obj(v)
            return out
        return obj

    expanded = _expand_obj(cfg)
    cfg.clear()
    cfg.update(expanded)


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.
      - config_path: Optional path to the YAML config being validated.

    Outputs:
      - String suitable for display in logs or CLI output.
    """

    header = f"Invalid configuration in {config_path or '<config dict>'}:"
    lines: List[str] = [header]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def _split_extra_property_errors(
    errors: List[ValidationError],
) -> tuple[List[ValidationError], List[ValidationError]]:
    """Brief: Partition validation errors into extra-property vs other errors."""

    extra: List[ValidationError] = []
    other: List[ValidationError] = []
    for err in errors:
        if getattr(err, "validator", None) in {
            "additionalProperties",
            "unevaluatedProperties",
        }:
            extra.append(err)
        else:
            other.append(err)
    return extra, other


def validate_config(
    cfg: Dict[str, Any],
    *,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
    environ: Optional[Mapping[str, str]] = None,
) -> None:
    """Brief: Expand placeholders and validate a parsed configuration mapping.

    Inputs:
      - cfg: Dict loaded from YAML (mutated by placeholder expansion).
      - config_path: Optional YAML path, used only in error messages.
      - unknown_keys: Policy for keys the schema does not describe:
        "ignore", "warn" (default; logged) or "error" (fatal).
      - environ: Environment used for ``${VAR}`` expansion.

    Outputs:
      - None on success.

    Raises:
      - ValueError: when validation fails, or when ``unknown_keys`` is "error"
        and unknown keys are present.

    Example:
      >>> validate_config({"server": {"port": 8053}})
    """

    if unknown_keys not in {"ignore", "warn", "error"}:
        raise ValueError(
            f"unknown_keys policy must be 'ignore', 'warn', or 'error', got {unknown_keys!r}"
        )

    expand_env_vars(cfg, environ)

    validator = Draft202012Validator(CONFIG_SCHEMA)
    all_errors = sorted(validator.iter_errors(cfg), key=lambda e: list(e.path))
    if not all_errors:
        return None

    extra_errors, other_errors = _split_extra_property_errors(all_errors)

    if other_errors:
        raise ValueError(_format_errors(other_errors + extra_errors, config_path=config_path))

    message = _format_errors(extra_errors, config_path=config_path)
    if unknown_keys == "ignore":
        return None
    if unknown_keys == "warn":
        logger.warning(message)
        return None
    raise ValueError(message)


def schema_json() -> str:
    """Brief: Configuration schema as indented JSON text (for --print-schema)."""

    return json.dumps(CONFIG_SCHEMA, indent=2, sort_keys=True)
