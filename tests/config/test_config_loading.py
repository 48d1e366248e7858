"""
Brief: Tests for configuration parsing, env expansion, schema validation and defaults.

Inputs:
  - None

Outputs:
  - None
"""

import json
import logging
from pathlib import Path

import pytest

from dohrelay.config.config_parser import (
    DEFAULT_CONFIG,
    apply_defaults,
    credentials_from_config,
    load_config,
    normalize_upstream_config,
    parse_config_file,
)
from dohrelay.config.config_schema import expand_env_vars, schema_json, validate_config


def test_parse_config_file_applies_defaults(tmp_path) -> None:
    """
    Brief: A minimal YAML file is completed with every default section.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts merged values
    """
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text("server:\n  port: 9443\ncache:\n  enabled: false\n", encoding="utf-8")

    cfg = parse_config_file(str(cfg_file), environ={})
    assert cfg["server"] == {"host": "127.0.0.1", "port": 9443, "doh_path": "/dns-query"}
    assert cfg["cache"]["enabled"] is False
    assert cfg["cache"]["max_entries"] == 10000
    assert cfg["storage"]["backend"] == "auto"
    assert cfg["upstream_timeout_ms"] == 5000


def test_empty_file_is_all_defaults(tmp_path) -> None:
    """
    Brief: An empty YAML document yields DEFAULT_CONFIG.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts equality
    """
    cfg_file = tmp_path / "empty.yaml"
    cfg_file.write_text("", encoding="utf-8")
    assert parse_config_file(str(cfg_file), environ={}) == DEFAULT_CONFIG


def test_non_mapping_root_and_bad_values_raise(tmp_path) -> None:
    """
    Brief: A list root or a schema violation raises ValueError naming the file.

    Inputs:
      - YAML list root; port out of range

    Outputs:
      - None: Asserts ValueError and message
    """
    list_file = tmp_path / "list.yaml"
    list_file.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        parse_config_file(str(list_file), environ={})

    bad_file = tmp_path / "bad.yaml"
    bad_file.write_text("server:\n  port: 70000\n", encoding="utf-8")
    with pytest.raises(ValueError) as excinfo:
        parse_config_file(str(bad_file), environ={})
    assert "bad.yaml" in str(excinfo.value)
    assert "server/port" in str(excinfo.value)


def test_unknown_keys_policy(caplog) -> None:
    """
    Brief: Unknown keys warn by default, fail with 'error', pass with 'ignore'.

    Inputs:
      - config with an unknown top-level key

    Outputs:
      - None: Asserts warning, error and silence
    """
    with caplog.at_level(logging.WARNING):
        validate_config({"bogus": 1})
    assert "bogus" in caplog.text

    with pytest.raises(ValueError):
        validate_config({"bogus": 1}, unknown_keys="error")
    validate_config({"bogus": 1}, unknown_keys="ignore")
    with pytest.raises(ValueError):
        validate_config({}, unknown_keys="maybe")


def test_env_expansion_types_and_missing_vars() -> None:
    """
    Brief: Whole-value placeholders are parsed as YAML; unset ones drop the key.

    Inputs:
      - PORT set to '9000', REDIS_URL unset, partial placeholder in a string

    Outputs:
      - None: Asserts expanded mapping
    """
    cfg = {
        "server": {"port": "${PORT}", "host": "${HOST}"},
        "storage": {"key_prefix": "${APP}:dns:", "redis": {"url": "${REDIS_URL}"}},
        "upstreams": [{"name": "${NAME}", "url": "https://x/dns-query"}],
    }
    expand_env_vars(cfg, {"PORT": "9000", "APP": "edge", "NAME": "Edge"})
    assert cfg["server"] == {"port": 9000}
    assert cfg["storage"]["key_prefix"] == "edge:dns:"
    assert cfg["storage"]["redis"] == {}
    assert cfg["upstreams"][0]["name"] == "Edge"


def test_load_config_with_env_backed_storage() -> None:
    """
    Brief: load_config expands placeholders before validating.

    Inputs:
      - kv_rest url/token from environment

    Outputs:
      - None: Asserts expanded values survive defaults merge
    """
    cfg = load_config(
        {"storage": {"backend": "kv_rest", "kv_rest": {"url": "${KV_URL}", "token": "${KV_TOKEN}"}}},
        environ={"KV_URL": "https://kv.example", "KV_TOKEN": "abc"},
    )
    assert cfg["storage"]["kv_rest"] == {"url": "https://kv.example", "token": "abc"}
    assert cfg["storage"]["key_prefix"] == "dns:"


def test_normalize_upstream_config() -> None:
    """
    Brief: Configured upstreams become UpstreamEndpoint objects; absent list means None.

    Inputs:
      - config with two upstreams and a timeout

    Outputs:
      - None: Asserts endpoints and timeout
    """
    cfg = apply_defaults(
        {
            "upstreams": [
                {"name": "A", "url": "https://a/dns-query", "priority": 2},
                {"name": "B", "url": "https://b/dns-query", "enabled": False},
            ],
            "upstream_timeout_ms": 1500,
        }
    )
    upstreams, timeout_ms = normalize_upstream_config(cfg)
    assert [(u.name, u.priority, u.enabled) for u in upstreams] == [("A", 2, True), ("B", 1, False)]
    assert timeout_ms == 1500

    assert normalize_upstream_config(apply_defaults({})) == (None, 5000)
    with pytest.raises(ValueError):
        normalize_upstream_config({"upstreams": [{"name": "no-url"}]})


def test_credentials_from_config_defaults() -> None:
    """
    Brief: Missing auth values fall back to admin/changeme.

    Inputs:
      - partial auth section

    Outputs:
      - None: Asserts credentials
    """
    creds = credentials_from_config({"auth": {"username": "ops"}})
    assert (creds.username, creds.password) == ("ops", "changeme")


def test_schema_json_is_valid_json() -> None:
    """
    Brief: schema_json() emits the schema with its top-level sections.

    Inputs:
      - None

    Outputs:
      - None: Asserts parsed keys
    """
    schema = json.loads(schema_json())
    assert schema["additionalProperties"] is False
    assert {"server", "upstreams", "cache", "storage", "logging"} <= set(schema["properties"])


def test_shipped_example_config_is_valid() -> None:
    """
    Brief: config.yaml.example at the repository root loads cleanly.

    Inputs:
      - None

    Outputs:
      - None: Asserts parsed upstreams and dropped unset placeholders
    """
    example = Path(__file__).resolve().parents[2] / "config.yaml.example"
    cfg = parse_config_file(str(example), environ={})
    assert [u["name"] for u in cfg["upstreams"]] == ["Cloudflare DNS", "Google DNS", "Quad9 DNS"]
    assert "url" not in cfg["storage"]["redis"]
    assert cfg["storage"]["redis"]["socket_timeout"] == 2.0
