"""
Brief: Tests for dohrelay.stats helpers and StatsAggregator.

Inputs:
  - None

Outputs:
  - None
"""

import re

import pytest

from dohrelay.backends.base import BackendError
from dohrelay.backends.memory import MemoryStatsStore
from dohrelay.executor import QueryResult
from dohrelay.stats import (
    StatsAggregator,
    client_ip_from_headers,
    format_uptime,
    new_query_id,
    sanitize_client_ip,
)
from dohrelay.wire import Answer


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("203.0.113.57", "203.0.113.***"),
        ("2001:db8:85a3::8a2e:370:7334", "2001:db8:85a3:***"),
        ("2001:db8::1", "2001:db8:0:***"),
        ("::ffff:192.0.2.10", "192.0.2.***"),
        ("fe80::1%eth0", "fe80:0:0:***"),
        ("not-an-ip", "unknown"),
        ("", "unknown"),
        (None, "unknown"),
    ],
)
def test_sanitize_client_ip(raw, expected) -> None:
    """
    Brief: Addresses are truncated; anything unparseable becomes 'unknown'.

    Inputs:
      - raw: client address text

    Outputs:
      - None: Asserts sanitized value
    """
    assert sanitize_client_ip(raw) == expected


def test_client_ip_header_precedence() -> None:
    """
    Brief: X-Forwarded-For beats X-Real-IP which beats the socket peer.

    Inputs:
      - header combinations

    Outputs:
      - None: Asserts chosen address
    """
    both = {"X-Forwarded-For": "198.51.100.1, 10.0.0.1", "X-Real-IP": "198.51.100.2"}
    assert client_ip_from_headers(both, "127.0.0.1") == "198.51.100.1"
    assert client_ip_from_headers({"x-real-ip": "198.51.100.2"}, "127.0.0.1") == "198.51.100.2"
    assert client_ip_from_headers({}, "127.0.0.1") == "127.0.0.1"
    assert client_ip_from_headers({}, None) == "unknown"


@pytest.mark.parametrize(
    "ms,expected",
    [
        (0, "0s"),
        (12_000, "12s"),
        (61_000, "1m 1s"),
        (7_500_000, "2h 5m"),
        (90_061_000, "1d 1h"),
    ],
)
def test_format_uptime(ms, expected) -> None:
    """
    Brief: format_uptime shows the two largest units.

    Inputs:
      - ms: milliseconds

    Outputs:
      - None: Asserts formatted text
    """
    assert format_uptime(ms) == expected


def test_new_query_id_shape_and_uniqueness() -> None:
    """
    Brief: Ids are '<epoch ms>-<9 alnum>' and do not repeat.

    Inputs:
      - 200 generated ids

    Outputs:
      - None: Asserts pattern and uniqueness
    """
    ids = [new_query_id() for _ in range(200)]
    assert all(re.fullmatch(r"\d+-[a-z0-9]{9}", i) for i in ids)
    assert len(set(ids)) == len(ids)


def test_record_result_maps_status_and_answers() -> None:
    """
    Brief: record_result derives status, sanitizes the IP and renders answers.

    Inputs:
      - successful, timed-out and failed QueryResults

    Outputs:
      - None: Asserts stored records and aggregate
    """
    stats = StatsAggregator(MemoryStatsStore())
    ok = QueryResult(
        success=True,
        domain="example.com",
        type="MX",
        answers=[Answer("example.com", "MX", 300, {"priority": 10, "exchange": "mx.example.com"})],
        response_time=20.0,
        upstream="Cloudflare DNS",
    )
    timeout = QueryResult(success=False, domain="slow.example", type="A", error="timed out", timed_out=True)
    failed = QueryResult(success=False, domain="bad.example", type="A", error="boom")

    rec = stats.record_result(ok, "192.0.2.44")
    assert rec.status == "success"
    assert rec.client_ip == "192.0.2.***"
    assert rec.answers == ["10 mx.example.com"]
    assert stats.record_result(timeout, None).status == "timeout"
    assert stats.record_result(failed, "::1").status == "error"

    logs = stats.get_logs(10, 0)
    assert [r.domain for r in logs] == ["bad.example", "slow.example", "example.com"]
    agg = stats.get_stats()
    assert agg.total_queries == 3
    assert agg.average_response_time == 20.0

    stats.clear()
    assert stats.get_stats().total_queries == 0


def test_record_wire_query_is_never_cached() -> None:
    """
    Brief: Relayed queries are recorded with cached=False and their upstream.

    Inputs:
      - record_wire_query for an AAAA question

    Outputs:
      - None: Asserts record fields
    """
    stats = StatsAggregator(MemoryStatsStore())
    rec = stats.record_wire_query(
        "example.com",
        "AAAA",
        client_ip="2001:db8::5",
        response_time=3.5,
        status="success",
        upstream="Quad9 DNS",
        answers=[Answer("example.com", "AAAA", 60, "2001:db8::1")],
    )
    assert rec.cached is False
    assert rec.upstream == "Quad9 DNS"
    assert rec.answers == ["2001:db8::1"]
    assert stats.get_stats().upstream_servers[0].name == "Quad9 DNS"


def test_backend_errors_do_not_propagate() -> None:
    """
    Brief: A failing backend write is logged and swallowed by log_query.

    Inputs:
      - backend whose log_query raises BackendError

    Outputs:
      - None: Asserts no exception
    """

    class Failing(MemoryStatsStore):
        def log_query(self, record):
            raise BackendError("unreachable")

    stats = StatsAggregator(Failing())
    stats.record_wire_query("a.example", "A", client_ip=None, response_time=1.0, status="error")
    assert stats.storage_type_name == "Memory"
    assert stats.health_check() is True


def test_record_result_normalizes_domain_case() -> None:
    """
    Brief: Diagnostic queries are logged under the lower-cased, dot-less name.

    Inputs:
      - QueryResult for 'Example.COM.'

    Outputs:
      - None: Asserts the stored domain
    """
    stats = StatsAggregator(MemoryStatsStore())
    result = QueryResult(success=False, domain="Example.COM.", type="A", error="boom")

    assert stats.record_result(result, "192.0.2.1").domain == "example.com"
    assert stats.get_logs(1, 0)[0].domain == "example.com"
