"""
Query statistics front-end for the gateway and the admin API.

StatsAggregator turns finished queries into QueryLogRecords and hands them to
the configured stats backend (see dohrelay.backends). All derived figures
(hit rate, averages, per-minute rate) are recomputed by the backend on read.
Client addresses are truncated before they are stored.
"""

from __future__ import annotations

import ipaddress
import logging
import random
import string
from typing import TYPE_CHECKING, Iterable, List, Mapping, Optional

from .backends.base import BackendError, BaseStatsStore, now_ms
from .models import AggregateStats, QueryLogRecord, QueryStatus
from .wire import Answer, normalize_name, render_answer

if TYPE_CHECKING:  # pragma: no cover
    from .executor import QueryResult

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"
_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_query_id() -> str:
    """Brief: Millisecond timestamp plus a short random suffix, e.g. '1700000000000-k3j9x0a1b'."""

    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{now_ms()}-{suffix}"


def sanitize_client_ip(value: Optional[str]) -> str:
    """
    Brief: Truncate a client address before it is logged.

    Inputs:
      - value: IPv4 or IPv6 address text (anything else is treated as unknown).

    Outputs:
      - str: IPv4 keeps its first three octets, IPv6 its first three groups;
        the rest is replaced with '***'. 'unknown' when the value is not an
        address.

    Example:
      >>> sanitize_client_ip("203.0.113.57")
      '203.0.113.***'
      >>> sanitize_client_ip("2001:db8::1")
      '2001:db8:0:***'
    """

    text = str(value or "").strip()
    if not text:
        return UNKNOWN_CLIENT
    try:
        addr = ipaddress.ip_address(text.split("%", 1)[0])
    except ValueError:
        return UNKNOWN_CLIENT
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    if isinstance(addr, ipaddress.IPv4Address):
        return ".".join(str(addr).split(".")[:3]) + ".***"
    groups = [format(int(g, 16), "x") for g in addr.exploded.split(":")[:3]]
    return ":".join(groups) + ":***"


def client_ip_from_headers(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """
    Brief: Pick the client address for a request.

    Inputs:
      - headers: Request headers (any key case).
      - peer: Socket peer address, if known.

    Outputs:
      - str: First X-Forwarded-For entry, else X-Real-IP, else peer, else
        'unknown'. The value is returned unsanitized.
    """

    lowered = {str(k).lower(): v for k, v in dict(headers or {}).items()}
    forwarded = str(lowered.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = str(lowered.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return str(peer) if peer else UNKNOWN_CLIENT


def format_uptime(ms: int) -> str:
    """
    Brief: Human readable uptime using the two largest units.

    Example:
      >>> format_uptime(90061000)
      '1d 1h'
      >>> format_uptime(61000)
      '1m 1s'
    """

    seconds = max(0, int(ms)) // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class StatsAggregator:
    """
    Brief: Records completed queries and serves aggregate statistics.

    Inputs (constructor):
      - backend: BaseStatsStore chosen at startup.

    Outputs:
      - StatsAggregator instance.

    Notes:
      - Recording never raises into the request path; backend failures are
        logged and the record is lost.
    """

    def __init__(self, backend: BaseStatsStore) -> None:
        self.backend = backend

    @property
    def storage_type_name(self) -> str:
        return self.backend.storage_type_name

    def log_query(self, record: QueryLogRecord) -> None:
        try:
            self.backend.log_query(record)
        except BackendError as exc:
            logger.warning("Dropping query log record %s: %s", record.id, exc)

    def record_result(self, result: "QueryResult", client_ip: Optional[str]) -> QueryLogRecord:
        """
        Brief: Build and record the log entry for one executor call.

        Inputs:
          - result: QueryResult returned by QueryExecutor.query().
          - client_ip: Raw client address (sanitized here).

        Outputs:
          - QueryLogRecord that was submitted.
        """

        if result.success:
            status: QueryStatus = "success"
        else:
            status = "timeout" if result.timed_out else "error"
        record = QueryLogRecord(
            id=new_query_id(),
            timestamp=now_ms(),
            domain=normalize_name(result.domain),
            type=result.type,
            client_ip=sanitize_client_ip(client_ip),
            response_time=result.response_time,
            status=status,
            cached=result.cached,
            upstream=result.upstream,
            answers=[render_answer(a) for a in result.answers],
        )
        self.log_query(record)
        return record

    def record_wire_query(
        self,
        domain: str,
        rtype: str,
        *,
        client_ip: Optional[str],
        response_time: float,
        status: QueryStatus,
        upstream: Optional[str] = None,
        answers: Iterable[Answer] = (),
    ) -> QueryLogRecord:
        """Brief: Record a query relayed by the DoH gateway (never cached)."""

        record = QueryLogRecord(
            id=new_query_id(),
            timestamp=now_ms(),
            domain=domain,
            type=rtype,
            client_ip=sanitize_client_ip(client_ip),
            response_time=response_time,
            status=status,
            cached=False,
            upstream=upstream,
            answers=[render_answer(a) for a in answers],
        )
        self.log_query(record)
        return record

    def get_stats(self) -> AggregateStats:
        return self.backend.get_stats()

    def get_logs(self, limit: int = 100, offset: int = 0) -> List[QueryLogRecord]:
        return self.backend.get_logs(limit, offset)

    def get_uptime(self) -> int:
        return self.backend.get_uptime()

    def clear(self) -> None:
        self.backend.clear()
        logger.info("Statistics cleared")

    def health_check(self) -> bool:
        return self.backend.health_check()

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self.backend.flush(timeout)

    def close(self) -> None:
        """Brief: Stop the backend; pending writes get a bounded drain and are then dropped."""

        self.backend.close()
