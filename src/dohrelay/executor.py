"""
Diagnostic query path: resolve one (domain, type) through the cache and the
preferred upstream and return a structured result instead of raw wire bytes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .cache import ResponseCache
from .settings import SettingsStore
from .transports.doh import DEFAULT_TIMEOUT_MS, UpstreamError, post_dns_message
from .upstreams import NoUpstreamAvailable, select_upstream
from .wire import Answer, MalformedMessage, decode, effective_ttl, encode_query, normalize_type

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """
    Brief: Outcome of one QueryExecutor.query() call.

    Inputs (fields):
      - success: False when any step failed.
      - domain, type: The question as asked.
      - answers: Decoded answers (empty on failure).
      - response_time: Milliseconds from method entry.
      - cached: True when served from the response cache.
      - upstream: Name of the upstream that answered.
      - error: Human-readable failure description.
      - timed_out: True when the failure was the upstream timeout.
    """

    success: bool
    domain: str
    type: str
    answers: List[Answer] = field(default_factory=list)
    response_time: float = 0.0
    cached: bool = False
    upstream: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "domain": self.domain,
            "type": self.type,
            "answers": [a.to_dict() for a in self.answers],
            "responseTime": self.response_time,
            "cached": self.cached,
        }
        if self.upstream is not None:
            out["upstream"] = self.upstream
        if self.error is not None:
            out["error"] = self.error
        return out


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 2)


class QueryExecutor:
    """
    Brief: Resolve queries through the ResponseCache and the upstream registry.

    Inputs (constructor):
      - settings: SettingsStore providing the upstream registry.
      - cache: ResponseCache, or None to disable caching entirely.
      - timeout_ms: Upstream request timeout (default 5000).
      - transport: Callable(url, query, timeout_ms=...) -> bytes; defaults to
        post_dns_message (tests substitute a fake).

    Outputs:
      - QueryExecutor instance.

    Notes:
      - query() never raises; every failure becomes success=False.
      - Recording the result in statistics is the caller's job.
    """

    def __init__(
        self,
        settings: SettingsStore,
        cache: Optional[ResponseCache] = None,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: Optional[Callable[..., bytes]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.timeout_ms = int(timeout_ms)
        self._transport = transport or post_dns_message

    @property
    def cache_enabled(self) -> bool:
        return self.cache is not None

    def query(self, domain: str, rtype: str = "A", use_cache: bool = True) -> QueryResult:
        """
        Brief: Resolve (domain, rtype), consulting the cache first when allowed.

        Inputs:
          - domain: Name to resolve.
          - rtype: Record type name (default 'A').
          - use_cache: Read from the cache when True. Fresh answers are stored
            in the cache regardless.

        Outputs:
          - QueryResult.
        """

        start = time.perf_counter()
        qtype = str(rtype or "A").upper()
        try:
            qtype = normalize_type(qtype)

            if use_cache and self.cache is not None:
                entry = self.cache.get(domain, qtype)
                if entry is not None:
                    return QueryResult(
                        success=True,
                        domain=domain,
                        type=qtype,
                        answers=list(entry.answers),
                        response_time=_elapsed_ms(start),
                        cached=True,
                    )

            wire_query = encode_query(domain, qtype)
            upstream = select_upstream(self.settings.get_upstream_servers())
            raw = self._transport(upstream.url, wire_query, timeout_ms=self.timeout_ms)
            answers = decode(raw).answers

            if answers and self.cache is not None:
                self.cache.set(domain, qtype, answers, effective_ttl(answers))

            return QueryResult(
                success=True,
                domain=domain,
                type=qtype,
                answers=answers,
                response_time=_elapsed_ms(start),
                cached=False,
                upstream=upstream.name,
            )
        except (ValueError, NoUpstreamAvailable, UpstreamError, MalformedMessage) as exc:
            logger.warning("Query %s/%s failed: %s", domain, qtype, exc)
            return self._failure(domain, qtype, start, str(exc), exc)
        except Exception as exc:
            logger.exception("Unexpected error resolving %s/%s", domain, qtype)
            return self._failure(domain, qtype, start, str(exc) or "unknown error", exc)

    @staticmethod
    def _failure(
        domain: str,
        qtype: str,
        start: float,
        message: str,
        exc: BaseException,
    ) -> QueryResult:
        return QueryResult(
            success=False,
            domain=domain,
            type=qtype,
            answers=[],
            response_time=_elapsed_ms(start),
            cached=False,
            error=message,
            timed_out=bool(getattr(exc, "timed_out", False)),
        )
