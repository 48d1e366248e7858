"""Upstream registry and static-priority selection.

Selection never load-balances and never fails over: the enabled endpoint with
the lowest priority wins, and a failed forward is reported to the caller
rather than retried against the next endpoint.
"""

from __future__ import annotations

from typing import Iterable, List

from .models import UpstreamEndpoint

DEFAULT_UPSTREAMS: List[UpstreamEndpoint] = [
    UpstreamEndpoint(name="Cloudflare DNS", url="https://1.1.1.1/dns-query", priority=1),
    UpstreamEndpoint(name="Google DNS", url="https://8.8.8.8/dns-query", priority=2),
    UpstreamEndpoint(name="Quad9 DNS", url="https://9.9.9.9/dns-query", priority=3),
]


class NoUpstreamAvailable(Exception):
    """Raised when no enabled upstream exists."""


def default_upstreams() -> List[UpstreamEndpoint]:
    return [u.model_copy() for u in DEFAULT_UPSTREAMS]


def active_upstreams(servers: Iterable[UpstreamEndpoint]) -> List[UpstreamEndpoint]:
    """Brief: Filter to enabled endpoints sorted ascending by priority.

    Inputs:
      - servers: Any iterable of UpstreamEndpoint.

    Outputs:
      - list[UpstreamEndpoint]; ties keep their configured order.

    Example:
      >>> eps = [UpstreamEndpoint(name="b", url="u", priority=2),
      ...        UpstreamEndpoint(name="a", url="u", priority=1, enabled=False)]
      >>> [u.name for u in active_upstreams(eps)]
      ['b']
    """

    return sorted((s for s in servers if s.enabled), key=lambda s: s.priority)


def select_upstream(servers: Iterable[UpstreamEndpoint]) -> UpstreamEndpoint:
    """Brief: Return the preferred enabled upstream.

    Inputs:
      - servers: Registry contents (enabled or not, any order).

    Outputs:
      - UpstreamEndpoint with the lowest priority among enabled entries.

    Raises NoUpstreamAvailable when nothing is enabled.
    """

    active = active_upstreams(servers)
    if not active:
        raise NoUpstreamAvailable("no enabled upstream DNS server")
    return active[0]
