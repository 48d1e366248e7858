"""Pydantic models shared by the gateway, stats and settings layers.

Models that cross an HTTP or storage boundary serialize with camelCase keys
(``responseTime``, ``clientIp`` ...) so JSON stored in an external backend and
JSON served by the admin API have the same shape.
"""

from __future__ import annotations

import json
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Brief: Base model with camelCase aliases that also accepts field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, object]:
        return self.model_dump(by_alias=True, exclude_none=True)


class UpstreamEndpoint(CamelModel):
    """Brief: One upstream DoH resolver.

    Inputs (fields):
      - name: Display name, also used as the stats key for the upstream.
      - url: HTTPS URL accepting application/dns-message POST bodies.
      - priority: Lower is preferred.
      - enabled: Disabled endpoints are never selected.
    """

    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    priority: int = 1
    enabled: bool = True


class Credentials(CamelModel):
    """Brief: Admin credentials (stored as cleartext by every backend)."""

    username: str
    password: str


QueryStatus = Literal["success", "error", "timeout"]


class QueryLogRecord(CamelModel):
    """Brief: One completed query as retained in the query log.

    Inputs (fields):
      - id: Unique per query.
      - timestamp: Milliseconds since the epoch.
      - domain, type: Question that was asked.
      - client_ip: Truncated client identifier.
      - response_time: Milliseconds.
      - status: success | error | timeout.
      - cached: True when served from the response cache.
      - upstream: Upstream name; None when served from cache.
      - answers: Rendered answer strings.
    """

    id: str
    timestamp: int
    domain: str
    type: str
    client_ip: str = "unknown"
    response_time: float = 0.0
    status: QueryStatus = "success"
    cached: bool = False
    upstream: Optional[str] = None
    answers: List[str] = Field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(self.to_json_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: object) -> Optional["QueryLogRecord"]:
        """Brief: Parse a stored record, returning None for unreadable entries.

        Inputs:
          - raw: JSON string/bytes or an already-decoded mapping.

        Outputs:
          - QueryLogRecord or None.
        """

        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            data = json.loads(raw) if isinstance(raw, str) else raw
            return cls.model_validate(data)
        except Exception:
            return None


class UpstreamStats(CamelModel):
    name: str
    queries: int = 0
    avg_response_time: float = 0.0


class AggregateStats(CamelModel):
    """Brief: Derived statistics recomputed on every read."""

    total_queries: int = 0
    cache_hit_rate: float = 0.0
    average_response_time: float = 0.0
    queries_per_minute: float = 0.0
    upstream_servers: List[UpstreamStats] = Field(default_factory=list)
    query_type_distribution: Dict[str, int] = Field(default_factory=dict)
    recent_queries: List[QueryLogRecord] = Field(default_factory=list)
