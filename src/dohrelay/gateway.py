"""
RFC 8484 forwarding gateway.

DoHGateway validates an incoming DoH request, forwards the client's DNS bytes
verbatim to the preferred upstream and relays the upstream's bytes back
unchanged. The response cache is never consulted on this path. The handler is
transport agnostic: the FastAPI routes in dohrelay.servers.webserver only
translate a Request into handle() arguments and a GatewayResponse back.
"""

import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from .models import QueryStatus
from .settings import SettingsStore
from .stats import StatsAggregator
from .transports.doh import DEFAULT_TIMEOUT_MS, DNS_MESSAGE, UpstreamError, post_dns_message
from .upstreams import NoUpstreamAvailable, select_upstream
from .wire import MalformedMessage, Question, decode

logger = logging.getLogger("dohrelay.gateway")

RELAY_CACHE_CONTROL = "max-age=300"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class ValidationError(Exception):
    """
    Brief: Raised when a DoH request is not a usable DNS query.

    Inputs:
    - message: Description returned to the client in the 400 body

    Outputs:
    - Exception instance
    """


@dataclass
class GatewayResponse:
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)


def decode_dns_param(value: Optional[str]) -> bytes:
    """
    Brief: Decode the base64url ``dns`` query parameter strictly.

    Inputs:
    - value: base64url text, padding optional

    Outputs:
    - bytes: decoded DNS message

    Example:
        >>> decode_dns_param('AAEC_w')
        b'\\x00\\x01\\x02\\xff'
    """
    text = str(value or "").strip()
    if not text:
        raise ValidationError("missing dns parameter")
    b64 = text.replace("-", "+").replace("_", "/")
    b64 += "=" * (-len(b64) % 4)
    try:
        return base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("dns parameter is not valid base64url") from exc


def _text_response(status: int, message: str) -> GatewayResponse:
    return GatewayResponse(
        status=status,
        body=message.encode("utf-8"),
        headers={"Content-Type": "text/plain; charset=utf-8"},
    )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 2)


class DoHGateway:
    """
    Brief: Stateless request handler for GET/POST/OPTIONS on the DoH path.

    Inputs (constructor):
    - settings: SettingsStore providing the upstream registry
    - stats: StatsAggregator that receives one record per forwarded query;
      None disables recording
    - timeout_ms: upstream timeout (default 5000)
    - transport: Callable(url, query, timeout_ms=...) -> bytes

    Outputs:
    - DoHGateway instance
    """

    def __init__(
        self,
        settings: SettingsStore,
        stats: Optional[StatsAggregator] = None,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: Optional[Callable[..., bytes]] = None,
    ) -> None:
        self.settings = settings
        self.stats = stats
        self.timeout_ms = int(timeout_ms)
        self._transport = transport or post_dns_message

    def handle(
        self,
        method: str,
        query_params: Mapping[str, str],
        headers: Mapping[str, str],
        body: bytes = b"",
        client_ip: Optional[str] = None,
    ) -> GatewayResponse:
        """
        Brief: Process one DoH request; never raises.

        Inputs:
        - method: HTTP method
        - query_params: URL query parameters
        - headers: request headers (any key case)
        - body: request body
        - client_ip: resolved client address, used only for statistics

        Outputs:
        - GatewayResponse with CORS headers always present:
          200 relayed bytes, 204 preflight, 400 bad request, 405 bad method,
          500 upstream failure, 503 no enabled upstream.
        """
        try:
            resp = self._dispatch(method, query_params, headers, body, client_ip)
        except Exception:
            logger.exception("DoH request failed")
            resp = _text_response(500, "DNS query failed")
        resp.headers.update(CORS_HEADERS)
        return resp

    def _dispatch(
        self,
        method: str,
        query_params: Mapping[str, str],
        headers: Mapping[str, str],
        body: bytes,
        client_ip: Optional[str],
    ) -> GatewayResponse:
        method = str(method or "").upper()
        if method == "OPTIONS":
            return GatewayResponse(status=204)

        try:
            if method == "GET":
                query = decode_dns_param(query_params.get("dns"))
            elif method == "POST":
                lowered = {str(k).lower(): v for k, v in dict(headers or {}).items()}
                # Exact match only: parameters or case variants are rejected.
                if lowered.get("content-type") != DNS_MESSAGE:
                    raise ValidationError(f"Content-Type must be {DNS_MESSAGE}")
                query = bytes(body or b"")
            else:
                resp = _text_response(405, "Only GET and POST are supported")
                resp.headers["Allow"] = "GET, POST, OPTIONS"
                return resp

            try:
                message = decode(query)
            except MalformedMessage as exc:
                raise ValidationError(str(exc)) from exc
            if not message.questions:
                raise ValidationError("DNS query has no question")
        except ValidationError as exc:
            logger.debug("Rejected DoH request: %s", exc)
            return _text_response(400, str(exc))

        return self._forward(query, message.questions[0], client_ip)

    def _forward(self, query: bytes, question: Question, client_ip: Optional[str]) -> GatewayResponse:
        start = time.perf_counter()
        try:
            upstream = select_upstream(self.settings.get_upstream_servers())
        except NoUpstreamAvailable as exc:
            logger.warning("DoH %s/%s: %s", question.name, question.type, exc)
            self._record(question, client_ip, start, "error")
            return _text_response(503, "No upstream DNS server available")

        try:
            reply = self._transport(upstream.url, query, timeout_ms=self.timeout_ms)
        except UpstreamError as exc:
            logger.warning("DoH %s/%s via %s failed: %s", question.name, question.type, upstream.name, exc)
            self._record(question, client_ip, start, "timeout" if exc.timed_out else "error")
            return _text_response(500, "DNS query failed")

        try:
            answers = decode(reply).answers
        except MalformedMessage:
            # Relayed anyway; only the log entry loses its answers.
            answers = []
        self._record(question, client_ip, start, "success", upstream.name, answers)
        return GatewayResponse(
            status=200,
            body=reply,
            headers={"Content-Type": DNS_MESSAGE, "Cache-Control": RELAY_CACHE_CONTROL},
        )

    def _record(
        self,
        question: Question,
        client_ip: Optional[str],
        start: float,
        status: QueryStatus,
        upstream: Optional[str] = None,
        answers=(),
    ) -> None:
        if self.stats is None:
            return
        self.stats.record_wire_query(
            question.name,
            question.type,
            client_ip=client_ip,
            response_time=_elapsed_ms(start),
            status=status,
            upstream=upstream,
            answers=answers,
        )
