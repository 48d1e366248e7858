import http.client
import importlib.metadata
import socket
import ssl
import time
import urllib.parse
from typing import Dict, Optional

try:
    DOHRELAY_VERSION = importlib.metadata.version("dohrelay")
except (
    Exception
):  # pragma: no cover - metadata may be unavailable when running from a checkout
    DOHRELAY_VERSION = "unknown"

DNS_MESSAGE = "application/dns-message"
DEFAULT_TIMEOUT_MS = 5000
READ_CHUNK = 4096


class UpstreamError(Exception):
    """
    Brief: Upstream DoH forward failed (non-2xx, network error or timeout).

    Inputs:
    - message: Description of the error
    - timed_out: True when the failure was the hard request timeout
    - status: HTTP status returned by the upstream, when there was one

    Outputs:
    - Exception instance
    """

    def __init__(
        self, message: str, *, timed_out: bool = False, status: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.timed_out = timed_out
        self.status = status


def _build_ssl_ctx(verify: bool = True) -> ssl.SSLContext:
    if not verify:
        return ssl._create_unverified_context()
    return ssl.create_default_context()


def _remaining(deadline: float) -> float:
    """Brief: Seconds left before deadline; raises socket.timeout once it has passed."""
    left = deadline - time.monotonic()
    if left <= 0:
        raise socket.timeout("request deadline exceeded")
    return left


def post_dns_message(
    url: str,
    query: bytes,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    headers: Optional[Dict[str, str]] = None,
    verify: bool = True,
) -> bytes:
    """
    Brief: POST a wire-format DNS message to a DoH endpoint (RFC 8484).

    Inputs:
    - url: Target DoH endpoint, e.g. https://1.1.1.1/dns-query
    - query: Wire-format DNS bytes, sent verbatim
    - timeout_ms: Hard limit on the whole exchange (connect, send and read)
    - headers: Optional extra headers
    - verify: Verify TLS certificates (HTTPS only)

    Outputs:
    - bytes: raw response body, unmodified

    Notes:
    - Sends Content-Type and Accept of application/dns-message.
    - Raises UpstreamError for non-2xx statuses, timeouts and network/TLS errors.
      There is no retry.
    - The socket timeout is re-armed with the time left before every step and
      the body is read in chunks, so a peer that trickles its reply still
      fails at timeout_ms. Name resolution inside connect() is not covered.

    Example:
        >>> try:
        ...     post_dns_message('https://example.invalid/dns-query', b'\x00\x01')
        ... except UpstreamError:
        ...     pass
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("https", "http") or not parsed.hostname:
        raise UpstreamError(f"Unsupported upstream URL: {url!r}")

    timeout = max(0.001, timeout_ms / 1000.0)
    target = (parsed.path or "/") + ("?" + parsed.query if parsed.query else "")
    hdrs = {
        "Content-Type": DNS_MESSAGE,
        "Accept": DNS_MESSAGE,
        "User-Agent": f"dohrelay/{DOHRELAY_VERSION}",
        **(headers or {}),
    }

    if parsed.scheme == "https":
        conn: http.client.HTTPConnection = http.client.HTTPSConnection(
            parsed.hostname,
            parsed.port or 443,
            timeout=timeout,
            context=_build_ssl_ctx(verify),
        )
    else:
        conn = http.client.HTTPConnection(
            parsed.hostname, parsed.port or 80, timeout=timeout
        )

    deadline = time.monotonic() + timeout
    try:
        conn.connect()
        # getresponse() may drop conn.sock when the peer closes; keep our own handle.
        sock = conn.sock
        sock.settimeout(_remaining(deadline))
        conn.request("POST", target, body=query, headers=hdrs)
        sock.settimeout(_remaining(deadline))
        resp = conn.getresponse()
        if not 200 <= resp.status < 300:
            raise UpstreamError(
                f"upstream returned HTTP {resp.status}: {resp.reason}",
                status=resp.status,
            )
        chunks = []
        while True:
            sock.settimeout(_remaining(deadline))
            chunk = resp.read1(READ_CHUNK)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)
    except (socket.timeout, TimeoutError) as e:
        raise UpstreamError(f"upstream timed out after {timeout_ms} ms", timed_out=True) from e
    except ssl.SSLError as e:
        raise UpstreamError(f"TLS error: {e}") from e
    except (OSError, http.client.HTTPException) as e:
        raise UpstreamError(f"Network error: {e}") from e
    finally:
        conn.close()
