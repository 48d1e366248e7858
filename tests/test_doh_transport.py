"""
Brief: Tests for dohrelay.transports.doh.post_dns_message.

Inputs:
  - None

Outputs:
  - None
"""

import http.client
import socket
import ssl
import threading
import time

import pytest

from dohrelay.transports import doh as doh_mod
from dohrelay.transports.doh import UpstreamError, post_dns_message

_REAL_HTTP_CONNECTION = http.client.HTTPConnection


class _FakeResponse:
    def __init__(self, status: int, body: bytes, reason: str = "OK") -> None:
        self.status = status
        self.reason = reason
        self._body = body

    def read1(self, amt: int = 4096) -> bytes:
        chunk, self._body = self._body[:amt], self._body[amt:]
        return chunk


class _FakeSocket:
    def __init__(self) -> None:
        self.timeouts = []

    def settimeout(self, value) -> None:
        self.timeouts.append(value)


class _FakeConnection:
    """
    Brief: http.client connection stand-in recording the single request.

    Inputs (constructor):
      - host, port, timeout, context: as passed by post_dns_message

    Outputs:
      - Instance appended to ``instances``; response/error set per test
    """

    instances = []
    response = _FakeResponse(200, b"reply")
    error = None

    def __init__(self, host, port, timeout=None, context=None) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.context = context
        self.request_args = None
        self.sock = None
        self.closed = False
        _FakeConnection.instances.append(self)

    def connect(self) -> None:
        self.sock = _FakeSocket()

    def request(self, method, target, body=None, headers=None) -> None:
        self.request_args = (method, target, body, headers)
        if _FakeConnection.error is not None:
            raise _FakeConnection.error

    def getresponse(self) -> _FakeResponse:
        r = _FakeConnection.response
        return _FakeResponse(r.status, r._body, r.reason)

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def fake_connections(monkeypatch):
    _FakeConnection.instances = []
    _FakeConnection.response = _FakeResponse(200, b"reply")
    _FakeConnection.error = None
    monkeypatch.setattr(http.client, "HTTPSConnection", _FakeConnection)
    monkeypatch.setattr(http.client, "HTTPConnection", _FakeConnection)
    return _FakeConnection


def test_post_sends_dns_message_verbatim() -> None:
    """
    Brief: The query is POSTed unchanged with DoH content negotiation headers.

    Inputs:
      - https URL with explicit port and query string

    Outputs:
      - None: Asserts connection target, headers, timeout and body
    """
    data = post_dns_message("https://doh.example:8443/dns-query?x=1", b"\x12\x34", timeout_ms=2500)
    assert data == b"reply"

    (conn,) = _FakeConnection.instances
    assert (conn.host, conn.port, conn.timeout) == ("doh.example", 8443, 2.5)
    assert isinstance(conn.context, ssl.SSLContext)
    method, target, body, headers = conn.request_args
    assert (method, target, body) == ("POST", "/dns-query?x=1", b"\x12\x34")
    assert headers["Content-Type"] == "application/dns-message"
    assert headers["Accept"] == "application/dns-message"
    assert headers["User-Agent"].startswith("dohrelay/")
    assert conn.closed is True


def test_plain_http_uses_default_port() -> None:
    """
    Brief: http:// upstreams connect on port 80 without a TLS context.

    Inputs:
      - http URL

    Outputs:
      - None: Asserts port and context
    """
    post_dns_message("http://resolver.local/dns-query", b"q")
    (conn,) = _FakeConnection.instances
    assert conn.port == 80
    assert conn.context is None


def test_non_2xx_raises_with_status() -> None:
    """
    Brief: Upstream HTTP errors become UpstreamError carrying the status.

    Inputs:
      - 502 response

    Outputs:
      - None: Asserts status and timed_out False
    """
    _FakeConnection.response = _FakeResponse(502, b"", "Bad Gateway")
    with pytest.raises(UpstreamError) as excinfo:
        post_dns_message("https://doh.example/dns-query", b"q")
    assert excinfo.value.status == 502
    assert excinfo.value.timed_out is False


@pytest.mark.parametrize(
    "error,timed_out",
    [
        (socket.timeout("slow"), True),
        (ssl.SSLError("bad cert"), False),
        (ConnectionRefusedError("refused"), False),
    ],
)
def test_transport_errors_are_wrapped(error, timed_out) -> None:
    """
    Brief: Timeouts, TLS and network failures are reported as UpstreamError.

    Inputs:
      - error: exception raised by the connection
      - timed_out: expected flag

    Outputs:
      - None: Asserts wrapping and connection closed
    """
    _FakeConnection.error = error
    with pytest.raises(UpstreamError) as excinfo:
        post_dns_message("https://doh.example/dns-query", b"q", timeout_ms=10)
    assert excinfo.value.timed_out is timed_out
    assert _FakeConnection.instances[0].closed is True


def test_rejects_unsupported_url() -> None:
    """
    Brief: Non-HTTP URLs are refused before any connection is made.

    Inputs:
      - ftp URL

    Outputs:
      - None: Asserts UpstreamError and no connection
    """
    with pytest.raises(UpstreamError):
        post_dns_message("ftp://doh.example/dns-query", b"q")
    assert _FakeConnection.instances == []
    assert doh_mod.DNS_MESSAGE == "application/dns-message"


def test_path_less_url_posts_to_root() -> None:
    """
    Brief: A URL without a path is POSTed to '/' rather than a guessed path.

    Inputs:
      - https URL with no path

    Outputs:
      - None: Asserts request target
    """
    post_dns_message("https://doh.example", b"q")
    (conn,) = _FakeConnection.instances
    assert conn.request_args[1] == "/"


def test_socket_timeout_shrinks_towards_deadline() -> None:
    """
    Brief: Each step re-arms the socket timeout with the time left, never more.

    Inputs:
      - 2000 ms timeout

    Outputs:
      - None: Asserts non-increasing timeouts bounded by 2 s
    """
    post_dns_message("https://doh.example/dns-query", b"q", timeout_ms=2000)
    timeouts = _FakeConnection.instances[0].sock.timeouts
    assert len(timeouts) >= 3
    assert all(0 < t <= 2.0 for t in timeouts)
    assert timeouts == sorted(timeouts, reverse=True)


def _serve_trickle(listener: socket.socket, body: bytes, delay: float) -> None:
    conn, _ = listener.accept()
    with conn:
        data = b""
        while b"\r\n\r\n" not in data:
            data += conn.recv(4096)
        head, _, rest = data.partition(b"\r\n\r\n")
        length = 0
        for line in head.split(b"\r\n")[1:]:
            name, _, value = line.partition(b":")
            if name.strip().lower() == b"content-length":
                length = int(value.strip())
        while len(rest) < length:
            rest += conn.recv(4096)
        try:
            conn.sendall(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: application/dns-message\r\n"
                + f"Content-Length: {len(body)}\r\n".encode()
                + b"Connection: close\r\n\r\n"
            )
            for i in range(len(body)):
                time.sleep(delay)
                conn.sendall(body[i : i + 1])
        except OSError:
            pass


@pytest.mark.parametrize(
    "delay,expect_timeout",
    [
        (0.0, False),
        (0.4, True),
    ],
)
def test_trickled_reply_is_bounded_by_total_timeout(monkeypatch, delay, expect_timeout) -> None:
    """
    Brief: A reply trickled byte by byte fails at timeout_ms, not per-read.

    Inputs:
      - delay: seconds between body bytes sent by a local HTTP server
      - expect_timeout: whether a 1000 ms limit is exceeded

    Outputs:
      - None: Asserts body or timed-out UpstreamError within the limit
    """
    monkeypatch.setattr(http.client, "HTTPConnection", _REAL_HTTP_CONNECTION)
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]
    server = threading.Thread(
        target=_serve_trickle, args=(listener, b"\xab\xcd\x81\x80\x00\x00", delay), daemon=True
    )
    server.start()
    url = f"http://127.0.0.1:{port}/dns-query"
    try:
        started = time.monotonic()
        if expect_timeout:
            with pytest.raises(UpstreamError) as excinfo:
                post_dns_message(url, b"\x00" * 12, timeout_ms=1000)
            assert excinfo.value.timed_out is True
            assert time.monotonic() - started < 1.8
        else:
            assert post_dns_message(url, b"\x00" * 12, timeout_ms=1000) == b"\xab\xcd\x81\x80\x00\x00"
    finally:
        server.join(timeout=5)
        listener.close()
