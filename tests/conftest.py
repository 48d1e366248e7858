"""
Brief: Global pytest configuration: src on sys.path, per-test 10s timeout,
and shared DNS/service fixtures.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import sys
from typing import Callable, Dict, List, Optional, Tuple

import pytest

# Ensure 'src' is on sys.path so 'dohrelay' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from dnslib import RR, DNSRecord  # noqa: E402


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


def build_reply(query: bytes, answers: List[str], ttl: int = 60) -> bytes:
    """
    Brief: Build a wire-format reply to ``query`` from zone-style RR text.

    Inputs:
      - query: packed DNS query
      - answers: RR strings in zone format, e.g. "example.com. 60 IN A 1.2.3.4"
      - ttl: default TTL for records that omit one

    Outputs:
      - bytes: packed reply echoing the query id and question
    """
    reply = DNSRecord.parse(query).reply()
    for text in answers:
        for rr in RR.fromZone(text, ttl=ttl):
            reply.add_answer(rr)
    return bytes(reply.pack())


class FakeUpstream:
    """
    Brief: Stand-in for transports.doh.post_dns_message.

    Inputs (constructor):
      - answers: RR strings returned for every query
      - error: optional exception raised instead of answering

    Outputs:
      - Callable recording (url, query, timeout_ms) tuples in ``calls``
    """

    def __init__(self, answers: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.answers = list(answers or [])
        self.error = error
        self.calls: List[Tuple[str, bytes, int]] = []
        self.raw_reply: Optional[bytes] = None

    def __call__(self, url: str, query: bytes, *, timeout_ms: int = 5000, **_kw) -> bytes:
        self.calls.append((url, query, timeout_ms))
        if self.error is not None:
            raise self.error
        if self.raw_reply is not None:
            return self.raw_reply
        return build_reply(query, self.answers)


@pytest.fixture
def fake_upstream() -> Callable[..., FakeUpstream]:
    """
    Brief: Factory fixture producing FakeUpstream transports.

    Inputs:
      - None

    Outputs:
      - Callable(answers=None, error=None) -> FakeUpstream
    """
    return FakeUpstream


@pytest.fixture
def memory_config() -> Dict[str, object]:
    """
    Brief: Complete configuration using in-process backends only.

    Inputs:
      - None

    Outputs:
      - dict suitable for Services.build()
    """
    from dohrelay.config.config_parser import load_config

    return load_config({"storage": {"backend": "memory"}}, environ={})


@pytest.fixture
def reply_builder() -> Callable[..., bytes]:
    """
    Brief: Expose build_reply as a fixture.

    Inputs:
      - None

    Outputs:
      - Callable(query, answers, ttl=60) -> bytes
    """
    return build_reply
