"""DNS wire-format codec.

Brief:
  Thin layer over dnslib that turns raw RFC 1035 messages into small,
  JSON-friendly dataclasses (and builds minimal queries in the other
  direction). Nothing in here performs I/O.
"""

from __future__ import annotations

import json
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List

from dnslib import QTYPE, DNSHeader, DNSQuestion, DNSRecord

# Record types the rest of the system knows how to render. Anything else is
# decoded as an opaque payload.
RECORD_TYPES = ("A", "AAAA", "CNAME", "MX", "TXT", "NS", "SOA", "PTR", "SRV", "CAA")

DNS_HEADER_LEN = 12
DEFAULT_TTL = 300


class MalformedMessage(Exception):
    """
    Brief: Raised when a byte string cannot be decoded as a DNS message.

    Inputs:
    - message: Description of the decode failure

    Outputs:
    - Exception instance
    """


def normalize_name(name: str) -> str:
    """
    Brief: Lower-case a domain name and drop the trailing root dot.

    Example:
        >>> normalize_name("Example.COM.")
        'example.com'
    """
    return str(name).rstrip(".").lower()


def normalize_type(rtype: str) -> str:
    """
    Brief: Validate and upper-case a record type name.

    Inputs:
    - rtype: record type name such as 'a' or 'MX'

    Outputs:
    - str: canonical upper-case name

    Raises ValueError when the type is not one of RECORD_TYPES.
    """
    name = str(rtype or "").strip().upper()
    if name not in RECORD_TYPES:
        raise ValueError(f"Unsupported record type: {rtype!r}")
    return name


@dataclass(frozen=True)
class Question:
    name: str
    type: str


@dataclass(frozen=True)
class Answer:
    """
    Brief: One decoded resource record.

    Inputs (constructor):
    - name: owner name (normalized)
    - type: record type name, 'TYPE<n>' for unknown types
    - ttl: time-to-live in seconds
    - data: type-specific payload (str, list or dict)
    """

    name: str
    type: str
    ttl: int
    data: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "ttl": self.ttl, "data": self.data}


@dataclass
class DNSMessage:
    id: int
    qr: bool = False
    opcode: int = 0
    rd: bool = False
    rcode: int = 0
    questions: List[Question] = field(default_factory=list)
    answers: List[Answer] = field(default_factory=list)


def encode_query(domain: str, rtype: str = "A") -> bytes:
    """
    Brief: Build a single-question recursive query.

    Inputs:
    - domain: name to look up
    - rtype: one of RECORD_TYPES

    Outputs:
    - bytes: packed query with a fresh random transaction id and RD set

    Example:
        >>> data = encode_query("example.com", "A")
        >>> decode(data).questions[0].name
        'example.com'
    """
    qtype = getattr(QTYPE, normalize_type(rtype))
    header = DNSHeader(id=random.randint(0, 0xFFFF), rd=1)
    record = DNSRecord(header, q=DNSQuestion(domain, qtype))
    return bytes(record.pack())


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _rdata_payload(type_name: str, rdata: Any) -> Any:
    """
    Brief: Convert a dnslib rdata object into a plain payload.

    Inputs:
    - type_name: record type name
    - rdata: dnslib RD subclass instance

    Outputs:
    - str, list or dict depending on the type; zone presentation text for
      types outside RECORD_TYPES.
    """
    if type_name in ("A", "AAAA"):
        return str(rdata)
    if type_name in ("CNAME", "NS", "PTR"):
        return normalize_name(str(rdata.label))
    if type_name == "MX":
        return {
            "priority": int(rdata.preference),
            "exchange": normalize_name(str(rdata.label)),
        }
    if type_name == "TXT":
        return [_text(chunk) for chunk in rdata.data]
    if type_name == "SOA":
        serial, refresh, retry, expire, minimum = rdata.times
        return {
            "mname": normalize_name(str(rdata.mname)),
            "rname": normalize_name(str(rdata.rname)),
            "serial": int(serial),
            "refresh": int(refresh),
            "retry": int(retry),
            "expire": int(expire),
            "minimum": int(minimum),
        }
    if type_name == "SRV":
        return {
            "priority": int(rdata.priority),
            "weight": int(rdata.weight),
            "port": int(rdata.port),
            "target": normalize_name(str(rdata.target)),
        }
    if type_name == "CAA":
        return {
            "flags": int(rdata.flags),
            "tag": _text(rdata.tag),
            "value": _text(rdata.value),
        }
    return str(rdata)


def _type_name(code: int) -> str:
    name = QTYPE.forward.get(int(code))
    if isinstance(name, str) and name in RECORD_TYPES:
        return name
    # Types outside the supported set are labelled generically so callers
    # never branch on names they do not render.
    return f"TYPE{int(code)}"


def decode(data: bytes) -> DNSMessage:
    """
    Brief: Parse a wire-format DNS message.

    Inputs:
    - data: raw message bytes

    Outputs:
    - DNSMessage

    Raises MalformedMessage for short input, bad compression pointers or any
    other structural problem reported by dnslib.
    """
    if not isinstance(data, (bytes, bytearray)) or len(data) < DNS_HEADER_LEN:
        raise MalformedMessage("message shorter than DNS header")
    try:
        record = DNSRecord.parse(bytes(data))
    except Exception as exc:
        raise MalformedMessage(f"invalid DNS message: {exc}") from exc

    header = record.header
    msg = DNSMessage(
        id=int(header.id),
        qr=bool(header.qr),
        opcode=int(header.opcode),
        rd=bool(header.rd),
        rcode=int(header.rcode),
    )
    for q in record.questions:
        msg.questions.append(Question(normalize_name(str(q.qname)), _type_name(q.qtype)))
    for rr in record.rr:
        type_name = _type_name(rr.rtype)
        msg.answers.append(
            Answer(
                name=normalize_name(str(rr.rname)),
                type=type_name,
                ttl=int(rr.ttl),
                data=_rdata_payload(type_name, rr.rdata),
            )
        )
    return msg


def effective_ttl(answers: List[Answer]) -> int:
    """
    Brief: Minimum TTL across answers, treating missing/zero TTLs as 300s.

    Example:
        >>> effective_ttl([Answer("a", "A", 60, "1.2.3.4"), Answer("a", "A", 0, "5.6.7.8")])
        60
    """
    return min((a.ttl if a.ttl and a.ttl > 0 else DEFAULT_TTL) for a in answers)


def render_answer(answer: Answer) -> str:
    """
    Brief: Render an answer as a single display string for the query log.

    Example:
        >>> render_answer(Answer("example.com", "MX", 300, {"priority": 10, "exchange": "mx.example.com"}))
        '10 mx.example.com'
    """
    if answer.type in ("A", "AAAA", "CNAME"):
        return str(answer.data)
    if answer.type == "MX" and isinstance(answer.data, dict):
        return f"{answer.data.get('priority')} {answer.data.get('exchange')}"
    if answer.type == "TXT" and isinstance(answer.data, list):
        return " ".join(str(chunk) for chunk in answer.data)
    return json.dumps(answer.data, sort_keys=True)
