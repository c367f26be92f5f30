#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Origin-side detection core.

Everything here is a pure function of the current request's metadata:
CIDR membership, proxy presence, client/origin transport security,
peer certificate extraction and the origin protection verdict.
"""

from __future__ import annotations
import enum
import ipaddress
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from werkzeug.datastructures import Headers

from ip_ranges import AddressBlock, IPAddress, RangeRegistry, parse_block, unbracket

log = logging.getLogger(__name__)

TRACE_HEADER = "CF-Ray"
FORWARDED_PROTO_HEADER = "X-Forwarded-Proto"
VISITOR_HEADER = "CF-Visitor"

# ----------------------------- Headers -----------------------------

def as_headers(headers: Any) -> Headers:
    if isinstance(headers, Headers):
        return headers
    return Headers(headers or {})

def get_header(headers: Any, name: str, default: Optional[str] = None) -> Optional[str]:
    return as_headers(headers).get(name, default)

# ----------------------------- Address matching -----------------------------

def parse_address(text: Any) -> Optional[IPAddress]:
    if isinstance(text, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return text
    if not isinstance(text, str) or not text.strip():
        return None
    try:
        return ipaddress.ip_address(unbracket(text))
    except ValueError:
        log.debug("Unparseable address %r", text)
        return None

def normalize_address(text: Any) -> Optional[IPAddress]:
    """Like parse_address, but unwraps IPv4-mapped IPv6 (``::ffff:a.b.c.d``)."""
    ip = parse_address(text)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip

def matches(address: Union[str, IPAddress], block: Union[str, AddressBlock]) -> bool:
    ip = parse_address(address)
    if ip is None:
        return False
    if not isinstance(block, AddressBlock):
        try:
            block = parse_block(block)
        except ValueError as exc:
            log.debug("Invalid CIDR %r: %s", block, exc)
            return False
    if ip.version != block.family:
        return False
    shift = ip.max_prefixlen - block.prefix_length
    return (int(ip) >> shift) == (int(block.network) >> shift)

def is_in_any_range(address: Union[str, IPAddress], blocks: Iterable[Union[str, AddressBlock]]) -> bool:
    ip = parse_address(address)
    if ip is None:
        return False
    return any(matches(ip, b) for b in blocks)

# ----------------------------- Request context -----------------------------

@dataclass(frozen=True)
class RequestSecurityContext:
    """Per-request metadata handed to the detectors. Built once, never mutated."""
    remote_address: Optional[str]
    headers: Headers = field(default_factory=Headers)
    transport_secure: bool = False
    declared_protocol: str = "http"
    peer_certificate: Optional[Mapping[str, Any]] = None
    tls_version: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "headers", as_headers(self.headers))

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name, default)

# ----------------------------- Proxy detection -----------------------------

def is_proxied(headers: Any, trace_header: str = TRACE_HEADER) -> bool:
    value = get_header(headers, trace_header)
    return bool(value and value.strip())

# ----------------------------- Transport -----------------------------

class EncryptionMode(str, enum.Enum):
    END_TO_END = "end_to_end"
    EDGE_ONLY = "edge_only"
    NONE = "none"


@dataclass(frozen=True)
class CertificateRecord:
    subject: Dict[str, Any]
    issuer: Dict[str, Any]
    valid_from: Optional[str]
    valid_to: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"subject": self.subject, "issuer": self.issuer,
                "valid_from": self.valid_from, "valid_to": self.valid_to}


@dataclass(frozen=True)
class TransportReport:
    logically_secure: bool
    origin_secure: bool
    encryption: EncryptionMode
    certificate: Optional[CertificateRecord]
    tls_version: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"https": self.logically_secure, "origin_encrypted": self.origin_secure,
                "encryption": self.encryption.value, "tls_version": self.tls_version,
                "certificate": self.certificate.to_dict() if self.certificate else None}


def forwarded_proto(headers: Any) -> Optional[str]:
    val = get_header(headers, FORWARDED_PROTO_HEADER)
    if not val: return None
    first = val.split(",", 1)[0].strip().lower()
    return first or None

def visitor_scheme(headers: Any) -> Optional[str]:
    """Scheme from the CDN's ``CF-Visitor: {"scheme":"https"}`` header."""
    val = get_header(headers, VISITOR_HEADER)
    if not val: return None
    try:
        data = json.loads(val)
    except ValueError:
        log.debug("Malformed %s header %r", VISITOR_HEADER, val)
        return None
    scheme = data.get("scheme") if isinstance(data, dict) else None
    return scheme if isinstance(scheme, str) else None

def is_logically_secure(ctx: RequestSecurityContext) -> bool:
    return (bool(ctx.transport_secure)
            or forwarded_proto(ctx.headers) == "https"
            or visitor_scheme(ctx.headers) == "https")

def is_origin_secure(ctx: RequestSecurityContext) -> bool:
    return bool(ctx.transport_secure)

def _mapping(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}

def extract_certificate(ctx: RequestSecurityContext) -> Optional[CertificateRecord]:
    if not is_origin_secure(ctx):
        return None
    cert = ctx.peer_certificate
    if not cert or not isinstance(cert, Mapping):
        return None
    return CertificateRecord(
        subject=_mapping(cert.get("subject")),
        issuer=_mapping(cert.get("issuer")),
        valid_from=cert.get("valid_from"),
        valid_to=cert.get("valid_to"),
        raw=dict(cert),
    )

def encryption_mode(logically_secure: bool, origin_secure: bool) -> EncryptionMode:
    if not logically_secure:
        return EncryptionMode.NONE
    return EncryptionMode.END_TO_END if origin_secure else EncryptionMode.EDGE_ONLY

def inspect_transport(ctx: RequestSecurityContext) -> TransportReport:
    logical = is_logically_secure(ctx)
    origin = is_origin_secure(ctx)
    return TransportReport(
        logically_secure=logical,
        origin_secure=origin,
        encryption=encryption_mode(logical, origin),
        certificate=extract_certificate(ctx),
        tls_version=ctx.tls_version if origin else None,
    )

# ----------------------------- Origin protection -----------------------------

class Protection(str, enum.Enum):
    FULLY_PROTECTED = "fully_protected"
    EXPOSED = "exposed"
    PARTIALLY_PROTECTED = "partially_protected"


def classify(behind_proxy: bool, source_in_range: bool) -> Protection:
    # Missing trace header dominates: (False, True) folds into EXPOSED.
    if not behind_proxy:
        return Protection.EXPOSED
    if source_in_range:
        return Protection.FULLY_PROTECTED
    return Protection.PARTIALLY_PROTECTED


@dataclass(frozen=True)
class ProtectionVerdict:
    behind_proxy: bool
    source_in_range: bool
    classification: Protection

    @property
    def protected(self) -> bool:
        return self.classification is Protection.FULLY_PROTECTED

    def to_dict(self) -> Dict[str, Any]:
        return {"protected": self.protected, "classification": self.classification.value,
                "behind_proxy": self.behind_proxy, "source_in_range": self.source_in_range}


class ProtectionEvaluator:
    """Combines the trace-header check with edge range membership of the peer address.

    A proxied request from outside the table is reported as partial protection.
    That also covers tunnels and load balancers the table does not know about;
    the two cases are not told apart.
    """

    def __init__(self, registry: RangeRegistry, trace_header: str = TRACE_HEADER):
        self.registry = registry
        self.trace_header = trace_header

    def evaluate(self, ctx: RequestSecurityContext) -> ProtectionVerdict:
        behind_proxy = is_proxied(ctx.headers, self.trace_header)
        in_range = is_in_any_range(ctx.remote_address, self.registry.all_blocks())
        return ProtectionVerdict(behind_proxy, in_range, classify(behind_proxy, in_range))
