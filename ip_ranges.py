#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Provider edge address blocks.

The built-in table is a snapshot of Cloudflare's published ranges
(https://www.cloudflare.com/ips/). Swap it wholesale with ``EDGE_RANGES_FILE``
pointing at a file in the same one-CIDR-per-line format.
"""

from __future__ import annotations
import ipaddress
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple, Union

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

BUILTIN_VERSION = "cloudflare-builtin"

CLOUDFLARE_IPV4 = [
    "173.245.48.0/20",
    "103.21.244.0/22",
    "103.22.200.0/22",
    "103.31.4.0/22",
    "141.101.64.0/18",
    "108.162.192.0/18",
    "190.93.240.0/20",
    "188.114.96.0/20",
    "197.234.240.0/22",
    "198.41.128.0/17",
    "162.158.0.0/15",
    "104.16.0.0/13",
    "104.24.0.0/14",
    "172.64.0.0/13",
    "131.0.72.0/22",
]

CLOUDFLARE_IPV6 = [
    "2400:cb00::/32",
    "2606:4700::/32",
    "2803:f800::/32",
    "2405:b500::/32",
    "2405:8100::/32",
    "2a06:98c0::/29",
    "2c0f:f248::/32",
]

# ----------------------------- Blocks -----------------------------

@dataclass(frozen=True)
class AddressBlock:
    network: IPAddress
    prefix_length: int
    family: int

    def __post_init__(self):
        if self.network.version != self.family:
            raise ValueError(f"{self.network} is not an IPv{self.family} address")
        if not 0 <= self.prefix_length <= self.network.max_prefixlen:
            raise ValueError(f"prefix length {self.prefix_length} out of range for IPv{self.family}")

    @property
    def cidr(self) -> str:
        return f"{self.network.compressed}/{self.prefix_length}"


def unbracket(text: str) -> str:
    """Drop the brackets around an IPv6 literal (``[2400:cb00::1]``); anything else is left alone."""
    t = text.strip()
    if t.startswith("[") and t.endswith("]") and ":" in t:
        return t[1:-1]
    return t


def parse_block(descriptor: str) -> AddressBlock:
    """Parse ``"a.b.c.d/len"`` or ``"x::/len"``; a bare address is a host block.

    Raises ValueError on anything malformed.
    """
    if not isinstance(descriptor, str):
        raise ValueError(f"CIDR descriptor must be a string, got {type(descriptor).__name__}")
    net, sep, plen = descriptor.strip().partition("/")
    addr = ipaddress.ip_address(unbracket(net))
    if not sep:
        return AddressBlock(addr, addr.max_prefixlen, addr.version)
    plen = plen.strip()
    if not plen.isdigit():
        raise ValueError(f"invalid prefix length in {descriptor!r}")
    return AddressBlock(addr, int(plen), addr.version)

# ----------------------------- Registry -----------------------------

class RangeRegistry:
    """Immutable, ordered set of provider blocks shared by every request."""

    def __init__(self, blocks: Iterable[AddressBlock], version: str = "custom"):
        self._blocks: Tuple[AddressBlock, ...] = tuple(blocks)
        self.version = version

    @classmethod
    def from_cidrs(cls, cidrs: Iterable[str], version: str = "custom") -> "RangeRegistry":
        blocks: List[AddressBlock] = []
        for raw in cidrs:
            entry = raw.split("#", 1)[0].strip()
            if not entry: continue
            try:
                blocks.append(parse_block(entry))
            except ValueError as exc:
                log.warning("Skipping invalid CIDR %r: %s", entry, exc)
        return cls(blocks, version=version)

    @classmethod
    def from_file(cls, path: Union[str, Path], version: Optional[str] = None) -> "RangeRegistry":
        p = Path(path)
        lines = p.read_text(encoding="utf-8").splitlines()
        return cls.from_cidrs(lines, version=version or p.name)

    @classmethod
    def builtin(cls) -> "RangeRegistry":
        return cls.from_cidrs(CLOUDFLARE_IPV4 + CLOUDFLARE_IPV6, version=BUILTIN_VERSION)

    def all_blocks(self) -> Tuple[AddressBlock, ...]:
        return self._blocks

    def blocks_for(self, family: int) -> Tuple[AddressBlock, ...]:
        return tuple(b for b in self._blocks if b.family == family)

    def cidrs(self) -> List[str]:
        return [b.cidr for b in self._blocks]

    def __iter__(self) -> Iterator[AddressBlock]:
        return iter(self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)

    def __repr__(self) -> str:
        return f"RangeRegistry(version={self.version!r}, blocks={len(self._blocks)})"


def load_registry(path: Optional[str] = None) -> RangeRegistry:
    if not path:
        return RangeRegistry.builtin()
    registry = RangeRegistry.from_file(path)
    log.info("Loaded %d edge ranges from %s", len(registry), path)
    return registry
