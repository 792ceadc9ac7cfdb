"""
core/range_parser.py
IPv4 range specification parser.

Accepts:
  "192.168.1.0/24"             → 192.168.1.1 .. 192.168.1.254  (254)
  "10.0.0.1-10.0.0.5"          → 5 addresses
  "10.0.0.1-5"                 → same, last-octet shorthand
  "192.168.1.7"                → single address

Rejects:
  "", "abc", "10.0.0.5-1", IPv6, anything above MAX_RANGE_ADDRESSES
  (RangeTooLargeError carries a /24 suggestion)
"""

from __future__ import annotations

import ipaddress
import re
import socket
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Tuple

import psutil

from utils.constants import MAX_RANGE_ADDRESSES
from utils.errors import NoRouteDetectedError, RangeFormatError, RangeTooLargeError
from utils.logger import get_logger
from utils.validators import is_private_ipv4

log = get_logger("lanwatch.range")


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IpRangeSpec:
    """A validated, enumerable block of consecutive IPv4 addresses."""
    raw:      str
    notation: str               # "cidr" | "range" | "single"
    first:    ipaddress.IPv4Address
    last:     ipaddress.IPv4Address

    @property
    def count(self) -> int:
        return int(self.last) - int(self.first) + 1

    @property
    def normalized(self) -> str:
        if self.notation == "cidr":
            return self.raw
        if self.first == self.last:
            return str(self.first)
        return f"{self.first}-{self.last}"

    def addresses(self) -> Iterator[str]:
        for n in range(int(self.first), int(self.last) + 1):
            yield str(ipaddress.IPv4Address(n))

    def __iter__(self) -> Iterator[str]:
        return self.addresses()

    def __len__(self) -> int:
        return self.count


# ─── Parser ───────────────────────────────────────────────────────────────────

InterfaceLister = Callable[[], List[Tuple[str, str]]]

# default docker bridge pools (172.17 .. 172.31)
_DOCKER_POOL = ipaddress.IPv4Network("172.16.0.0/12")
_DOCKER_KEEP = ipaddress.IPv4Network("172.16.0.0/16")


class RangeParser:
    """
    Parse CIDR / dash-range / single-address strings into IpRangeSpec.

    All errors raise RangeFormatError or RangeTooLargeError; nothing is
    clipped silently.
    """

    _DASH_RE  = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3})\s*-\s*(\d{1,3}(?:\.\d{1,3}){3}|\d{1,3})$")
    _OCTETS_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.")

    _SKIP_IFACE_PREFIXES = ("lo", "docker", "veth", "br-", "virbr")

    def __init__(
        self,
        max_addresses: int = MAX_RANGE_ADDRESSES,
        private_only: bool = False,
        interface_lister: Optional[InterfaceLister] = None,
    ):
        self._max = max_addresses
        self._private_only = private_only
        self._list_interfaces = interface_lister or _psutil_interfaces

    # ── Public API ────────────────────────────────────────────────────────────

    def parse(self, spec: str) -> IpRangeSpec:
        """
        Parse a range spec → IpRangeSpec.

        Raises RangeFormatError on malformed input and RangeTooLargeError
        when the range holds more than max_addresses addresses.
        """
        if not isinstance(spec, str):
            raise RangeFormatError(f"Expected string, got {type(spec).__name__}")

        spec = spec.strip()
        if not spec:
            raise RangeFormatError("Range specification is empty")

        if "/" in spec:
            result = self._parse_cidr(spec)
        elif "-" in spec:
            result = self._parse_dash(spec)
        else:
            addr = self._address(spec, spec)
            result = IpRangeSpec(spec, "single", addr, addr)

        if result.count > self._max:
            raise RangeTooLargeError(spec, result.count, self._max,
                                     suggestion=self.suggest(spec))
        if self._private_only:
            self._check_private(result)
        return result

    def validate(self, spec: str) -> Tuple[bool, str]:
        """Non-raising variant: (is_valid, error_message)."""
        try:
            self.parse(spec)
            return (True, "")
        except (RangeFormatError, RangeTooLargeError) as exc:
            return (False, str(exc))

    def auto_detect(self) -> IpRangeSpec:
        """
        Derive the local /24 from the best active IPv4 interface.

        Preference: 192.168/16, then 10/8, then 172.16/12, then anything
        non-loopback. Container bridges and loopback are ignored.
        """
        candidates = []
        for name, ip in self._list_interfaces():
            if name.startswith(self._SKIP_IFACE_PREFIXES):
                continue
            try:
                addr = ipaddress.IPv4Address(ip)
            except ValueError:
                continue
            if addr.is_loopback or addr.is_link_local or addr.is_unspecified:
                continue
            if addr in _DOCKER_POOL and addr not in _DOCKER_KEEP:
                continue
            candidates.append((self._rank(addr), name, addr))

        if not candidates:
            raise NoRouteDetectedError(
                "No active IPv4 interface found for range auto-detection",
                hint="Pass an explicit range, e.g. 192.168.1.0/24",
            )

        candidates.sort(key=lambda c: c[0])
        _, name, addr = candidates[0]
        a, b, c, _ = str(addr).split(".")
        cidr = f"{a}.{b}.{c}.0/24"
        log.info(f"Auto-detected range {cidr} on {name} ({addr})")
        return self.parse(cidr)

    @classmethod
    def suggest(cls, spec: str) -> Optional[str]:
        """Narrower /24 built from the first three octets of spec, if any."""
        m = cls._OCTETS_RE.match(spec.strip())
        if not m or any(int(o) > 255 for o in m.groups()):
            return None
        return "{}.{}.{}.0/24".format(*m.groups())

    # ── Notation handlers ─────────────────────────────────────────────────────

    def _parse_cidr(self, spec: str) -> IpRangeSpec:
        addr_part, _, prefix_part = spec.partition("/")
        self._address(addr_part, spec)
        try:
            net = ipaddress.IPv4Network(f"{addr_part.strip()}/{prefix_part.strip()}",
                                        strict=False)
        except ValueError as exc:
            raise RangeFormatError(f"Invalid CIDR {spec!r}: {exc}") from exc

        if net.prefixlen >= 31:
            first, last = net.network_address, net.broadcast_address
        else:
            # network and broadcast addresses are not probed
            first, last = net.network_address + 1, net.broadcast_address - 1
        return IpRangeSpec(spec, "cidr", first, last)

    def _parse_dash(self, spec: str) -> IpRangeSpec:
        m = self._DASH_RE.match(spec)
        if not m:
            raise RangeFormatError(
                f"Invalid range {spec!r} (expected a.b.c.d-e or a.b.c.d-w.x.y.z)"
            )
        start_s, end_s = m.groups()
        first = self._address(start_s, spec)
        if "." in end_s:
            last = self._address(end_s, spec)
        else:
            octet = int(end_s)
            if octet > 255:
                raise RangeFormatError(f"Invalid last octet {octet} in {spec!r}")
            prefix = start_s.rsplit(".", 1)[0]
            last = ipaddress.IPv4Address(f"{prefix}.{octet}")
        if int(last) < int(first):
            raise RangeFormatError(f"Range start is after range end in {spec!r}")
        return IpRangeSpec(spec, "range", first, last)

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _address(text: str, spec: str) -> ipaddress.IPv4Address:
        try:
            return ipaddress.IPv4Address(text.strip())
        except ValueError as exc:
            raise RangeFormatError(f"Invalid IPv4 address {text!r} in {spec!r}") from exc

    def _check_private(self, result: IpRangeSpec) -> None:
        if not (is_private_ipv4(str(result.first)) and is_private_ipv4(str(result.last))):
            raise RangeFormatError(
                f"Range {result.raw!r} is outside private address space",
                hint="Only 10.0.0.0/8, 172.16.0.0/12 and 192.168.0.0/16 may be scanned",
            )

    @staticmethod
    def _rank(addr: ipaddress.IPv4Address) -> int:
        if addr in ipaddress.IPv4Network("192.168.0.0/16"):
            return 0
        if addr in ipaddress.IPv4Network("10.0.0.0/8"):
            return 1
        if addr in ipaddress.IPv4Network("172.16.0.0/12"):
            return 2
        return 3


def _psutil_interfaces() -> List[Tuple[str, str]]:
    """(interface name, IPv4 address) for every interface that is up."""
    stats = psutil.net_if_stats()
    found = []
    for name, addrs in psutil.net_if_addrs().items():
        st = stats.get(name)
        if st is not None and not st.isup:
            continue
        for a in addrs:
            if a.family == socket.AF_INET:
                found.append((name, a.address))
    return found


def parse_range(spec: str) -> IpRangeSpec:
    """Convenience wrapper."""
    return RangeParser().parse(spec)


__all__ = ["IpRangeSpec", "RangeParser", "parse_range"]
