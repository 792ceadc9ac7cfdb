"""
utils/validators.py
Input validation and sanitization functions
"""

import ipaddress
import re
from typing import Optional, Tuple

from utils.constants import ScanType
from utils.errors import InvalidScanTypeError

_MAC_RE = re.compile(r"^([0-9a-f]{2}[:-]){5}[0-9a-f]{2}$", re.IGNORECASE)
_MAC_BARE_RE = re.compile(r"^[0-9a-f]{12}$", re.IGNORECASE)
_EMPTY_MACS = {"00:00:00:00:00:00", "ff:ff:ff:ff:ff:ff"}
_PRIVATE_NETS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)


def validate_ipv4(ip: str) -> Tuple[bool, str]:
    """
    Validate that ip is a single IPv4 address.

    Returns:
        (is_valid, error_message) tuple
    """
    if not ip or not isinstance(ip, str):
        return (False, "IP must be a non-empty string")
    try:
        ipaddress.IPv4Address(ip.strip())
        return (True, "")
    except ValueError as e:
        return (False, f"Invalid IPv4 address: {e}")


def is_private_ipv4(ip: str) -> bool:
    """True for 10/8, 172.16/12 and 192.168/16 addresses."""
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return any(addr in net for net in _PRIVATE_NETS)


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """
    Normalize a MAC address to lower-case colon form.

    Returns None for empty, malformed, all-zero or broadcast addresses.
    """
    if not mac or not isinstance(mac, str):
        return None
    mac = mac.strip().lower()
    if _MAC_BARE_RE.match(mac):
        mac = ":".join(mac[i:i + 2] for i in range(0, 12, 2))
    elif _MAC_RE.match(mac):
        mac = mac.replace("-", ":")
    else:
        return None
    if mac in _EMPTY_MACS:
        return None
    return mac


def sanitize_name(value: Optional[str], max_length: int = 253) -> Optional[str]:
    """
    Sanitize a hostname or vendor string by:
    - Removing control characters
    - Collapsing whitespace
    - Truncating to max_length

    Empty results become None.
    """
    if not value or not isinstance(value, str):
        return None
    sanitized = re.sub(r'[\x00-\x1f\x7f-\x9f]', '', value)
    sanitized = ' '.join(sanitized.split())
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length]
    return sanitized or None


def validate_scan_type(value) -> ScanType:
    """Coerce value to ScanType or raise InvalidScanTypeError."""
    if isinstance(value, ScanType):
        return value
    try:
        return ScanType(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in ScanType)
        raise InvalidScanTypeError(
            f"Invalid scan type {value!r} (expected one of: {allowed})"
        ) from None


__all__ = ["validate_ipv4", "is_private_ipv4", "normalize_mac",
           "sanitize_name", "validate_scan_type"]
