"""
core/vendor.py
MAC → vendor resolution.

The probe engine only depends on the ``VendorLookup`` interface; the
default implementation resolves OUIs through the IEEE registry shipped by
mac-vendor-lookup (downloaded once into its local cache).
"""

from __future__ import annotations

from typing import Dict, Optional

from mac_vendor_lookup import AsyncMacLookup, InvalidMacError, VendorNotFoundError

from utils.logger import get_logger
from utils.validators import normalize_mac, sanitize_name

log = get_logger("lanwatch.vendor")


class VendorLookup:
    """Interface: resolve a MAC address to a vendor name, or None."""

    async def lookup(self, mac: str) -> Optional[str]:
        raise NotImplementedError


class NullVendorLookup(VendorLookup):
    async def lookup(self, mac: str) -> Optional[str]:
        return None


class OuiVendorLookup(VendorLookup):
    """IEEE OUI lookup with a per-process prefix cache."""

    def __init__(self, backend: Optional[AsyncMacLookup] = None):
        self._backend = backend or AsyncMacLookup()
        self._cache: Dict[str, Optional[str]] = {}

    async def lookup(self, mac: str) -> Optional[str]:
        mac = normalize_mac(mac)
        if mac is None:
            return None
        prefix = mac[:8]
        if prefix in self._cache:
            return self._cache[prefix]
        try:
            vendor = sanitize_name(await self._backend.lookup(mac))
        except (VendorNotFoundError, InvalidMacError):
            vendor = None
        self._cache[prefix] = vendor
        return vendor


__all__ = ["VendorLookup", "NullVendorLookup", "OuiVendorLookup"]
