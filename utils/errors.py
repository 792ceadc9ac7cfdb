"""
utils/errors.py
Error taxonomy shared by every layer.

Validation errors also derive from ValueError so callers that only care
about "bad input" can catch that. Every error may carry a ``hint``: a short
remediation shown to the user next to the message.
"""

from __future__ import annotations

from typing import Optional


class LanwatchError(Exception):
    """Base class for all lanwatch errors."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "hint": self.hint,
        }


# ─── Range input ──────────────────────────────────────────────────────────────

class RangeFormatError(LanwatchError, ValueError):
    """Range string is not CIDR, dash-range or a single IPv4 address."""


class RangeTooLargeError(LanwatchError, ValueError):
    """Range expands to more addresses than a single scan may probe."""

    def __init__(self, spec: str, count: int, limit: int,
                 suggestion: Optional[str] = None):
        msg = f"Range {spec!r} covers {count} addresses (limit {limit})"
        hint = f"Try {suggestion} instead" if suggestion else None
        super().__init__(msg, hint)
        self.spec = spec
        self.count = count
        self.limit = limit
        self.suggestion = suggestion


class NoRouteDetectedError(LanwatchError):
    """No usable IPv4 interface was found for range auto-detection."""


# ─── Scan lifecycle ───────────────────────────────────────────────────────────

class ScanAlreadyRunningError(LanwatchError):
    """A scan or refresh is already running; nothing was started."""


class ProbeTransportError(LanwatchError):
    """The host cannot send probes at all (missing binary or capability)."""


class PersistenceError(LanwatchError):
    """A repository write or read failed."""


# ─── Configuration ────────────────────────────────────────────────────────────

class InvalidIntervalError(LanwatchError, ValueError):
    """Scheduler interval is not one of the allowed values."""


class InvalidScanTypeError(LanwatchError, ValueError):
    """Scan type is not 'quick' or 'full'."""


class InvalidPriorityConfigError(LanwatchError, ValueError):
    """Attribute priority list is missing, duplicating or naming unknown sources."""


class InvalidRetentionConfigError(LanwatchError, ValueError):
    """Retention day counts or purge schedule are invalid."""


__all__ = [
    "LanwatchError",
    "RangeFormatError", "RangeTooLargeError", "NoRouteDetectedError",
    "ScanAlreadyRunningError", "ProbeTransportError", "PersistenceError",
    "InvalidIntervalError", "InvalidScanTypeError",
    "InvalidPriorityConfigError", "InvalidRetentionConfigError",
]
