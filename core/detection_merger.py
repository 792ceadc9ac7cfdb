"""
core/detection_merger.py
Resolve hostname / vendor across competing detection sources.

Sources form a closed set. The attribute-priority config orders the
automatic ones (every known source exactly once, validated up front);
``manual`` sits above all of them and is never replaced automatically.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Tuple

from utils.constants import DEFAULT_SOURCE_PRIORITY
from utils.errors import InvalidPriorityConfigError
from utils.validators import normalize_mac, sanitize_name


# ─── Sources ──────────────────────────────────────────────────────────────────

class DetectionSource(str, Enum):
    SCANNER = "scanner"   # built-in probe engine (reverse DNS, OUI)
    FREEBOX = "freebox"   # Freebox router device list
    UNIFI   = "unifi"     # UniFi controller client list
    MANUAL  = "manual"    # user edit


AUTOMATIC_SOURCES: Tuple[DetectionSource, ...] = (
    DetectionSource.SCANNER, DetectionSource.FREEBOX, DetectionSource.UNIFI,
)

ATTRIBUTE_KINDS = ("hostname", "vendor")


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SourcedValue:
    value:  str
    source: DetectionSource


@dataclass(frozen=True)
class DetectedAttributes:
    hostname: Optional[SourcedValue] = None
    vendor:   Optional[SourcedValue] = None
    mac:      Optional[str] = None


@dataclass(frozen=True)
class Observation:
    """What one source reported for one IP."""
    source:   DetectionSource
    hostname: Optional[str] = None
    vendor:   Optional[str] = None
    mac:      Optional[str] = None


@dataclass(frozen=True)
class PriorityConfig:
    hostname_priority:  Tuple[DetectionSource, ...]
    vendor_priority:    Tuple[DetectionSource, ...]
    overwrite_hostname: bool = True
    overwrite_vendor:   bool = True

    def __post_init__(self):
        _check_order("hostnamePriority", self.hostname_priority)
        _check_order("vendorPriority", self.vendor_priority)

    @classmethod
    def default(cls) -> "PriorityConfig":
        order = tuple(DetectionSource(s) for s in DEFAULT_SOURCE_PRIORITY)
        return cls(order, order)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PriorityConfig":
        """
        Build from the external shape::

            {"hostnamePriority": [...], "vendorPriority": [...],
             "overwriteExisting": {"hostname": bool, "vendor": bool}}

        A single ``priority`` list applies to both kinds. Missing keys keep
        their defaults. Raises InvalidPriorityConfigError.
        """
        if not data:
            return cls.default()
        if not isinstance(data, dict):
            raise InvalidPriorityConfigError("Priority config must be a mapping")
        base = cls.default()
        shared = data.get("priority")
        hostname = data.get("hostnamePriority", shared)
        vendor = data.get("vendorPriority", shared)
        overwrite = data.get("overwriteExisting") or {}
        if not isinstance(overwrite, dict):
            raise InvalidPriorityConfigError("overwriteExisting must be a mapping")
        return cls(
            hostname_priority=_coerce_order("hostnamePriority", hostname)
            if hostname is not None else base.hostname_priority,
            vendor_priority=_coerce_order("vendorPriority", vendor)
            if vendor is not None else base.vendor_priority,
            overwrite_hostname=bool(overwrite.get("hostname", True)),
            overwrite_vendor=bool(overwrite.get("vendor", True)),
        )

    def to_dict(self) -> dict:
        return {
            "hostnamePriority": [s.value for s in self.hostname_priority],
            "vendorPriority": [s.value for s in self.vendor_priority],
            "overwriteExisting": {
                "hostname": self.overwrite_hostname,
                "vendor": self.overwrite_vendor,
            },
        }

    def order_for(self, kind: str) -> Tuple[DetectionSource, ...]:
        return self.hostname_priority if kind == "hostname" else self.vendor_priority

    def overwrite_for(self, kind: str) -> bool:
        return self.overwrite_hostname if kind == "hostname" else self.overwrite_vendor


def _coerce_order(name: str, raw) -> Tuple[DetectionSource, ...]:
    if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
        raise InvalidPriorityConfigError(f"{name} must be a list of source names")
    order = []
    for item in raw:
        try:
            order.append(DetectionSource(str(item).strip().lower()))
        except ValueError:
            raise InvalidPriorityConfigError(
                f"{name}: unknown detection source {item!r}"
            ) from None
    return tuple(order)


def _check_order(name: str, order: Sequence[DetectionSource]) -> None:
    if DetectionSource.MANUAL in order:
        raise InvalidPriorityConfigError(
            f"{name}: 'manual' always ranks first and cannot be ordered"
        )
    missing = [s.value for s in AUTOMATIC_SOURCES if s not in order]
    dupes = sorted({s.value for s in order if list(order).count(s) > 1})
    if missing or dupes or len(order) != len(AUTOMATIC_SOURCES):
        raise InvalidPriorityConfigError(
            f"{name} must list every source exactly once "
            f"(missing: {missing or '-'}, duplicated: {dupes or '-'})"
        )


# ─── Merge ────────────────────────────────────────────────────────────────────

class DetectionMerger:
    """Pure, idempotent attribute resolution. Holds no state."""

    def merge(
        self,
        ip: str,
        prior: Optional[DetectedAttributes],
        observations: Iterable[Observation],
        config: PriorityConfig,
    ) -> DetectedAttributes:
        prior = prior or DetectedAttributes()
        obs = list(observations)
        return DetectedAttributes(
            hostname=self._resolve("hostname", prior.hostname, obs, config),
            vendor=self._resolve("vendor", prior.vendor, obs, config),
            mac=self._resolve_mac(prior.mac, obs),
        )

    @staticmethod
    def _resolve(
        kind: str,
        prior: Optional[SourcedValue],
        obs: Sequence[Observation],
        config: PriorityConfig,
    ) -> Optional[SourcedValue]:
        if prior is not None and not prior.value:
            prior = None
        if prior is not None and prior.source == DetectionSource.MANUAL:
            return prior

        offered: Dict[DetectionSource, str] = {}
        for o in obs:
            value = sanitize_name(getattr(o, kind))
            if value and o.source not in offered:
                offered[o.source] = value

        if DetectionSource.MANUAL in offered:
            return SourcedValue(offered[DetectionSource.MANUAL], DetectionSource.MANUAL)

        winner = next(
            (SourcedValue(offered[s], s) for s in config.order_for(kind) if s in offered),
            None,
        )
        if winner is None:
            return prior
        if prior is not None and not config.overwrite_for(kind):
            return prior
        return winner

    @staticmethod
    def _resolve_mac(prior: Optional[str], obs: Sequence[Observation]) -> Optional[str]:
        for o in obs:
            mac = normalize_mac(o.mac)
            if mac:
                return mac
        return normalize_mac(prior)


def merge(ip: str, prior: Optional[DetectedAttributes],
          observations: Iterable[Observation],
          config: Optional[PriorityConfig] = None) -> DetectedAttributes:
    """Convenience wrapper using the default priority config."""
    return DetectionMerger().merge(ip, prior, observations, config or PriorityConfig.default())


__all__ = [
    "DetectionSource", "AUTOMATIC_SOURCES", "SourcedValue", "DetectedAttributes",
    "Observation", "PriorityConfig", "DetectionMerger", "merge",
]
