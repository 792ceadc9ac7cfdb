"""
lanwatch Core — Public API

from core import RangeParser, ProbeEngine, DetectionMerger
"""
from core.range_parser     import RangeParser, IpRangeSpec, parse_range
from core.probe_engine     import ProbeEngine, ProbeResult, ScanTarget, Prober, SystemProber
from core.detection_merger import (DetectionMerger, DetectionSource, DetectedAttributes,
                                   Observation, PriorityConfig, SourcedValue, merge)
from core.sources          import AttributeSource
from core.vendor           import VendorLookup, OuiVendorLookup, NullVendorLookup

__all__ = [
    "RangeParser", "IpRangeSpec", "parse_range",
    "ProbeEngine", "ProbeResult", "ScanTarget", "Prober", "SystemProber",
    "DetectionMerger", "DetectionSource", "DetectedAttributes", "Observation",
    "PriorityConfig", "SourcedValue", "merge",
    "AttributeSource",
    "VendorLookup", "OuiVendorLookup", "NullVendorLookup",
]
