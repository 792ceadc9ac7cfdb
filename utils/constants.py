"""
lanwatch constants & enums
Probe profiles, scheduler interval sets, retention defaults.
"""

from enum import Enum
from dataclasses import dataclass

VERSION = "1.0.0"


# ─── Scan Types ───────────────────────────────────────────────────────────────
class ScanType(str, Enum):
    QUICK = "quick"   # single ping, no attribute collection
    FULL  = "full"    # ping + retry + TCP fallback, MAC/hostname/vendor


# ─── Host / Run States ────────────────────────────────────────────────────────
class HostStatus(str, Enum):
    ONLINE  = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class RunStatus(str, Enum):
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"


class RunKind(str, Enum):
    SCAN    = "scan"
    REFRESH = "refresh"


# ─── Probe Profiles ───────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ProbeProfile:
    """Per scan-type probing parameters."""
    name: str
    max_workers: int          # worker pool cap, actual size = min(cap, targets)
    ping_timeout_s: float
    retries: int              # extra ping attempts after the first
    tcp_fallback: bool        # TCP connect liveness check when ping fails
    tcp_timeout_s: float
    collect_attributes: bool  # MAC / hostname / vendor hints


PROBE_PROFILES = {
    ScanType.QUICK: ProbeProfile("quick", max_workers=50, ping_timeout_s=1.0,
                                 retries=0, tcp_fallback=False, tcp_timeout_s=0.5,
                                 collect_attributes=False),
    ScanType.FULL:  ProbeProfile("full",  max_workers=20, ping_timeout_s=2.0,
                                 retries=1, tcp_fallback=True, tcp_timeout_s=1.0,
                                 collect_attributes=True),
}

# RST on any of these proves the host is up
TCP_ALIVE_PORTS = (80, 443, 22, 445, 139, 53, 8080, 62078)

HOSTNAME_TIMEOUT_S = 2.0

# ─── Range Limits ─────────────────────────────────────────────────────────────
MAX_RANGE_ADDRESSES = 1000

# ─── Scheduler ────────────────────────────────────────────────────────────────
FULL_SCAN_INTERVALS = (15, 30, 60, 120, 360, 720, 1440)   # minutes
REFRESH_INTERVALS   = (5, 10, 15, 30, 60)                 # minutes

DEFAULT_SCHEDULER_CONFIG = {
    "enabled": False,
    "fullScan": {"enabled": True, "interval": 1440, "scanType": "full"},
    "refresh":  {"enabled": True, "interval": 10,   "scanType": "quick"},
}

# ─── Retention ────────────────────────────────────────────────────────────────
DEFAULT_RETENTION_CONFIG = {
    "historyRetentionDays": 30,
    "scanRetentionDays":    90,
    "offlineRetentionDays": 7,
    "autoPurgeEnabled":     True,
    "purgeSchedule":        "0 2 * * *",
}

# purges deleting more rows than this are followed by VACUUM
COMPACTION_THRESHOLD = 100

# ─── Stats ────────────────────────────────────────────────────────────────────
STATS_BUCKET_MINUTES    = 15
STATS_MAX_POINTS        = 48
STATS_DEFAULT_HOURS     = 24
STATS_MAX_LOOKBACK_HOURS = 168

# ─── Detection sources ────────────────────────────────────────────────────────
DEFAULT_SOURCE_PRIORITY = ("freebox", "unifi", "scanner")

# ─── Timestamps ───────────────────────────────────────────────────────────────
TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# ─── Layering Contract (hard import rules - enforced by tests) ───────────────
# core      → may import: utils
# database  → may import: utils
# services  → may import: core, database, utils
# dashboard → may import: database, utils
# NEVER: core imports database, dashboard imports core or services

# ─── DB Index Columns ─────────────────────────────────────────────────────────
DB_INDEX_COLUMNS = {
    "network_scans":        ["status", "last_seen", "first_seen"],
    "network_scan_history": ["ip", "measured_at", "scan_run_id"],
    "scan_runs":            ["started_at", "status"],
}
