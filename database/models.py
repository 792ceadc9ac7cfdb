"""
database/models.py
Pure sqlite3 schema definition plus the row dataclasses the repository
hands out.

Schema:
  network_scans         — current state, exactly one row per IP
  network_scan_history  — append-only per-IP measurements, one per probe
  scan_runs             — one row per scan / refresh execution
  app_config            — JSON key/value store for runtime config
  schema_version        — migration tracking

This is the version-1 layout; later columns arrive through
database/migrations.py, which Repository runs on open.

WAL mode, proper indexes, FK enforcement.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Optional

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;
PRAGMA cache_size=-20000;
PRAGMA temp_store=MEMORY;

CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER PRIMARY KEY,
    applied_at  TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    description TEXT
);

CREATE TABLE IF NOT EXISTS scan_runs (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_type    TEXT    NOT NULL,
    target_range TEXT,
    started_at   TEXT    DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    finished_at  TEXT,
    status       TEXT    DEFAULT 'running',
    scanned      INTEGER DEFAULT 0,
    found        INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS ix_runs_started ON scan_runs(started_at);
CREATE INDEX IF NOT EXISTS ix_runs_status  ON scan_runs(status);

CREATE TABLE IF NOT EXISTS network_scans (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    ip              TEXT    NOT NULL UNIQUE,
    mac             TEXT,
    hostname        TEXT,
    hostname_source TEXT,
    vendor          TEXT,
    vendor_source   TEXT,
    status          TEXT    NOT NULL DEFAULT 'unknown',
    ping_latency    REAL,
    first_seen      TEXT    NOT NULL,
    last_seen       TEXT    NOT NULL,
    scan_type       TEXT,
    CHECK (last_seen >= first_seen)
);
CREATE INDEX IF NOT EXISTS ix_scans_status     ON network_scans(status);
CREATE INDEX IF NOT EXISTS ix_scans_last_seen  ON network_scans(last_seen);
CREATE INDEX IF NOT EXISTS ix_scans_first_seen ON network_scans(first_seen);

CREATE TABLE IF NOT EXISTS network_scan_history (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_run_id  INTEGER REFERENCES scan_runs(id) ON DELETE SET NULL,
    ip           TEXT    NOT NULL,
    status       TEXT    NOT NULL,
    ping_latency REAL,
    measured_at  TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_history_ip       ON network_scan_history(ip);
CREATE INDEX IF NOT EXISTS ix_history_measured ON network_scan_history(measured_at);
CREATE INDEX IF NOT EXISTS ix_history_run      ON network_scan_history(scan_run_id);

CREATE TABLE IF NOT EXISTS app_config (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
)
"""


# ─── Row Data Classes ─────────────────────────────────────────────────────────

@dataclass
class NetworkScanEntry:
    ip:              str
    status:          str
    first_seen:      str
    last_seen:       str
    mac:             Optional[str] = None
    hostname:        Optional[str] = None
    hostname_source: Optional[str] = None
    vendor:          Optional[str] = None
    vendor_source:   Optional[str] = None
    ping_latency:    Optional[float] = None
    scan_type:       Optional[str] = None
    scan_count:      int = 0
    id:              Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "NetworkScanEntry":
        d = dict(row)
        return cls(**{k: d.get(k) for k in cls.__dataclass_fields__ if k in d})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class HistoryEntry:
    ip:           str
    status:       str
    measured_at:  str
    ping_latency: Optional[float] = None
    scan_run_id:  Optional[int] = None
    id:           Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "HistoryEntry":
        d = dict(row)
        return cls(**{k: d.get(k) for k in cls.__dataclass_fields__ if k in d})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScanRun:
    id:           int
    kind:         str
    scan_type:    str
    target_range: Optional[str]
    started_at:   str
    status:       str
    finished_at:  Optional[str] = None
    scanned:      int = 0
    found:        int = 0
    error:        Optional[str] = None
    duration_s:   Optional[float] = field(default=None, compare=False)

    @classmethod
    def from_row(cls, row) -> "ScanRun":
        d = dict(row)
        return cls(**{k: d.get(k) for k in cls.__dataclass_fields__ if k in d})

    def to_dict(self) -> dict:
        return asdict(self)
