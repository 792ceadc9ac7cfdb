"""
database/migrations.py
Forward-only schema upgrades on top of the version-1 layout in models.py.

Each step is (version, description, column) where column is a
(table, name, type) triple to ADD, or None for a marker step. SQLite before
3.35 has no ADD COLUMN IF NOT EXISTS, so columns are checked via PRAGMA.
"""

from __future__ import annotations

import sqlite3
from typing import List, Optional, Tuple

from utils.logger import get_logger

log = get_logger("lanwatch.migrations")

Column = Tuple[str, str, str]

MIGRATIONS: List[Tuple[int, str, Optional[Column]]] = [
    (1, "initial_schema",       None),
    (2, "network_scans.scan_count", ("network_scans", "scan_count", "INTEGER DEFAULT 1")),
    (3, "scan_runs.kind",           ("scan_runs", "kind", "TEXT NOT NULL DEFAULT 'scan'")),
    (4, "scan_runs.error",          ("scan_runs", "error", "TEXT")),
]

LATEST = MIGRATIONS[-1][0]


def _columns(conn: sqlite3.Connection, table: str) -> set:
    return {r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_version ("
        "version INTEGER PRIMARY KEY, description TEXT, "
        "applied_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')))"
    )


def get_version(db_path: str) -> int:
    conn = sqlite3.connect(db_path)
    try:
        _ensure_version_table(conn)
        conn.commit()
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0
    finally:
        conn.close()


def migrate(db_path: str = "lanwatch.db") -> int:
    """Apply pending steps in order and return the resulting schema version.

    Each step commits together with its schema_version row, so an
    interrupted upgrade resumes at the first step that did not land.
    """
    current = get_version(db_path)
    pending = [m for m in MIGRATIONS if m[0] > current]
    if not pending:
        log.debug(f"Schema v{current} up to date")
        return current

    conn = sqlite3.connect(db_path)
    try:
        for version, desc, column in pending:
            if column is not None:
                table, name, col_type = column
                if name not in _columns(conn, table):
                    log.info(f"Migration v{version}: adding {table}.{name}")
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {col_type}")
            conn.execute(
                "INSERT OR REPLACE INTO schema_version(version, description) VALUES (?, ?)",
                (version, desc),
            )
            conn.commit()
    finally:
        conn.close()
    return pending[-1][0]
