"""
database/repository.py
Pure sqlite3 data access layer, no ORM.

Layering: dashboard reads through this. services write through this.
repository does NOT import core, services or dashboard.

Every write runs in its own short transaction, so one IP's upsert plus
history append either fully lands or not at all; a failure never touches
rows committed earlier. sqlite3 errors surface as PersistenceError.
"""

from __future__ import annotations

import ipaddress
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, Iterable, List, Optional, Tuple

from database.migrations import migrate
from database.models import SCHEMA_SQL, HistoryEntry, NetworkScanEntry, ScanRun
from utils.constants import (STATS_BUCKET_MINUTES, STATS_DEFAULT_HOURS,
                             STATS_MAX_LOOKBACK_HOURS, STATS_MAX_POINTS, HostStatus,
                             RunStatus)
from utils.errors import PersistenceError
from utils.logger import get_logger
from utils.timeutil import cutoff_ts, format_ts, now_utc, parse_ts

log = get_logger("lanwatch.repository")

# sort keys resolved in SQL; the rest need numeric-IP or empty-last ordering
_SQL_SORT = {
    "last_seen":    "last_seen",
    "first_seen":   "first_seen",
    "status":       "status",
    "ping_latency": "ping_latency",
}
_PY_SORT = ("ip", "hostname", "mac", "vendor")
SORT_KEYS = tuple(_SQL_SORT) + _PY_SORT

MAX_PAGE_SIZE = 500


class Repository:
    """Thread-safe sqlite3 repository."""

    def __init__(self, db_path: str = "lanwatch.db"):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self._db_path}: {exc}") from exc
        try:
            for stmt in SCHEMA_SQL.strip().split(";"):
                s = stmt.strip()
                if s:
                    conn.execute(s)
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Schema initialisation failed: {exc}") from exc
        finally:
            conn.close()
        try:
            migrate(self._db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Schema migration failed: {exc}") from exc

    @contextmanager
    def _tx(self) -> Generator[sqlite3.Connection, None, None]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise PersistenceError(f"Database write failed: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    @contextmanager
    def _read(self) -> Generator[sqlite3.Connection, None, None]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database read failed: {exc}") from exc
        finally:
            conn.close()

    # ── Scan runs ─────────────────────────────────────────────────────────────

    def create_run(self, kind: str, scan_type: str,
                   target_range: Optional[str] = None) -> int:
        with self._tx() as c:
            cur = c.execute(
                "INSERT INTO scan_runs(kind,scan_type,target_range,started_at,status) "
                "VALUES(?,?,?,?,'running')",
                (kind, scan_type, target_range, format_ts())
            )
            return cur.lastrowid

    def finish_run(self, run_id: int, status: str, scanned: int, found: int,
                   error: Optional[str] = None) -> bool:
        """Finalize a running run. Runs that are already final are left untouched."""
        with self._tx() as c:
            n = c.execute(
                "UPDATE scan_runs SET status=?, finished_at=?, scanned=?, found=?, error=? "
                "WHERE id=? AND status='running'",
                (status, format_ts(), scanned, found, error, run_id)
            ).rowcount
            return n > 0

    def get_run(self, run_id: int) -> Optional[ScanRun]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM scan_runs WHERE id=?", (run_id,)).fetchone()
            return self._run_from_row(row) if row else None

    def list_runs(self, limit: int = 50) -> List[ScanRun]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM scan_runs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._run_from_row(r) for r in rows]

    def running_runs(self) -> List[ScanRun]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM scan_runs WHERE status='running' ORDER BY id"
            ).fetchall()
            return [self._run_from_row(r) for r in rows]

    def fail_stale_runs(self, reason: str = "interrupted before completion") -> int:
        """Finalize runs left 'running' by a previous process as failed."""
        with self._tx() as c:
            n = c.execute(
                "UPDATE scan_runs SET status='failed', finished_at=?, error=? "
                "WHERE status='running'",
                (format_ts(), reason)
            ).rowcount
        if n:
            log.warning(f"Marked {n} stale running scan run(s) as failed")
        return n

    # ── Current state + history writes ────────────────────────────────────────

    def record_probe(self, entry: NetworkScanEntry, run_id: Optional[int],
                     measured_at: Optional[str] = None,
                     create: bool = True) -> Optional[NetworkScanEntry]:
        """
        Upsert the current-state row and append one history row, atomically.

        With create=False an IP without a current-state row is skipped and
        None is returned (refresh of an entry purged meanwhile).
        """
        measured_at = measured_at or format_ts()
        with self._tx() as c:
            if not create and c.execute(
                "SELECT 1 FROM network_scans WHERE ip=?", (entry.ip,)
            ).fetchone() is None:
                return None
            c.execute("""
                INSERT INTO network_scans(ip,mac,hostname,hostname_source,vendor,vendor_source,
                                          status,ping_latency,first_seen,last_seen,scan_type,scan_count)
                VALUES(?,?,?,?,?,?,?,?,?,?,?,1)
                ON CONFLICT(ip) DO UPDATE SET
                  mac=excluded.mac,
                  hostname=excluded.hostname,
                  hostname_source=excluded.hostname_source,
                  vendor=excluded.vendor,
                  vendor_source=excluded.vendor_source,
                  status=excluded.status,
                  ping_latency=excluded.ping_latency,
                  last_seen=MAX(excluded.last_seen, network_scans.first_seen),
                  scan_type=excluded.scan_type,
                  scan_count=network_scans.scan_count + 1
            """, (entry.ip, entry.mac, entry.hostname, entry.hostname_source,
                  entry.vendor, entry.vendor_source, entry.status, entry.ping_latency,
                  entry.first_seen, entry.last_seen, entry.scan_type))
            c.execute(
                "INSERT INTO network_scan_history(scan_run_id,ip,status,ping_latency,measured_at) "
                "VALUES(?,?,?,?,?)",
                (run_id, entry.ip, entry.status, entry.ping_latency, measured_at)
            )
            row = c.execute("SELECT * FROM network_scans WHERE ip=?", (entry.ip,)).fetchone()
            return NetworkScanEntry.from_row(row)

    def set_manual_attribute(self, ip: str, kind: str, value: Optional[str]) -> bool:
        """Set (or clear, with value=None) hostname/vendor for one IP as source 'manual'."""
        if kind not in ("hostname", "vendor"):
            raise ValueError(f"Unknown attribute {kind!r}")
        source = "manual" if value else None
        with self._tx() as c:
            n = c.execute(
                f"UPDATE network_scans SET {kind}=?, {kind}_source=? WHERE ip=?",
                (value or None, source, ip)
            ).rowcount
            return n > 0

    def delete_entry(self, ip: str) -> bool:
        with self._tx() as c:
            n = c.execute("DELETE FROM network_scans WHERE ip=?", (ip,)).rowcount
            return n > 0

    # ── Current state reads ───────────────────────────────────────────────────

    def get_entry(self, ip: str) -> Optional[NetworkScanEntry]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM network_scans WHERE ip=?", (ip,)).fetchone()
            return NetworkScanEntry.from_row(row) if row else None

    def known_targets(self) -> List[Tuple[str, Optional[str]]]:
        """(ip, mac) for every known entry, in numeric IP order."""
        with self._read() as conn:
            rows = conn.execute("SELECT ip, mac FROM network_scans").fetchall()
        return sorted(((r["ip"], r["mac"]) for r in rows), key=lambda t: _ip_key(t[0]))

    def query_entries(
        self,
        status: Optional[str] = None,
        ip: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "ip",
        sort_order: str = "asc",
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[NetworkScanEntry], int]:
        """
        Filtered, sorted, paginated current-state query.

        Returns (page, total matching). Raises ValueError for unknown
        status / sort key / sort order.
        """
        if sort_by not in SORT_KEYS:
            raise ValueError(f"Unknown sort key {sort_by!r} (allowed: {', '.join(SORT_KEYS)})")
        sort_order = (sort_order or "asc").lower()
        if sort_order not in ("asc", "desc"):
            raise ValueError(f"Unknown sort order {sort_order!r}")
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))
        where, params = self._filters(status, ip, search)

        with self._read() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM network_scans{where}", params
            ).fetchone()[0]
            if sort_by in _SQL_SORT:
                rows = conn.execute(
                    f"SELECT * FROM network_scans{where} "
                    f"ORDER BY {_SQL_SORT[sort_by]} {sort_order.upper()}, id ASC "
                    f"LIMIT ? OFFSET ?",
                    params + [limit, offset]
                ).fetchall()
                return [NetworkScanEntry.from_row(r) for r in rows], total
            rows = conn.execute(f"SELECT * FROM network_scans{where}", params).fetchall()

        entries = [NetworkScanEntry.from_row(r) for r in rows]
        entries = _sort_entries(entries, sort_by, sort_order == "desc")
        return entries[offset:offset + limit], total

    def count_entries(self, status: Optional[str] = None, ip: Optional[str] = None,
                      search: Optional[str] = None) -> int:
        where, params = self._filters(status, ip, search)
        with self._read() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM network_scans{where}", params).fetchone()[0]

    def history_for(self, ip: str, limit: int = 100) -> List[HistoryEntry]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM network_scan_history WHERE ip=? "
                "ORDER BY measured_at DESC, id DESC LIMIT ?", (ip, limit)
            ).fetchall()
            return [HistoryEntry.from_row(r) for r in rows]

    # ── Stats ─────────────────────────────────────────────────────────────────

    def stats(self) -> dict:
        with self._read() as conn:
            def q(sql): return conn.execute(sql).fetchone()[0] or 0
            last = conn.execute(
                "SELECT MAX(finished_at) FROM scan_runs WHERE status='completed'"
            ).fetchone()[0]
            return {
                "total":   q("SELECT COUNT(*) FROM network_scans"),
                "online":  q("SELECT COUNT(*) FROM network_scans WHERE status='online'"),
                "offline": q("SELECT COUNT(*) FROM network_scans WHERE status='offline'"),
                "unknown": q("SELECT COUNT(*) FROM network_scans WHERE status='unknown'"),
                "last_scan": last,
            }

    def historical_series(self, hours: int = STATS_DEFAULT_HOURS,
                          now: Optional[datetime] = None,
                          bucket_minutes: int = STATS_BUCKET_MINUTES,
                          max_points: int = STATS_MAX_POINTS) -> List[dict]:
        """
        Online/offline counts per time bucket from the history table.

        The lookback is clamped to [1, STATS_MAX_LOOKBACK_HOURS]; within a
        bucket an IP counts once, with its latest status.
        """
        hours = max(1, min(int(hours), STATS_MAX_LOOKBACK_HOURS))
        since = format_ts((now or now_utc()) - timedelta(hours=hours))
        with self._read() as conn:
            rows = conn.execute(
                "SELECT ip, status, ping_latency, measured_at FROM network_scan_history "
                "WHERE measured_at >= ? ORDER BY measured_at, id", (since,)
            ).fetchall()

        width = bucket_minutes * 60
        buckets: Dict[int, Dict[str, tuple]] = {}
        for r in rows:
            key = int(parse_ts(r["measured_at"]).timestamp()) // width * width
            buckets.setdefault(key, {})[r["ip"]] = (r["status"], r["ping_latency"])

        series = []
        for key in sorted(buckets)[-max_points:]:
            states = list(buckets[key].values())
            latencies = [lat for s, lat in states if s == HostStatus.ONLINE.value and lat is not None]
            series.append({
                "time":    format_ts(datetime.fromtimestamp(key, timezone.utc)),
                "online":  sum(1 for s, _ in states if s == HostStatus.ONLINE.value),
                "offline": sum(1 for s, _ in states if s == HostStatus.OFFLINE.value),
                "total":   len(states),
                "avg_latency": round(sum(latencies) / len(latencies), 2) if latencies else None,
            })
        return series

    # ── Retention ─────────────────────────────────────────────────────────────

    def purge_history(self, days: int, now: Optional[datetime] = None) -> int:
        """Delete history rows measured before now - days (all rows when days == 0)."""
        with self._tx() as c:
            if days == 0:
                return c.execute("DELETE FROM network_scan_history").rowcount
            return c.execute(
                "DELETE FROM network_scan_history WHERE measured_at < ?",
                (cutoff_ts(days, now),)
            ).rowcount

    def purge_entries(self, days: int, now: Optional[datetime] = None,
                      offline_only: bool = False) -> int:
        """Delete current-state rows last seen before now - days (all when days == 0)."""
        where, params = [], []
        if offline_only:
            where.append("status=?")
            params.append(HostStatus.OFFLINE.value)
        if days != 0:
            where.append("last_seen < ?")
            params.append(cutoff_ts(days, now))
        sql = "DELETE FROM network_scans"
        if where:
            sql += " WHERE " + " AND ".join(where)
        with self._tx() as c:
            return c.execute(sql, params).rowcount

    def clear_all(self) -> None:
        with self._tx() as c:
            c.execute("DELETE FROM network_scan_history")
            c.execute("DELETE FROM network_scans")
            c.execute("DELETE FROM scan_runs WHERE status != ?", (RunStatus.RUNNING.value,))

    def compact(self) -> None:
        """VACUUM the database file. Must run outside any transaction."""
        with self._lock:
            conn = sqlite3.connect(self._db_path, isolation_level=None)
            try:
                conn.execute("VACUUM")
            except sqlite3.Error as exc:
                raise PersistenceError(f"VACUUM failed: {exc}") from exc
            finally:
                conn.close()

    def database_stats(self, now: Optional[datetime] = None) -> dict:
        now = now or now_utc()
        with self._read() as conn:
            def q(sql): return conn.execute(sql).fetchone()[0]
            page_count = q("PRAGMA page_count") or 0
            page_size = q("PRAGMA page_size") or 0
            oldest_history = q("SELECT MIN(measured_at) FROM network_scan_history")
            oldest_entry = q("SELECT MIN(first_seen) FROM network_scans")
            size = page_count * page_size
            return {
                "entries":         q("SELECT COUNT(*) FROM network_scans"),
                "offline_entries": q("SELECT COUNT(*) FROM network_scans WHERE status='offline'"),
                "history":         q("SELECT COUNT(*) FROM network_scan_history"),
                "runs":            q("SELECT COUNT(*) FROM scan_runs"),
                "size_bytes":      size,
                "size_mb":         round(size / (1024 * 1024), 2),
                "oldest_history":  oldest_history,
                "oldest_history_age_days": _age_days(oldest_history, now),
                "oldest_entry":    oldest_entry,
                "oldest_entry_age_days": _age_days(oldest_entry, now),
            }

    # ── Key/value settings ────────────────────────────────────────────────────

    def get_setting(self, key: str, default: Any = None) -> Any:
        with self._read() as conn:
            row = conn.execute("SELECT value FROM app_config WHERE key=?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except ValueError:
            log.warning(f"Ignoring unreadable setting {key!r}")
            return default

    def set_setting(self, key: str, value: Any) -> None:
        with self._tx() as c:
            c.execute(
                "INSERT INTO app_config(key,value,updated_at) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, json.dumps(value), format_ts())
            )

    # ── Serialization helpers ─────────────────────────────────────────────────

    @staticmethod
    def _filters(status: Optional[str], ip: Optional[str],
                 search: Optional[str]) -> Tuple[str, list]:
        where, params = [], []
        if status:
            if status not in {s.value for s in HostStatus}:
                raise ValueError(f"Unknown status {status!r}")
            where.append("status=?")
            params.append(status)
        if ip:
            where.append("ip LIKE ? ESCAPE '\\'")
            params.append(_like(ip))
        if search:
            where.append("(ip LIKE ? ESCAPE '\\' OR mac LIKE ? ESCAPE '\\' "
                         "OR hostname LIKE ? ESCAPE '\\' OR vendor LIKE ? ESCAPE '\\')")
            params.extend([_like(search)] * 4)
        return (" WHERE " + " AND ".join(where) if where else ""), params

    @staticmethod
    def _run_from_row(row) -> ScanRun:
        run = ScanRun.from_row(row)
        if run.started_at and run.finished_at:
            run.duration_s = (parse_ts(run.finished_at) - parse_ts(run.started_at)).total_seconds()
        return run


def _like(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _ip_key(ip: str) -> int:
    try:
        return int(ipaddress.IPv4Address(ip))
    except ValueError:
        return 0


def _sort_entries(entries: Iterable[NetworkScanEntry], key: str,
                  reverse: bool) -> List[NetworkScanEntry]:
    if key == "ip":
        return sorted(entries, key=lambda e: _ip_key(e.ip), reverse=reverse)
    present = [e for e in entries if getattr(e, key)]
    empty = [e for e in entries if not getattr(e, key)]
    present.sort(key=lambda e: getattr(e, key).lower(), reverse=reverse)
    # entries without a value always go last
    return present + sorted(empty, key=lambda e: _ip_key(e.ip))


def _age_days(ts: Optional[str], now: datetime) -> Optional[int]:
    if not ts:
        return None
    return max(0, (now - parse_ts(ts)).days)
