"""
services/retention.py
Age-based purging of scan data, manual housekeeping, and the auto-purge job.

Categories:
  history  — network_scan_history rows, by measured_at
  scans    — current-state rows, by last_seen
  offline  — current-state rows with status=offline, by last_seen

days=0 empties a category. A purge only ever deletes within its own
category; clear_all() is the separate administrative reset.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from database.repository import Repository
from services.periodic import PeriodicTask, create_scheduler, next_fire_time
from utils.constants import COMPACTION_THRESHOLD, DEFAULT_RETENTION_CONFIG
from utils.errors import InvalidRetentionConfigError, PersistenceError
from utils.logger import get_logger
from utils.timeutil import format_ts

log = get_logger("lanwatch.retention")

RETENTION_SETTING = "retention"
PURGE_JOB = "auto_purge"


class PurgeCategory(str, Enum):
    HISTORY = "history"
    SCANS   = "scans"
    OFFLINE = "offline"


# ─── Config ───────────────────────────────────────────────────────────────────

_KEYS = {
    "historyRetentionDays": "history_retention_days",
    "scanRetentionDays":    "scan_retention_days",
    "offlineRetentionDays": "offline_retention_days",
    "autoPurgeEnabled":     "auto_purge_enabled",
    "purgeSchedule":        "purge_schedule",
}


@dataclass(frozen=True)
class RetentionConfig:
    history_retention_days: int = DEFAULT_RETENTION_CONFIG["historyRetentionDays"]
    scan_retention_days:    int = DEFAULT_RETENTION_CONFIG["scanRetentionDays"]
    offline_retention_days: int = DEFAULT_RETENTION_CONFIG["offlineRetentionDays"]
    auto_purge_enabled:     bool = DEFAULT_RETENTION_CONFIG["autoPurgeEnabled"]
    purge_schedule:         str = DEFAULT_RETENTION_CONFIG["purgeSchedule"]

    def __post_init__(self):
        for name in ("history_retention_days", "scan_retention_days", "offline_retention_days"):
            _check_days(name, getattr(self, name))
        self.trigger()

    def trigger(self) -> CronTrigger:
        try:
            return CronTrigger.from_crontab(self.purge_schedule, timezone="UTC")
        except (ValueError, TypeError) as exc:
            raise InvalidRetentionConfigError(
                f"Invalid purgeSchedule {self.purge_schedule!r}: {exc}",
                hint="Use a 5-field cron expression, e.g. '0 2 * * *'",
            ) from exc

    @classmethod
    def from_dict(cls, data: Optional[dict], base: Optional["RetentionConfig"] = None
                  ) -> "RetentionConfig":
        """Build from camelCase (or snake_case) keys; missing keys come from base."""
        if data is not None and not isinstance(data, dict):
            raise InvalidRetentionConfigError("Retention config must be a mapping")
        values = asdict(base or cls())
        for key, value in (data or {}).items():
            attr = _KEYS.get(key, key)
            if attr not in values:
                raise InvalidRetentionConfigError(f"Unknown retention setting {key!r}")
            values[attr] = value
        values["auto_purge_enabled"] = bool(values["auto_purge_enabled"])
        return cls(**values)

    def to_dict(self) -> dict:
        d = asdict(self)
        return {camel: d[snake] for camel, snake in _KEYS.items()}

    def days_for(self, category: PurgeCategory) -> int:
        return {
            PurgeCategory.HISTORY: self.history_retention_days,
            PurgeCategory.SCANS:   self.scan_retention_days,
            PurgeCategory.OFFLINE: self.offline_retention_days,
        }[category]


def _check_days(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidRetentionConfigError(
            f"{name} must be a non-negative integer, got {value!r}"
        )


@dataclass(frozen=True)
class PurgeReport:
    history:   int
    offline:   int
    scans:     int
    compacted: bool
    at:        str

    @property
    def total(self) -> int:
        return self.history + self.offline + self.scans

    def to_dict(self) -> dict:
        d = asdict(self)
        d["total"] = self.total
        return d


# ─── Service ──────────────────────────────────────────────────────────────────

class RetentionService:

    def __init__(
        self,
        repo: Repository,
        config: Optional[RetentionConfig] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        compaction_threshold: int = COMPACTION_THRESHOLD,
    ):
        self._repo = repo
        self._config = self._load_persisted() or config or RetentionConfig()
        self._threshold = compaction_threshold
        self._scheduler = scheduler or create_scheduler()
        self._task = PeriodicTask(self._scheduler, PURGE_JOB,
                                  self.run_scheduled_purge, "Automatic purge")
        self._last_report: Optional[PurgeReport] = None
        self._last_error: Optional[str] = None

    # ── Config ────────────────────────────────────────────────────────────────

    def get_config(self) -> RetentionConfig:
        return self._config

    def update_config(self, data: Union[dict, RetentionConfig]) -> RetentionConfig:
        """Merge a partial update, validate, persist, and re-arm the auto-purge job."""
        new = data if isinstance(data, RetentionConfig) else RetentionConfig.from_dict(data, self._config)
        self._repo.set_setting(RETENTION_SETTING, new.to_dict())
        self._config = new
        if self._scheduler.running:
            self._arm()
        log.info(f"Retention config updated: {new.to_dict()}")
        return new

    def _load_persisted(self) -> Optional[RetentionConfig]:
        stored = self._repo.get_setting(RETENTION_SETTING)
        if not stored:
            return None
        try:
            return RetentionConfig.from_dict(stored)
        except ValueError as exc:
            log.warning(f"Stored retention config ignored: {exc}")
            return None

    # ── Purges ────────────────────────────────────────────────────────────────

    def purge(self, category: Union[PurgeCategory, str], days: int,
              now: Optional[datetime] = None) -> int:
        """Delete rows of one category older than now - days (all when days == 0)."""
        try:
            category = PurgeCategory(category)
        except ValueError:
            raise InvalidRetentionConfigError(f"Unknown purge category {category!r}") from None
        _check_days("days", days)

        if category is PurgeCategory.HISTORY:
            n = self._repo.purge_history(days, now)
        elif category is PurgeCategory.OFFLINE:
            n = self._repo.purge_entries(days, now, offline_only=True)
        else:
            n = self._repo.purge_entries(days, now)
        log.info(f"Purged {n} {category.value} row(s) "
                 + ("(all)" if days == 0 else f"older than {days}d"))
        return n

    def execute_purge(self, now: Optional[datetime] = None) -> PurgeReport:
        """
        Apply every retention window: history, then offline entries, then
        all entries. Compacts the database when more than the threshold
        rows went away.
        """
        cfg = self._config
        history = self.purge(PurgeCategory.HISTORY, cfg.history_retention_days, now)
        offline = self.purge(PurgeCategory.OFFLINE, cfg.offline_retention_days, now)
        scans = self.purge(PurgeCategory.SCANS, cfg.scan_retention_days, now)

        compacted = False
        if history + offline + scans > self._threshold:
            self._repo.compact()
            compacted = True
        report = PurgeReport(history, offline, scans, compacted, format_ts())
        self._last_report = report
        log.info(f"Purge complete: {report.total} row(s) removed"
                 + (", database compacted" if compacted else ""))
        return report

    def purge_all(self) -> PurgeReport:
        return self.execute_purge()

    def purge_history_only(self) -> int:
        return self.purge(PurgeCategory.HISTORY, self._config.history_retention_days)

    def purge_scans_only(self) -> int:
        return self.purge(PurgeCategory.SCANS, self._config.scan_retention_days)

    def purge_offline_only(self) -> int:
        return self.purge(PurgeCategory.OFFLINE, self._config.offline_retention_days)

    def clear_all(self) -> None:
        """Wipe current-state and history tables. Administrative reset only."""
        self._repo.clear_all()
        log.warning("All scan data cleared")

    # ── Housekeeping ──────────────────────────────────────────────────────────

    def database_stats(self) -> dict:
        return self._repo.database_stats()

    def compact(self) -> None:
        self._repo.compact()
        log.info("Database compacted")

    # ── Auto-purge lifecycle ──────────────────────────────────────────────────

    def start(self) -> None:
        """Start the auto-purge timer. Call from inside the running event loop."""
        self._arm()
        if not self._scheduler.running:
            self._scheduler.start()

    def stop(self) -> None:
        self._task.stop()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def _arm(self) -> None:
        if self._config.auto_purge_enabled:
            self._task.reconfigure(self._config.trigger())
            log.info(f"Auto-purge scheduled: {self._config.purge_schedule} (UTC)")
        else:
            self._task.stop()
            log.info("Auto-purge disabled")

    async def run_scheduled_purge(self) -> Optional[PurgeReport]:
        try:
            report = self.execute_purge()
        except PersistenceError as exc:
            # only this cycle is lost; the job stays scheduled
            self._last_error = str(exc)
            log.error(f"Scheduled purge failed: {exc}")
            return None
        self._last_error = None
        return report

    def get_status(self) -> dict:
        next_run = self._task.next_run_time
        if next_run is None and self._config.auto_purge_enabled and not self._scheduler.running:
            next_run = next_fire_time(self._config.trigger())
        return {
            **self._config.to_dict(),
            "nextRun": format_ts(next_run) if next_run else None,
            "lastPurge": self._last_report.to_dict() if self._last_report else None,
            "lastError": self._last_error,
        }


__all__ = ["PurgeCategory", "RetentionConfig", "PurgeReport", "RetentionService"]
