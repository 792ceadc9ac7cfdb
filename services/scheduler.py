"""
services/scheduler.py
Automatic full scans and refreshes on two independent interval triggers.

  • intervals come from fixed sets (FULL_SCAN_INTERVALS / REFRESH_INTERVALS)
  • a master flag gates both triggers
  • pause / resume is a boolean gate checked when a trigger fires; a tick
    that fires while paused is skipped, never queued
  • manual scans go through ``manual_operation()`` which pauses first and
    always resumes, whatever the outcome
  • a tick that fails is recorded and logged; the schedule keeps running
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from services.orchestrator import ScanOrchestrator, ScanSummary
from services.periodic import PeriodicTask, create_scheduler, next_fire_time
from database.repository import Repository
from utils.constants import (DEFAULT_SCHEDULER_CONFIG, FULL_SCAN_INTERVALS,
                             REFRESH_INTERVALS, ScanType)
from utils.errors import InvalidIntervalError
from utils.logger import get_logger
from utils.timeutil import format_ts
from utils.validators import validate_scan_type

log = get_logger("lanwatch.scheduler")

SCHEDULER_SETTING = "scheduler"
FULL_SCAN_JOB = "full_scan"
REFRESH_JOB = "refresh"


# ─── Config ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TriggerConfig:
    enabled:   bool
    interval:  int          # minutes
    scan_type: ScanType

    def to_dict(self) -> dict:
        return {"enabled": self.enabled, "interval": self.interval,
                "scanType": self.scan_type.value}


@dataclass(frozen=True)
class SchedulerConfig:
    enabled:   bool
    full_scan: TriggerConfig
    refresh:   TriggerConfig

    @property
    def effective_enabled(self) -> bool:
        return self.enabled and (self.full_scan.enabled or self.refresh.enabled)

    @classmethod
    def default(cls) -> "SchedulerConfig":
        return cls.from_dict(DEFAULT_SCHEDULER_CONFIG)

    @classmethod
    def from_dict(cls, data: dict) -> "SchedulerConfig":
        """
        Parse ``{enabled, fullScan{enabled,interval,scanType},
        refresh{enabled,interval,scanType}}`` (snake_case keys accepted).

        Raises InvalidIntervalError / InvalidScanTypeError; nothing is
        applied on failure.
        """
        if not isinstance(data, dict):
            raise InvalidIntervalError("Scheduler config must be a mapping")
        base = DEFAULT_SCHEDULER_CONFIG
        full = data.get("fullScan", data.get("full_scan", base["fullScan"]))
        refresh = data.get("refresh", base["refresh"])
        return cls(
            enabled=bool(data.get("enabled", base["enabled"])),
            full_scan=_trigger("fullScan", full, base["fullScan"], FULL_SCAN_INTERVALS),
            refresh=_trigger("refresh", refresh, base["refresh"], REFRESH_INTERVALS),
        )

    def to_dict(self) -> dict:
        return {"enabled": self.enabled, "fullScan": self.full_scan.to_dict(),
                "refresh": self.refresh.to_dict()}


def _trigger(name: str, raw, defaults: dict, allowed) -> TriggerConfig:
    if not isinstance(raw, dict):
        raise InvalidIntervalError(f"{name} must be a mapping")
    interval = raw.get("interval", defaults["interval"])
    if isinstance(interval, bool) or not isinstance(interval, int) or interval not in allowed:
        raise InvalidIntervalError(
            f"{name}.interval {interval!r} is not allowed "
            f"(choose from {', '.join(str(i) for i in allowed)} minutes)"
        )
    return TriggerConfig(
        enabled=bool(raw.get("enabled", defaults["enabled"])),
        interval=interval,
        scan_type=validate_scan_type(raw.get("scanType", raw.get("scan_type",
                                                                 defaults["scanType"]))),
    )


@dataclass
class TriggerState:
    last_run:    Optional[str] = None
    last_status: Optional[str] = None   # completed | failed | skipped
    last_error:  Optional[str] = None
    runs:        int = 0
    skipped:     int = 0


# ─── Scheduler ────────────────────────────────────────────────────────────────

class ScanScheduler:
    """Periodic trigger for the orchestrator, with a pause gate for manual work."""

    def __init__(
        self,
        orchestrator: ScanOrchestrator,
        repo: Optional[Repository] = None,
        config: Optional[SchedulerConfig] = None,
        default_range: Optional[str] = None,
        auto_detect: bool = True,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self._orch = orchestrator
        self._repo = repo
        self._default_range = default_range
        self._auto_detect = auto_detect
        self._config = self._load_persisted() or config or SchedulerConfig.default()
        self._paused = False
        self._scheduler = scheduler or create_scheduler()
        self._full = PeriodicTask(self._scheduler, FULL_SCAN_JOB,
                                  self.run_full_scan_tick, "Scheduled full scan")
        self._refresh = PeriodicTask(self._scheduler, REFRESH_JOB,
                                     self.run_refresh_tick, "Scheduled refresh")
        self._state: Dict[str, TriggerState] = {
            FULL_SCAN_JOB: TriggerState(), REFRESH_JOB: TriggerState(),
        }

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start timers. Must be called from inside the running event loop."""
        self._apply()
        if not self._scheduler.running:
            self._scheduler.start()
        log.info(f"Scheduler started: {self._describe()}")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    # ── Config ────────────────────────────────────────────────────────────────

    def get_config(self) -> SchedulerConfig:
        return self._config

    def update_config(self, config: Union[dict, SchedulerConfig]) -> SchedulerConfig:
        """Validate, then swap the config and restart both timers."""
        new = config if isinstance(config, SchedulerConfig) else SchedulerConfig.from_dict(config)
        if self._repo is not None:
            self._repo.set_setting(SCHEDULER_SETTING, new.to_dict())
        self._config = new
        self._apply()
        log.info(f"Scheduler reconfigured: {self._describe()}")
        return new

    def _apply(self) -> None:
        cfg = self._config
        for task, trig in ((self._full, cfg.full_scan), (self._refresh, cfg.refresh)):
            if cfg.enabled and trig.enabled:
                task.reconfigure(self._interval_trigger(trig))
            else:
                task.stop()

    @staticmethod
    def _interval_trigger(trig: TriggerConfig) -> IntervalTrigger:
        return IntervalTrigger(minutes=trig.interval, timezone="UTC")

    def _describe(self) -> str:
        cfg = self._config
        if not cfg.effective_enabled:
            return "disabled"
        parts = []
        if cfg.full_scan.enabled:
            parts.append(f"full scan every {cfg.full_scan.interval}m ({cfg.full_scan.scan_type.value})")
        if cfg.refresh.enabled:
            parts.append(f"refresh every {cfg.refresh.interval}m ({cfg.refresh.scan_type.value})")
        return ", ".join(parts)

    def _load_persisted(self) -> Optional[SchedulerConfig]:
        if self._repo is None:
            return None
        stored = self._repo.get_setting(SCHEDULER_SETTING)
        if not stored:
            return None
        try:
            return SchedulerConfig.from_dict(stored)
        except ValueError as exc:
            log.warning(f"Stored scheduler config ignored: {exc}")
            return None

    # ── Pause gate ────────────────────────────────────────────────────────────

    def pause_auto_scans(self) -> None:
        self._paused = True
        log.debug("Automatic scans paused")

    def resume_auto_scans(self) -> None:
        self._paused = False
        log.debug("Automatic scans resumed")

    @property
    def paused(self) -> bool:
        return self._paused

    @asynccontextmanager
    async def manual_operation(self) -> AsyncIterator[None]:
        """Pause automatic scans for the duration of a manual one."""
        self.pause_auto_scans()
        try:
            yield
        finally:
            self.resume_auto_scans()

    async def run_manual_scan(self, range_spec: Optional[str] = None,
                              auto_detect: bool = False,
                              scan_type=ScanType.FULL) -> ScanSummary:
        async with self.manual_operation():
            return await self._orch.start_scan(range_spec, auto_detect=auto_detect,
                                               scan_type=scan_type)

    async def run_manual_refresh(self, scan_type=ScanType.QUICK) -> ScanSummary:
        async with self.manual_operation():
            return await self._orch.refresh(scan_type=scan_type)

    # ── Ticks ─────────────────────────────────────────────────────────────────

    async def run_full_scan_tick(self) -> Optional[ScanSummary]:
        trig = self._config.full_scan
        return await self._tick(FULL_SCAN_JOB, lambda: self._orch.start_scan(
            self._default_range,
            auto_detect=self._auto_detect,
            scan_type=trig.scan_type,
        ))

    async def run_refresh_tick(self) -> Optional[ScanSummary]:
        trig = self._config.refresh
        return await self._tick(REFRESH_JOB, lambda: self._orch.refresh(scan_type=trig.scan_type))

    async def _tick(self, job_id: str,
                    operation: Callable[[], Awaitable[ScanSummary]]) -> Optional[ScanSummary]:
        state = self._state[job_id]
        if self._paused:
            state.skipped += 1
            state.last_status = "skipped"
            log.info(f"{job_id}: skipped, automatic scans are paused")
            return None

        state.last_run = format_ts()
        state.runs += 1
        try:
            summary = await operation()
        except Exception as exc:  # one failed tick never stops the schedule
            state.last_status = "failed"
            state.last_error = str(exc)
            log.error(f"{job_id}: tick failed: {exc}")
            return None
        self._orch.consume_result()
        state.last_status = summary.status
        state.last_error = summary.error
        return summary

    # ── Status ────────────────────────────────────────────────────────────────

    def get_status(self) -> dict:
        cfg = self._config
        return {
            "enabled": cfg.effective_enabled,
            "masterEnabled": cfg.enabled,
            "paused": self._paused,
            "running": self._scheduler.running,
            "fullScan": self._trigger_status(self._full, cfg.full_scan, FULL_SCAN_JOB),
            "refresh": self._trigger_status(self._refresh, cfg.refresh, REFRESH_JOB),
        }

    def _trigger_status(self, task: PeriodicTask, trig: TriggerConfig, job_id: str) -> dict:
        state = self._state[job_id]
        enabled = self._config.enabled and trig.enabled
        next_run = task.next_run_time
        if next_run is None and enabled and not self._scheduler.running:
            # timers only exist in the process that started them
            next_run = next_fire_time(self._interval_trigger(trig))
        return {
            **trig.to_dict(),
            "enabled": enabled,
            "lastRun": state.last_run,
            "nextRun": format_ts(next_run) if next_run else None,
            "lastStatus": state.last_status,
            "lastError": state.last_error,
            "runs": state.runs,
            "skipped": state.skipped,
        }


__all__ = ["TriggerConfig", "SchedulerConfig", "ScanScheduler",
           "FULL_SCAN_JOB", "REFRESH_JOB"]
