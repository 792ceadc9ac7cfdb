"""
tests/test_scheduler.py
Scheduler config validation, timers, pause gate and manual-operation tests.
Run: pytest tests/test_scheduler.py -v
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from database.repository import Repository
from services.orchestrator import ScanSummary
from services.scheduler import ScanScheduler, SchedulerConfig
from utils.constants import ScanType
from utils.errors import InvalidIntervalError, InvalidScanTypeError, ScanAlreadyRunningError
from utils.timeutil import now_utc, parse_ts


def _summary(kind="scan", status="completed", error=None):
    return ScanSummary(run_id=1, kind=kind, scan_type="quick", target_range=None,
                       status=status, scanned=0, found=0, new=0, offline=0,
                       started_at="2026-03-01T00:00:00Z", finished_at="2026-03-01T00:00:01Z",
                       duration_s=1.0, error=error)


class FakeOrchestrator:
    """Records calls; optionally raises instead of scanning."""

    def __init__(self, raise_exc=None):
        self.raise_exc = raise_exc
        self.scans = []
        self.refreshes = []
        self.consumed = 0
        self.scheduler = None
        self.paused_during = []

    async def start_scan(self, range_spec=None, auto_detect=False, scan_type=ScanType.FULL):
        if self.scheduler is not None:
            self.paused_during.append(self.scheduler.paused)
        if self.raise_exc:
            raise self.raise_exc
        self.scans.append((range_spec, auto_detect, scan_type))
        return _summary("scan")

    async def refresh(self, ips=None, scan_type=ScanType.QUICK):
        if self.raise_exc:
            raise self.raise_exc
        self.refreshes.append(scan_type)
        return _summary("refresh")

    def consume_result(self):
        self.consumed += 1


def _config(enabled=True, full=(True, 60, "full"), refresh=(True, 5, "quick")):
    return SchedulerConfig.from_dict({
        "enabled": enabled,
        "fullScan": {"enabled": full[0], "interval": full[1], "scanType": full[2]},
        "refresh": {"enabled": refresh[0], "interval": refresh[1], "scanType": refresh[2]},
    })


@pytest.fixture
def repo(tmp_path):
    return Repository(db_path=str(tmp_path / "sched.db"))


# ─── Config ───────────────────────────────────────────────────────────────────

class TestSchedulerConfig:

    def test_defaults(self):
        cfg = SchedulerConfig.default()
        assert cfg.enabled is False
        assert cfg.full_scan.interval == 1440
        assert cfg.refresh.interval == 10
        assert cfg.refresh.scan_type is ScanType.QUICK

    def test_round_trip(self):
        cfg = _config()
        assert SchedulerConfig.from_dict(cfg.to_dict()) == cfg

    def test_snake_case_keys(self):
        cfg = SchedulerConfig.from_dict({"enabled": True,
                                         "full_scan": {"interval": 30, "scan_type": "quick"}})
        assert cfg.full_scan.interval == 30
        assert cfg.full_scan.scan_type is ScanType.QUICK

    @pytest.mark.parametrize("interval", [7, 0, -5, "15", True, 15.0])
    def test_refresh_interval_outside_set(self, interval):
        with pytest.raises(InvalidIntervalError):
            SchedulerConfig.from_dict({"refresh": {"interval": interval}})

    def test_full_scan_interval_outside_set(self):
        with pytest.raises(InvalidIntervalError, match="fullScan"):
            SchedulerConfig.from_dict({"fullScan": {"interval": 5}})

    def test_bad_scan_type(self):
        with pytest.raises(InvalidScanTypeError):
            SchedulerConfig.from_dict({"refresh": {"scanType": "deep"}})

    @pytest.mark.parametrize("enabled, full_on, refresh_on, expected", [
        (True, True, True, True),
        (True, False, True, True),
        (True, False, False, False),
        (False, True, True, False),
    ])
    def test_effective_enabled(self, enabled, full_on, refresh_on, expected):
        cfg = _config(enabled, (full_on, 60, "full"), (refresh_on, 5, "quick"))
        assert cfg.effective_enabled is expected


# ─── Timers ───────────────────────────────────────────────────────────────────

class TestTimers:

    @pytest.mark.asyncio
    async def test_next_run_matches_interval(self, repo):
        sched = ScanScheduler(FakeOrchestrator(), repo, config=_config())
        sched.start()
        try:
            status = sched.get_status()
            assert status["enabled"] is True
            assert status["running"] is True
            delta = (parse_ts(status["refresh"]["nextRun"]) - now_utc()).total_seconds()
            assert 5 * 60 - 5 <= delta <= 5 * 60 + 1
            delta = (parse_ts(status["fullScan"]["nextRun"]) - now_utc()).total_seconds()
            assert 60 * 60 - 5 <= delta <= 60 * 60 + 1
        finally:
            sched.shutdown()

    @pytest.mark.asyncio
    async def test_master_switch_off_schedules_nothing(self, repo):
        sched = ScanScheduler(FakeOrchestrator(), repo, config=_config(enabled=False))
        sched.start()
        try:
            status = sched.get_status()
            assert status["enabled"] is False
            assert status["fullScan"]["nextRun"] is None
            assert status["refresh"]["nextRun"] is None
            assert status["refresh"]["enabled"] is False
        finally:
            sched.shutdown()

    @pytest.mark.asyncio
    async def test_update_config_replaces_timers_and_persists(self, repo):
        sched = ScanScheduler(FakeOrchestrator(), repo, config=_config(enabled=False))
        sched.start()
        try:
            sched.update_config(_config(refresh=(True, 15, "quick"), full=(False, 60, "full")).to_dict())
            status = sched.get_status()
            assert status["fullScan"]["nextRun"] is None
            delta = (parse_ts(status["refresh"]["nextRun"]) - now_utc()).total_seconds()
            assert 15 * 60 - 5 <= delta <= 15 * 60 + 1
        finally:
            sched.shutdown()

        reloaded = ScanScheduler(FakeOrchestrator(), repo, config=_config(enabled=False))
        assert reloaded.get_config().refresh.interval == 15
        assert reloaded.get_config().enabled is True

    def test_status_without_running_scheduler_projects_next_run(self, repo):
        sched = ScanScheduler(FakeOrchestrator(), repo, config=_config(full=(False, 60, "full")))
        status = sched.get_status()
        assert status["running"] is False
        assert status["fullScan"]["nextRun"] is None
        delta = (parse_ts(status["refresh"]["nextRun"]) - now_utc()).total_seconds()
        assert 5 * 60 - 5 <= delta <= 5 * 60 + 1

    def test_invalid_update_changes_nothing(self, repo):
        sched = ScanScheduler(FakeOrchestrator(), repo, config=_config())
        with pytest.raises(InvalidIntervalError):
            sched.update_config({"enabled": True, "refresh": {"interval": 3}})
        assert sched.get_config() == _config()
        assert repo.get_setting("scheduler") is None


# ─── Ticks / pause gate ───────────────────────────────────────────────────────

class TestTicks:

    @pytest.mark.asyncio
    async def test_paused_tick_runs_nothing(self):
        orch = FakeOrchestrator()
        sched = ScanScheduler(orch, config=_config())
        sched.pause_auto_scans()
        assert await sched.run_full_scan_tick() is None
        assert await sched.run_refresh_tick() is None
        assert orch.scans == [] and orch.refreshes == []
        status = sched.get_status()
        assert status["paused"] is True
        assert status["fullScan"]["lastStatus"] == "skipped"
        assert status["refresh"]["skipped"] == 1
        assert status["refresh"]["runs"] == 0

    @pytest.mark.asyncio
    async def test_tick_uses_configured_range_and_type(self):
        orch = FakeOrchestrator()
        sched = ScanScheduler(orch, config=_config(full=(True, 60, "quick")),
                              default_range="192.168.1.0/24", auto_detect=False)
        summary = await sched.run_full_scan_tick()
        assert summary.ok
        assert orch.scans == [("192.168.1.0/24", False, ScanType.QUICK)]
        assert orch.consumed == 1
        status = sched.get_status()["fullScan"]
        assert (status["runs"], status["lastStatus"]) == (1, "completed")
        assert status["lastRun"] is not None

    @pytest.mark.asyncio
    async def test_failed_tick_is_recorded_and_schedule_survives(self):
        orch = FakeOrchestrator(raise_exc=ScanAlreadyRunningError("busy"))
        sched = ScanScheduler(orch, config=_config())
        assert await sched.run_refresh_tick() is None
        status = sched.get_status()["refresh"]
        assert (status["lastStatus"], status["lastError"]) == ("failed", "busy")

        orch.raise_exc = None
        assert (await sched.run_refresh_tick()).ok
        assert sched.get_status()["refresh"]["lastError"] is None


# ─── Manual operations ────────────────────────────────────────────────────────

class TestManualOperations:

    @pytest.mark.asyncio
    async def test_manual_scan_pauses_then_resumes(self):
        orch = FakeOrchestrator()
        sched = ScanScheduler(orch, config=_config())
        orch.scheduler = sched
        await sched.run_manual_scan("10.0.0.0/28", scan_type="quick")
        assert orch.paused_during == [True]
        assert sched.paused is False

    @pytest.mark.asyncio
    async def test_resumed_even_when_scan_raises(self):
        orch = FakeOrchestrator(raise_exc=RuntimeError("boom"))
        sched = ScanScheduler(orch, config=_config())
        with pytest.raises(RuntimeError):
            await sched.run_manual_scan("10.0.0.1")
        assert sched.paused is False
        with pytest.raises(RuntimeError):
            await sched.run_manual_refresh()
        assert sched.paused is False

    @pytest.mark.asyncio
    async def test_manual_operation_context(self):
        sched = ScanScheduler(FakeOrchestrator(), config=_config())
        async with sched.manual_operation():
            assert sched.paused is True
            assert await sched.run_refresh_tick() is None
        assert sched.paused is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
