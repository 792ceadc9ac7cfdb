"""
tests/test_orchestrator.py
Scan lifecycle tests: single-flight, merge-on-write, refresh, failure paths.
Probing goes through the real ProbeEngine with a fake prober.
Run: pytest tests/test_orchestrator.py -v
"""

import sys
import os
import asyncio
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from core.detection_merger import DetectionSource, Observation, PriorityConfig
from core.probe_engine import ProbeEngine, Prober
from core.range_parser import RangeParser
from core.sources import AttributeSource
from database.repository import Repository
from services.orchestrator import ScanOrchestrator, ScanState
from utils.constants import ProbeProfile, ScanType
from utils.errors import (InvalidScanTypeError, NoRouteDetectedError, PersistenceError,
                          ProbeTransportError, RangeFormatError, RangeTooLargeError,
                          ScanAlreadyRunningError)


# ─── Fakes ────────────────────────────────────────────────────────────────────

class FakeProber(Prober):
    def __init__(self, up=None, names=None, macs=None, fail_on=None, gate=None):
        self.up = dict(up or {})
        self.names = dict(names or {})
        self.macs = dict(macs or {})
        self.fail_on = fail_on
        self.gate = gate
        self.pinged = []

    async def ping(self, ip, timeout_s):
        self.pinged.append(ip)
        if self.gate is not None:
            await self.gate.wait()
        if ip == self.fail_on:
            raise ProbeTransportError("ping: operation not permitted", hint="setcap")
        return self.up.get(ip)

    async def lookup_mac(self, ip):
        return self.macs.get(ip)

    async def resolve_hostname(self, ip, timeout_s):
        return self.names.get(ip)


class StaticSource(AttributeSource):
    def __init__(self, source, data, explode=False):
        self.source = source
        self.data = data
        self.explode = explode
        self.calls = 0

    async def collect(self, ips):
        self.calls += 1
        if self.explode:
            raise ConnectionError("controller unreachable")
        return {ip: Observation(self.source, **attrs)
                for ip, attrs in self.data.items() if ip in ips}


def _serial_profiles():
    return {
        ScanType.QUICK: ProbeProfile("quick", 1, 1.0, 0, False, 0.5, False),
        ScanType.FULL:  ProbeProfile("full", 1, 1.0, 0, False, 0.5, True),
    }


@pytest.fixture
def repo(tmp_path):
    return Repository(db_path=str(tmp_path / "orch.db"))


def _orch(repo, prober, **kw):
    engine = ProbeEngine(prober, profiles=kw.pop("profiles", None))
    return ScanOrchestrator(repo, engine=engine, **kw)


# ─── Scans ────────────────────────────────────────────────────────────────────

class TestScan:

    @pytest.mark.asyncio
    async def test_full_scan_records_reachable_hosts(self, repo):
        prober = FakeProber(up={"10.0.0.1": 1.0, "10.0.0.3": 2.5},
                            names={"10.0.0.1": "router.local"},
                            macs={"10.0.0.1": "aa:bb:cc:dd:ee:01"})
        orch = _orch(repo, prober)
        summary = await orch.start_scan("10.0.0.1-4", scan_type="full")

        assert summary.ok
        assert (summary.scanned, summary.found, summary.new) == (4, 2, 2)
        assert summary.target_range == "10.0.0.1-10.0.0.4"
        assert repo.count_entries() == 2
        e = repo.get_entry("10.0.0.1")
        assert (e.hostname, e.hostname_source, e.mac) == ("router.local", "scanner",
                                                          "aa:bb:cc:dd:ee:01")
        run = repo.get_run(summary.run_id)
        assert (run.status, run.scanned, run.found) == ("completed", 4, 2)
        assert orch.state is ScanState.COMPLETED

    @pytest.mark.asyncio
    async def test_known_host_going_down_is_marked_offline(self, repo):
        prober = FakeProber(up={"10.0.0.1": 1.0, "10.0.0.2": 1.0})
        orch = _orch(repo, prober)
        await orch.start_scan("10.0.0.1-2", scan_type="quick")
        del prober.up["10.0.0.2"]
        summary = await orch.start_scan("10.0.0.1-2", scan_type="quick")

        assert (summary.found, summary.offline, summary.new) == (1, 1, 0)
        e = repo.get_entry("10.0.0.2")
        assert e.status == "offline"
        assert e.ping_latency is None
        assert e.scan_count == 2
        assert len(repo.history_for("10.0.0.2")) == 2

    @pytest.mark.asyncio
    async def test_auto_detect(self, repo):
        parser = RangeParser(interface_lister=lambda: [("eth0", "192.168.50.9")])
        orch = _orch(repo, FakeProber(up={"192.168.50.1": 0.5}), range_parser=parser)
        summary = await orch.start_scan(auto_detect=True, scan_type="quick")
        assert summary.target_range == "192.168.50.0/24"
        assert summary.scanned == 254
        assert summary.found == 1

    @pytest.mark.asyncio
    async def test_manual_value_survives_scan(self, repo):
        prober = FakeProber(up={"10.0.0.5": 1.0}, names={"10.0.0.5": "DS920"})
        orch = _orch(repo, prober)
        await orch.start_scan("10.0.0.5", scan_type="full")
        assert orch.set_manual_attribute("10.0.0.5", "hostname", "family-nas")
        await orch.start_scan("10.0.0.5", scan_type="full")
        e = repo.get_entry("10.0.0.5")
        assert (e.hostname, e.hostname_source) == ("family-nas", "manual")

    @pytest.mark.asyncio
    async def test_progress_reported(self, repo):
        seen = []
        orch = _orch(repo, FakeProber(up={"10.0.0.1": 1.0}),
                     progress_cb=lambda p: seen.append((p.current_phase, p.scanned, p.percentage)))
        assert orch.get_progress() is None
        await orch.start_scan("10.0.0.1-2", scan_type="quick")
        phases = [s[0] for s in seen]
        assert "probing" in phases
        assert seen[-1] == ("completed", 2, 100)
        assert orch.get_progress()["percentage"] == 100
        orch.consume_result()
        assert orch.get_progress() is None


# ─── Detection sources ────────────────────────────────────────────────────────

class TestDetectionSources:

    @pytest.mark.asyncio
    async def test_higher_priority_source_wins(self, repo):
        box = StaticSource(DetectionSource.FREEBOX, {"10.0.0.7": {"hostname": "Salon-TV"}})
        prober = FakeProber(up={"10.0.0.7": 1.0}, names={"10.0.0.7": "android-1234"})
        orch = _orch(repo, prober, sources=[box])
        await orch.start_scan("10.0.0.7", scan_type="full")
        e = repo.get_entry("10.0.0.7")
        assert (e.hostname, e.hostname_source) == ("Salon-TV", "freebox")

    @pytest.mark.asyncio
    async def test_scanner_first_priority(self, repo):
        box = StaticSource(DetectionSource.FREEBOX, {"10.0.0.7": {"hostname": "Salon-TV"}})
        prober = FakeProber(up={"10.0.0.7": 1.0}, names={"10.0.0.7": "android-1234"})
        cfg = PriorityConfig.from_dict({"priority": ["scanner", "freebox", "unifi"]})
        orch = _orch(repo, prober, sources=[box], priority=cfg)
        await orch.start_scan("10.0.0.7", scan_type="full")
        assert repo.get_entry("10.0.0.7").hostname == "android-1234"

    @pytest.mark.asyncio
    async def test_quick_scan_skips_sources(self, repo):
        box = StaticSource(DetectionSource.UNIFI, {"10.0.0.7": {"vendor": "Ubiquiti"}})
        orch = _orch(repo, FakeProber(up={"10.0.0.7": 1.0}), sources=[box])
        await orch.start_scan("10.0.0.7", scan_type="quick")
        assert box.calls == 0

    @pytest.mark.asyncio
    async def test_failing_source_is_skipped(self, repo):
        broken = StaticSource(DetectionSource.UNIFI, {}, explode=True)
        orch = _orch(repo, FakeProber(up={"10.0.0.7": 1.0}), sources=[broken])
        summary = await orch.start_scan("10.0.0.7", scan_type="full")
        assert summary.ok
        assert repo.get_entry("10.0.0.7") is not None


# ─── Single flight / validation ───────────────────────────────────────────────

class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_second_start_rejected_while_running(self, repo):
        gate = asyncio.Event()
        orch = _orch(repo, FakeProber(up={"10.0.0.1": 1.0}, gate=gate))
        task = asyncio.ensure_future(orch.start_scan("10.0.0.1-3", scan_type="quick"))
        while not orch.is_running:
            await asyncio.sleep(0)

        with pytest.raises(ScanAlreadyRunningError) as ei:
            await orch.start_scan("10.0.0.1", scan_type="quick")
        assert ei.value.hint
        with pytest.raises(ScanAlreadyRunningError):
            await orch.refresh()
        assert orch.get_progress()["total"] == 3

        gate.set()
        summary = await task
        assert summary.ok
        assert len(repo.list_runs()) == 1

    @pytest.mark.asyncio
    async def test_new_scan_allowed_after_completion(self, repo):
        orch = _orch(repo, FakeProber())
        await orch.start_scan("10.0.0.1", scan_type="quick")
        await orch.start_scan("10.0.0.1", scan_type="quick")
        assert len(repo.list_runs()) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs, error", [
        ({"range_spec": "10.0.0.9-1"}, RangeFormatError),
        ({"range_spec": "10.0.0.0/16"}, RangeTooLargeError),
        ({"range_spec": "10.0.0.1", "scan_type": "stealth"}, InvalidScanTypeError),
        ({}, RangeFormatError),
    ])
    async def test_invalid_input_changes_nothing(self, repo, kwargs, error):
        orch = _orch(repo, FakeProber())
        with pytest.raises(error):
            await orch.start_scan(**kwargs)
        assert orch.state is ScanState.IDLE
        assert repo.list_runs() == []

    @pytest.mark.asyncio
    async def test_auto_detect_without_interface(self, repo):
        parser = RangeParser(interface_lister=lambda: [])
        orch = _orch(repo, FakeProber(), range_parser=parser)
        with pytest.raises(NoRouteDetectedError):
            await orch.start_scan(auto_detect=True)
        assert orch.state is ScanState.IDLE


# ─── Refresh ──────────────────────────────────────────────────────────────────

class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_preserves_identity(self, repo):
        prober = FakeProber(up={"10.0.0.1": 1.0}, names={"10.0.0.1": "router.local"},
                            macs={"10.0.0.1": "aa:bb:cc:dd:ee:01"})
        orch = _orch(repo, prober)
        await orch.start_scan("10.0.0.1", scan_type="full")

        prober.names.clear()
        prober.up["10.0.0.1"] = 7.5
        summary = await orch.refresh(scan_type="full")
        e = repo.get_entry("10.0.0.1")
        assert summary.kind == "refresh"
        assert (e.hostname, e.mac, e.ping_latency) == ("router.local", "aa:bb:cc:dd:ee:01", 7.5)

        prober.up.clear()
        await orch.refresh()
        e = repo.get_entry("10.0.0.1")
        assert e.status == "offline"
        assert e.hostname == "router.local"

    @pytest.mark.asyncio
    async def test_refresh_targets_known_ips_only(self, repo):
        prober = FakeProber(up={"10.0.0.1": 1.0, "10.0.0.2": 1.0})
        orch = _orch(repo, prober)
        await orch.start_scan("10.0.0.1", scan_type="quick")
        prober.pinged.clear()

        summary = await orch.refresh(["10.0.0.1", "10.0.0.2"])
        assert prober.pinged == ["10.0.0.1"]
        assert summary.scanned == 1
        assert repo.get_entry("10.0.0.2") is None

    @pytest.mark.asyncio
    async def test_refresh_rejects_bad_ip(self, repo):
        orch = _orch(repo, FakeProber())
        with pytest.raises(RangeFormatError):
            await orch.refresh(["not-an-ip"])
        assert orch.state is ScanState.IDLE

    @pytest.mark.asyncio
    async def test_refresh_with_nothing_known(self, repo):
        summary = await _orch(repo, FakeProber()).refresh()
        assert summary.ok
        assert summary.scanned == 0


# ─── Failures ─────────────────────────────────────────────────────────────────

class TestFailures:

    @pytest.mark.asyncio
    async def test_transport_failure_keeps_partial_results(self, repo):
        prober = FakeProber(up={f"10.0.0.{i}": 1.0 for i in range(1, 6)}, fail_on="10.0.0.3")
        orch = _orch(repo, prober, profiles=_serial_profiles())
        summary = await orch.start_scan("10.0.0.1-5", scan_type="quick")

        assert summary.status == "failed"
        assert "not permitted" in summary.error
        assert summary.hint == "setcap"
        assert summary.found == 2
        assert repo.count_entries() == 2
        run = repo.get_run(summary.run_id)
        assert (run.status, run.found) == ("failed", 2)
        assert orch.state is ScanState.FAILED

        assert orch.consume_result() is summary
        assert orch.state is ScanState.IDLE
        assert orch.consume_result() is None

    @pytest.mark.asyncio
    async def test_persistence_failure_fails_run(self, repo, monkeypatch):
        orch = _orch(repo, FakeProber(up={"10.0.0.1": 1.0, "10.0.0.2": 1.0}),
                     profiles=_serial_profiles())
        original = repo.record_probe
        calls = []

        def flaky(entry, *args, **kwargs):
            calls.append(entry.ip)
            if len(calls) == 2:
                raise PersistenceError("disk I/O error")
            return original(entry, *args, **kwargs)

        monkeypatch.setattr(repo, "record_probe", flaky)
        summary = await orch.start_scan("10.0.0.1-2", scan_type="quick")
        assert summary.status == "failed"
        assert summary.error == "disk I/O error"
        assert repo.get_entry("10.0.0.1") is not None
        assert repo.get_entry("10.0.0.2") is None
        assert not orch.is_running


# ─── Config ───────────────────────────────────────────────────────────────────

class TestPriorityConfig:

    def test_persisted_config_wins_on_restart(self, repo):
        orch = ScanOrchestrator(repo, priority=PriorityConfig.default())
        orch.update_priority_config({"priority": ["scanner", "unifi", "freebox"]})
        again = ScanOrchestrator(repo, priority=PriorityConfig.default())
        assert again.get_priority_config().hostname_priority[0] is DetectionSource.SCANNER

    def test_invalid_update_keeps_current(self, repo):
        orch = ScanOrchestrator(repo)
        before = orch.get_priority_config()
        with pytest.raises(ValueError):
            orch.update_priority_config({"priority": ["scanner"]})
        assert orch.get_priority_config() == before
        assert repo.get_setting("priority") is None

    def test_manual_attribute_kind_checked(self, repo):
        with pytest.raises(ValueError):
            ScanOrchestrator(repo).set_manual_attribute("10.0.0.1", "mac", "x")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
