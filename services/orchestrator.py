"""
services/orchestrator.py
Scan lifecycle: Idle → Running → {Completed, Failed} → (consumed) → Idle.

One orchestrator owns the single-flight guarantee for the whole process:
a second start while Running fails with ScanAlreadyRunningError and
touches nothing. The running check and the transition to Running happen
without an intervening await, so two coroutines cannot both pass it.

Per probed IP the orchestrator merges identity attributes and writes the
current-state row plus one history row in one repository transaction.
Transport and persistence failures end the run as Failed and come back
as a ScanSummary value; rows committed before the failure stay.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from core.detection_merger import (ATTRIBUTE_KINDS, DetectedAttributes, DetectionMerger,
                                   DetectionSource, Observation, PriorityConfig, SourcedValue)
from core.probe_engine import ProbeEngine, ProbeResult, ScanTarget
from core.range_parser import RangeParser
from core.sources import AttributeSource
from database.models import NetworkScanEntry
from database.repository import Repository
from utils.constants import HostStatus, RunKind, RunStatus, ScanType
from utils.errors import (PersistenceError, ProbeTransportError, RangeFormatError,
                          ScanAlreadyRunningError)
from utils.logger import get_logger
from utils.timeutil import format_ts
from utils.validators import sanitize_name, validate_ipv4, validate_scan_type

log = get_logger("lanwatch.orchestrator")

PRIORITY_SETTING = "priority"


# ─── State / Value Types ──────────────────────────────────────────────────────

class ScanState(str, Enum):
    IDLE      = "idle"
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"


@dataclass
class ScanProgress:
    kind:          str
    scan_type:     str
    target_range:  Optional[str]
    total:         int
    scanned:       int = 0
    found:         int = 0
    current_phase: str = "starting"
    run_id:        Optional[int] = None

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        return min(100, round(self.scanned * 100 / self.total))

    def to_dict(self) -> dict:
        d = asdict(self)
        d["percentage"] = self.percentage
        return d


@dataclass(frozen=True)
class ScanSummary:
    run_id:       Optional[int]
    kind:         str
    scan_type:    str
    target_range: Optional[str]
    status:       str
    scanned:      int
    found:        int
    new:          int
    offline:      int
    started_at:   str
    finished_at:  str
    duration_s:   float
    error:        Optional[str] = None
    hint:         Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.COMPLETED.value

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Counters:
    found:   int = 0
    new:     int = 0
    offline: int = 0


ProgressCallback = Callable[[ScanProgress], None]
ResultHandler = Callable[[Optional[int], ScanType, ProbeResult, Sequence[Observation], _Counters], None]


# ─── Orchestrator ─────────────────────────────────────────────────────────────

class ScanOrchestrator:
    """Owns the scan state machine; built once per process."""

    def __init__(
        self,
        repo: Repository,
        engine: Optional[ProbeEngine] = None,
        range_parser: Optional[RangeParser] = None,
        merger: Optional[DetectionMerger] = None,
        priority: Optional[PriorityConfig] = None,
        sources: Iterable[AttributeSource] = (),
        progress_cb: Optional[ProgressCallback] = None,
    ):
        self._repo = repo
        self._engine = engine or ProbeEngine()
        self._parser = range_parser or RangeParser()
        self._merger = merger or DetectionMerger()
        self._sources: List[AttributeSource] = list(sources)
        self._progress_cb = progress_cb
        self._priority = self._load_priority() or priority or PriorityConfig.default()

        self._state = ScanState.IDLE
        self._progress: Optional[ScanProgress] = None
        self._last: Optional[ScanSummary] = None

    # ── State queries ─────────────────────────────────────────────────────────

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ScanState.RUNNING

    @property
    def last_result(self) -> Optional[ScanSummary]:
        return self._last

    def get_progress(self) -> Optional[dict]:
        """None when idle, else {scanned, total, percentage, current_phase, ...}."""
        if self._state is ScanState.IDLE or self._progress is None:
            return None
        return self._progress.to_dict()

    def consume_result(self) -> Optional[ScanSummary]:
        """Hand out the finished run's summary and return to Idle."""
        if self._state in (ScanState.COMPLETED, ScanState.FAILED):
            self._state = ScanState.IDLE
            self._progress = None
            return self._last
        return None

    def set_progress_callback(self, cb: Optional[ProgressCallback]) -> None:
        self._progress_cb = cb

    # ── Scan / refresh ────────────────────────────────────────────────────────

    async def start_scan(
        self,
        range_spec: Optional[str] = None,
        auto_detect: bool = False,
        scan_type=ScanType.FULL,
    ) -> ScanSummary:
        """
        Discover hosts in a range and merge their identity attributes.

        Raises (before any state change) ScanAlreadyRunningError,
        InvalidScanTypeError, RangeFormatError, RangeTooLargeError or
        NoRouteDetectedError. Run failures come back in the summary.
        """
        self._ensure_not_running()
        scan_type = validate_scan_type(scan_type)
        if range_spec:
            spec = self._parser.parse(range_spec)
        elif auto_detect:
            spec = self._parser.auto_detect()
        else:
            raise RangeFormatError("No range given",
                                   hint="Pass a range such as 192.168.1.0/24 or enable auto-detect")

        targets = [ScanTarget(ip) for ip in spec]
        self._begin(RunKind.SCAN, scan_type, spec.normalized, len(targets))
        return await self._run(RunKind.SCAN, scan_type, spec.normalized, targets,
                               self._apply_scan_result)

    async def refresh(
        self,
        ips: Optional[Iterable[str]] = None,
        scan_type=ScanType.QUICK,
    ) -> ScanSummary:
        """
        Re-probe already known IPs (all of them when ips is None).

        Only status / latency / last_seen change; hostname, vendor and MAC
        learned earlier are kept as they are.
        """
        self._ensure_not_running()
        scan_type = validate_scan_type(scan_type)
        if ips is None:
            known = self._repo.known_targets()
        else:
            known = []
            for ip in ips:
                ok, err = validate_ipv4(ip)
                if not ok:
                    raise RangeFormatError(err)
                entry = self._repo.get_entry(ip.strip())
                if entry is not None:
                    known.append((entry.ip, entry.mac))

        targets = [ScanTarget(ip, mac) for ip, mac in known]
        self._begin(RunKind.REFRESH, scan_type, None, len(targets))
        return await self._run(RunKind.REFRESH, scan_type, None, targets,
                               self._apply_refresh_result)

    # ── Attribute priority / manual edits ─────────────────────────────────────

    def get_priority_config(self) -> PriorityConfig:
        return self._priority

    def update_priority_config(self, data) -> PriorityConfig:
        """Validate, persist and activate. Raises InvalidPriorityConfigError."""
        config = data if isinstance(data, PriorityConfig) else PriorityConfig.from_dict(data)
        self._repo.set_setting(PRIORITY_SETTING, config.to_dict())
        self._priority = config
        log.info(f"Attribute priority updated: {config.to_dict()}")
        return config

    def set_manual_attribute(self, ip: str, kind: str, value: Optional[str]) -> bool:
        """Pin hostname or vendor for one IP; scans never overwrite it."""
        if kind not in ATTRIBUTE_KINDS:
            raise ValueError(f"Unknown attribute {kind!r} (expected hostname or vendor)")
        return self._repo.set_manual_attribute(ip, kind, sanitize_name(value))

    def delete_entry(self, ip: str) -> bool:
        return self._repo.delete_entry(ip)

    # ── Run driver ────────────────────────────────────────────────────────────

    def _ensure_not_running(self) -> None:
        if self._state is ScanState.RUNNING:
            p = self._progress
            raise ScanAlreadyRunningError(
                f"A {p.kind if p else 'scan'} is already running"
                + (f" ({p.scanned}/{p.total})" if p else ""),
                hint="Wait for it to finish and retry",
            )

    def _begin(self, kind: RunKind, scan_type: ScanType,
               target_range: Optional[str], total: int) -> None:
        self._state = ScanState.RUNNING
        self._progress = ScanProgress(kind=kind.value, scan_type=scan_type.value,
                                      target_range=target_range, total=total)
        log.info(f"{kind.value.capitalize()} started: {target_range or 'known hosts'} "
                 f"({total} targets, {scan_type.value})")

    async def _run(
        self,
        kind: RunKind,
        scan_type: ScanType,
        target_range: Optional[str],
        targets: List[ScanTarget],
        handler: ResultHandler,
    ) -> ScanSummary:
        t0 = time.monotonic()
        started_at = format_ts()
        counters = _Counters()
        run_id: Optional[int] = None
        outcome = None
        try:
            run_id = self._repo.create_run(kind.value, scan_type.value, target_range)
            self._progress.run_id = run_id

            observations: Dict[str, List[Observation]] = {}
            if kind is RunKind.SCAN and scan_type is ScanType.FULL and self._sources:
                self._set_phase("collecting")
                observations = await self._collect_observations([t.ip for t in targets])

            self._set_phase("probing")
            probes = self._engine.probe(targets, scan_type)
            try:
                async for result in probes:
                    handler(run_id, scan_type, result, observations.get(result.ip, ()), counters)
                    self._progress.scanned += 1
                    self._progress.found = counters.found
                    self._notify()
            finally:
                # stops in-flight workers when a write fails mid-run
                await probes.aclose()
            outcome = (RunStatus.COMPLETED, None, None)
        except (ProbeTransportError, PersistenceError) as exc:
            log.error(f"{kind.value.capitalize()} failed: {exc}")
            outcome = (RunStatus.FAILED, str(exc), exc.hint)
        finally:
            if outcome is None:
                outcome = (RunStatus.FAILED, "aborted by an unexpected error", None)
            summary = self._finalize(kind, scan_type, target_range, run_id, counters,
                                     outcome, started_at, time.monotonic() - t0)
        return summary

    def _finalize(self, kind, scan_type, target_range, run_id, counters,
                  outcome, started_at, elapsed) -> ScanSummary:
        status, error, hint = outcome
        scanned = self._progress.scanned if self._progress else 0
        if run_id is not None:
            try:
                if not self._repo.finish_run(run_id, status.value, scanned, counters.found, error):
                    # another process already finalized this row
                    log.error(f"Run {run_id} was no longer running; totals not recorded")
                    status = RunStatus.FAILED
                    error = error or "run record was finalized by another process"
            except PersistenceError as exc:
                log.error(f"Could not finalize run {run_id}: {exc}")
                if status is RunStatus.COMPLETED:
                    status, error = RunStatus.FAILED, str(exc)

        summary = ScanSummary(
            run_id=run_id, kind=kind.value, scan_type=scan_type.value,
            target_range=target_range, status=status.value,
            scanned=scanned, found=counters.found, new=counters.new,
            offline=counters.offline, started_at=started_at, finished_at=format_ts(),
            duration_s=round(elapsed, 3), error=error, hint=hint,
        )
        self._last = summary
        self._state = ScanState.COMPLETED if status is RunStatus.COMPLETED else ScanState.FAILED
        if self._progress is not None:
            self._progress.current_phase = status.value
        self._notify()
        log.info(f"{kind.value.capitalize()} #{run_id} {status.value}: "
                 f"{counters.found}/{scanned} up, {counters.new} new, "
                 f"{counters.offline} went offline in {elapsed:.1f}s")
        return summary

    def _set_phase(self, phase: str) -> None:
        self._progress.current_phase = phase
        self._notify()

    def _notify(self) -> None:
        if self._progress_cb is not None and self._progress is not None:
            self._progress_cb(self._progress)

    async def _collect_observations(self, ips: List[str]) -> Dict[str, List[Observation]]:
        collected: Dict[str, List[Observation]] = {}
        for src in self._sources:
            try:
                found = await src.collect(ips)
            except Exception as exc:  # integration down: scan continues without it
                log.warning(f"Detection source {src.source.value} unavailable: {exc}")
                continue
            for ip, obs in found.items():
                collected.setdefault(ip, []).append(obs)
        return collected

    # ── Per-IP result handling ────────────────────────────────────────────────

    def _apply_scan_result(self, run_id: Optional[int], scan_type: ScanType,
                           result: ProbeResult, external: Sequence[Observation],
                           counters: _Counters) -> None:
        existing = self._repo.get_entry(result.ip)

        if not result.reachable:
            # never-seen hosts that are down leave no trace
            if existing is None:
                return
            entry = replace(existing, status=HostStatus.OFFLINE.value,
                            ping_latency=None, scan_type=scan_type.value)
            self._repo.record_probe(entry, run_id, result.timestamp)
            counters.offline += 1
            return

        scanner = Observation(DetectionSource.SCANNER, hostname=result.hostname,
                              vendor=result.vendor, mac=result.mac)
        merged = self._merger.merge(result.ip, _attributes_of(existing),
                                    [scanner, *external], self._priority)
        entry = NetworkScanEntry(
            ip=result.ip,
            status=HostStatus.ONLINE.value,
            first_seen=existing.first_seen if existing else result.timestamp,
            last_seen=result.timestamp,
            mac=merged.mac,
            hostname=merged.hostname.value if merged.hostname else None,
            hostname_source=merged.hostname.source.value if merged.hostname else None,
            vendor=merged.vendor.value if merged.vendor else None,
            vendor_source=merged.vendor.source.value if merged.vendor else None,
            ping_latency=result.latency_ms,
            scan_type=scan_type.value,
        )
        self._repo.record_probe(entry, run_id, result.timestamp)
        counters.found += 1
        if existing is None:
            counters.new += 1
            log.info(f"New host {result.ip}"
                     + (f" ({entry.hostname})" if entry.hostname else ""))

    def _apply_refresh_result(self, run_id: Optional[int], scan_type: ScanType,
                              result: ProbeResult, external: Sequence[Observation],
                              counters: _Counters) -> None:
        existing = self._repo.get_entry(result.ip)
        if existing is None:
            return
        if result.reachable:
            entry = replace(existing, status=HostStatus.ONLINE.value,
                            ping_latency=result.latency_ms, last_seen=result.timestamp,
                            scan_type=scan_type.value)
        else:
            entry = replace(existing, status=HostStatus.OFFLINE.value,
                            ping_latency=None, scan_type=scan_type.value)
        if self._repo.record_probe(entry, run_id, result.timestamp, create=False) is None:
            return
        if result.reachable:
            counters.found += 1
        else:
            counters.offline += 1

    def _load_priority(self) -> Optional[PriorityConfig]:
        stored = self._repo.get_setting(PRIORITY_SETTING)
        if not stored:
            return None
        try:
            return PriorityConfig.from_dict(stored)
        except ValueError as exc:
            log.warning(f"Stored attribute priority ignored: {exc}")
            return None


def _attributes_of(entry: Optional[NetworkScanEntry]) -> Optional[DetectedAttributes]:
    if entry is None:
        return None
    return DetectedAttributes(
        hostname=_sourced(entry.hostname, entry.hostname_source),
        vendor=_sourced(entry.vendor, entry.vendor_source),
        mac=entry.mac,
    )


def _sourced(value: Optional[str], source: Optional[str]) -> Optional[SourcedValue]:
    if not value:
        return None
    try:
        src = DetectionSource(source) if source else DetectionSource.SCANNER
    except ValueError:
        src = DetectionSource.SCANNER
    return SourcedValue(value, src)


__all__ = ["ScanState", "ScanProgress", "ScanSummary", "ScanOrchestrator"]
