"""
services/container.py
Builds the long-lived service objects once per process and wires them
together. Callers (CLI, daemon, tests) receive them by reference.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

from core.detection_merger import PriorityConfig
from core.probe_engine import ProbeEngine, SystemProber
from core.range_parser import RangeParser
from core.sources import AttributeSource
from core.vendor import OuiVendorLookup
from database.repository import Repository
from services.orchestrator import ScanOrchestrator
from services.retention import RetentionConfig, RetentionService
from services.scheduler import ScanScheduler, SchedulerConfig
from utils.config import Settings
from utils.logger import get_logger

log = get_logger("lanwatch.services")


@dataclass
class Services:
    settings:     Settings
    repo:         Repository
    orchestrator: ScanOrchestrator
    scheduler:    ScanScheduler
    retention:    RetentionService
    startup_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def recover_stale_runs(self) -> int:
        """Fail runs a crashed process left 'running'.

        Only a process that is about to own scans may call this; read-only
        commands sharing the store with a live daemon must not.
        """
        return self.repo.fail_stale_runs()

    async def start(self, startup_refresh: bool = True) -> None:
        """Start timers; optionally kick off one refresh of known hosts."""
        self.recover_stale_runs()
        self.scheduler.start()
        self.retention.start()
        if startup_refresh and self.repo.known_targets():
            log.info("Startup refresh of known hosts")
            self.startup_task = asyncio.ensure_future(self.scheduler.run_refresh_tick())

    def shutdown(self) -> None:
        if self.startup_task is not None and not self.startup_task.done():
            self.startup_task.cancel()
        self.startup_task = None
        self.scheduler.shutdown()
        self.retention.stop()


def build_services(
    settings: Settings,
    repo: Optional[Repository] = None,
    engine: Optional[ProbeEngine] = None,
    sources: Iterable[AttributeSource] = (),
) -> Services:
    """Open the store and build every service. Touches no scan runs."""
    if repo is None:
        repo = Repository(settings.db_path)


    orchestrator = ScanOrchestrator(
        repo,
        engine=engine or ProbeEngine(SystemProber(), OuiVendorLookup()),
        range_parser=RangeParser(private_only=settings.scan.private_only),
        priority=PriorityConfig.from_dict(settings.priority),
        sources=sources,
    )
    scheduler = ScanScheduler(
        orchestrator,
        repo,
        config=SchedulerConfig.from_dict(settings.scheduler),
        default_range=settings.scan.default_range,
        auto_detect=settings.scan.auto_detect,
    )
    retention = RetentionService(repo, RetentionConfig.from_dict(settings.retention))
    return Services(settings, repo, orchestrator, scheduler, retention)


__all__ = ["Services", "build_services"]
