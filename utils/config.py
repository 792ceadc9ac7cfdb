"""
utils/config.py
YAML configuration loader.

A missing file yields defaults. Only the top-level shape is checked here;
scheduler / retention / priority sections are validated by the services
that own them.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Optional

import yaml

from utils.constants import DEFAULT_RETENTION_CONFIG, DEFAULT_SCHEDULER_CONFIG
from utils.logger import get_logger

log = get_logger("lanwatch.config")


@dataclass
class ScanSettings:
    default_range: Optional[str] = None   # None → auto-detect
    auto_detect: bool = True
    private_only: bool = True


@dataclass
class DashboardSettings:
    host: str = "127.0.0.1"
    port: int = 5000


@dataclass
class Settings:
    db_path: str = "lanwatch.db"
    log_level: str = "INFO"
    scan: ScanSettings = field(default_factory=ScanSettings)
    scheduler: dict = field(default_factory=lambda: copy.deepcopy(DEFAULT_SCHEDULER_CONFIG))
    retention: dict = field(default_factory=lambda: dict(DEFAULT_RETENTION_CONFIG))
    priority: dict = field(default_factory=dict)
    dashboard: DashboardSettings = field(default_factory=DashboardSettings)


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"config section {key!r} must be a mapping")
    return value


def load_settings(path: Optional[str]) -> Settings:
    """Load settings from a YAML file, falling back to defaults."""
    raw: dict = {}
    if path:
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except FileNotFoundError:
            log.debug(f"Config {path} not found, using defaults")
    if not isinstance(raw, dict):
        raise ValueError(f"config file {path} must contain a mapping")

    settings = Settings()
    settings.db_path = raw.get("db_path", settings.db_path)
    settings.log_level = str(raw.get("log_level", settings.log_level))

    scan = _section(raw, "scan")
    settings.scan = ScanSettings(
        default_range=scan.get("default_range"),
        auto_detect=bool(scan.get("auto_detect", True)),
        private_only=bool(scan.get("private_only", True)),
    )

    sched = _section(raw, "scheduler")
    for key, value in sched.items():
        if isinstance(value, dict) and isinstance(settings.scheduler.get(key), dict):
            settings.scheduler[key].update(value)
        else:
            settings.scheduler[key] = value

    settings.retention.update(_section(raw, "retention"))
    settings.priority = _section(raw, "priority")

    dash = _section(raw, "dashboard")
    settings.dashboard = DashboardSettings(
        host=dash.get("host", "127.0.0.1"),
        port=int(dash.get("port", 5000)),
    )
    return settings


__all__ = ["Settings", "ScanSettings", "DashboardSettings", "load_settings"]
