"""
lanwatch Services — Public API

from services import build_services, ScanOrchestrator, ScanScheduler, RetentionService
"""
from services.orchestrator import ScanOrchestrator, ScanState, ScanSummary, ScanProgress
from services.scheduler    import ScanScheduler, SchedulerConfig, TriggerConfig
from services.retention    import RetentionService, RetentionConfig, PurgeCategory, PurgeReport
from services.periodic     import PeriodicTask
from services.container    import Services, build_services

__all__ = [
    "ScanOrchestrator", "ScanState", "ScanSummary", "ScanProgress",
    "ScanScheduler", "SchedulerConfig", "TriggerConfig",
    "RetentionService", "RetentionConfig", "PurgeCategory", "PurgeReport",
    "PeriodicTask", "Services", "build_services",
]
