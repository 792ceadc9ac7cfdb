"""lanwatch Utils"""
from utils.logger     import get_logger, log
from utils.validators import validate_ipv4, normalize_mac, sanitize_name, validate_scan_type
from utils.constants  import ScanType, HostStatus, RunStatus, RunKind, PROBE_PROFILES
__all__ = ["get_logger", "log", "validate_ipv4", "normalize_mac", "sanitize_name",
           "validate_scan_type", "ScanType", "HostStatus", "RunStatus", "RunKind",
           "PROBE_PROFILES"]
