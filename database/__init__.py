"""lanwatch Database — sqlite3 repository, schema and migrations"""
from database.models import NetworkScanEntry, HistoryEntry, ScanRun
from database.repository import Repository, SORT_KEYS
from database.migrations import migrate

__all__ = ["Repository", "SORT_KEYS", "NetworkScanEntry", "HistoryEntry", "ScanRun", "migrate"]
