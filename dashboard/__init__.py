"""lanwatch Dashboard — Public API

Read-only Flask JSON API over the scan store.

Usage:
    from dashboard.app import create_app, run_dashboard
"""
from dashboard.app import create_app, run_dashboard

__all__ = [
    "create_app",
    "run_dashboard",
]
