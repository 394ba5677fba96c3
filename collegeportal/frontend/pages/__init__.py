"""
Frontend Pages - Page-Specific Handlers
=======================================

    dashboard.py   DashboardLoader (parallel branches, per-branch fallback)
    handlers.py    PageHandlers for profile, matching, scholarships, forecaster
"""

from .dashboard import DashboardLoader
from .handlers import PageHandlers, get_page_handlers

__all__ = [
    "DashboardLoader",
    "PageHandlers",
    "get_page_handlers",
]
