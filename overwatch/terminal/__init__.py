"""
Overwatch Data Terminal

Fetch -> reconcile -> persist. Entry point: python -m overwatch.terminal.fetch_cycle
"""

from .models import FetchStatus, FetchResult, HealthEntry, utc_timestamp
from .sources import SourceAdapter, SourceShapeError, SourceSkipped
from .reconcile import reconcile, summarize
from .state_store import StateStore

__all__ = [
    "FetchStatus",
    "FetchResult",
    "HealthEntry",
    "utc_timestamp",
    "SourceAdapter",
    "SourceShapeError",
    "SourceSkipped",
    "reconcile",
    "summarize",
    "StateStore",
]
