"""
Fly8 Sync - live synchronization layer for the Fly8 admin dashboard

Event channel, cached query store with stale-while-revalidate, polling
fallback and event-driven cache invalidation.
"""

__version__ = "1.0.0"

from fly8sync.config import SyncConfig, PollingOptions
from fly8sync.query_key import QueryKey
from fly8sync.store import QueryStore, QueryObserver, CacheEntry
from fly8sync.dashboard import LiveDashboard

__all__ = [
    "SyncConfig",
    "PollingOptions",
    "QueryKey",
    "QueryStore",
    "QueryObserver",
    "CacheEntry",
    "LiveDashboard",
]
