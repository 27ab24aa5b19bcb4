"""
Full-page response cache: respond first, process later.
"""
from .core import TERMINAL_STATES, CacheEntry, CacheState, CaptureBuffer, RequestContext
from .schedule import ScheduleSpec, parse_schedule
from .staleness import (
    StalenessDecision,
    StalenessEvaluator,
    effective_ttl,
    is_stale,
    next_occurrence,
)
from .store import (
    EntryStore,
    FileEntryStore,
    MemoryEntryStore,
    SQLiteEntryStore,
    derive_key,
    shard_key,
)
from .observer import ResponseStatusObserver
from .policy import CachePolicy, build_entry_store, resolve_timezone
from .controller import ServeStoreController
from .middleware import CacheStats, PageCacheMiddleware

__all__ = [
    # Core types
    "CacheEntry",
    "CacheState",
    "TERMINAL_STATES",
    "CaptureBuffer",
    "RequestContext",
    # Schedule
    "ScheduleSpec",
    "parse_schedule",
    # Staleness
    "StalenessDecision",
    "StalenessEvaluator",
    "effective_ttl",
    "is_stale",
    "next_occurrence",
    # Storage
    "EntryStore",
    "FileEntryStore",
    "MemoryEntryStore",
    "SQLiteEntryStore",
    "derive_key",
    "shard_key",
    # Serve/store
    "ResponseStatusObserver",
    "CachePolicy",
    "build_entry_store",
    "resolve_timezone",
    "ServeStoreController",
    # ASGI
    "CacheStats",
    "PageCacheMiddleware",
]
