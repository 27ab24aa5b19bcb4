"""
Cache policy: validated, immutable configuration for the controller.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pagecache.exceptions import ConfigError

from .schedule import ScheduleSpec, parse_schedule
from .staleness import StalenessEvaluator
from .store import EntryStore, FileEntryStore, MemoryEntryStore, SQLiteEntryStore

if TYPE_CHECKING:
    from config.settings import Settings


BodyFilter = Callable[[bytes], bytes]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_timezone(name: str) -> tzinfo:
    """Map a timezone name to a tzinfo; raises ConfigError for unknown names."""
    if name.upper() in ("UTC", "Z"):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError("bad timezone", name) from e


@dataclass(frozen=True)
class CachePolicy:
    """
    Everything the controller needs to know about how to cache.

    Attributes:
        ttl: Fixed lifetime of an entry; None disables TTL expiry
        schedule: Recurrence string; None disables schedule expiry
        tz: Timezone the schedule is expressed in
        compress: Gzip transmitted bodies when the client accepts it
        compress_level: gzip level 1-9
        content_type: Content-Type sent with bodies served from the store
        reject_unsafe_methods: Answer non-GET requests with 405 instead of
            passing them to the handler
        body_filter: Applied to every transmitted body before compression;
            never to the stored body
        clock: Source of "now"
    """
    ttl: Optional[timedelta] = timedelta(seconds=300)
    schedule: Optional[str] = None
    tz: tzinfo = timezone.utc
    compress: bool = True
    compress_level: int = 6
    content_type: str = "text/html; charset=utf-8"
    reject_unsafe_methods: bool = False
    body_filter: Optional[BodyFilter] = None
    clock: Callable[[], datetime] = _utcnow

    def __post_init__(self):
        if self.ttl is not None and self.ttl < timedelta(0):
            raise ConfigError("bad ttl", f"{self.ttl.total_seconds():.0f}s")
        if not 1 <= self.compress_level <= 9:
            raise ConfigError("bad compress level", str(self.compress_level))
        if self.schedule is not None:
            # Fail at construction, not on the first request
            parse_schedule(self.schedule, tz=self.tz)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        body_filter: Optional[BodyFilter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "CachePolicy":
        ttl = None
        if settings.cache_ttl_seconds is not None:
            if settings.cache_ttl_seconds < 0:
                raise ConfigError("bad ttl", f"{settings.cache_ttl_seconds}s")
            ttl = timedelta(seconds=settings.cache_ttl_seconds)

        return cls(
            ttl=ttl,
            schedule=settings.cache_refresh_schedule or None,
            tz=resolve_timezone(settings.cache_schedule_timezone),
            compress=settings.cache_compress,
            compress_level=settings.cache_compress_level,
            content_type=settings.cache_content_type,
            reject_unsafe_methods=settings.cache_reject_unsafe_methods,
            body_filter=body_filter,
            clock=clock or _utcnow,
        )

    def schedule_for(self, now: datetime) -> Optional[ScheduleSpec]:
        """Parse the schedule for one cache session, resolving `*` against `now`."""
        if self.schedule is None:
            return None
        return parse_schedule(self.schedule, now=now, tz=self.tz)

    def evaluator(self, now: datetime) -> StalenessEvaluator:
        return StalenessEvaluator(ttl=self.ttl, schedule=self.schedule_for(now))

    def apply_filter(self, body: bytes) -> bytes:
        if self.body_filter is None:
            return body
        return self.body_filter(body)


def build_entry_store(
    settings: "Settings",
    clock: Optional[Callable[[], datetime]] = None,
) -> EntryStore:
    """Create the entry store backend named in settings."""
    backend = settings.cache_backend
    if backend == "file":
        return FileEntryStore(settings.cache_directory)
    if backend == "sqlite":
        return SQLiteEntryStore(settings.cache_directory / "entries.db", clock=clock)
    if backend == "memory":
        return MemoryEntryStore(clock=clock)
    raise ConfigError("unknown backend", backend)
