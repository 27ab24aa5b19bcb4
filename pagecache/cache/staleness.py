"""
Staleness evaluation: fixed TTL blended with the recurring refresh schedule.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterator, Optional

from .schedule import ScheduleSpec


def _localize(moment: datetime, tz: tzinfo) -> datetime:
    """Express `moment` in `tz`; naive datetimes are taken to be in `tz` already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def _utc(moment: datetime) -> datetime:
    """
    Absolute instant for arithmetic and ordering.

    Aware datetimes sharing one ZoneInfo compare and subtract by wall
    clock, which is off by the DST shift on transition days.
    """
    return moment.astimezone(timezone.utc)


def _walk(spec: ScheduleSpec, start: datetime, end: Optional[datetime]) -> Iterator[datetime]:
    """
    Yield schedule instants in chronological order within [start, end].

    Every field tuple is sorted, so year/month/day/hour/minute order is
    time order. Years, months and dates outside the window are pruned
    before the hour/minute loops run.
    """
    weekdays = set(spec.weekdays)
    start_date = start.date()
    end_date = end.date() if end is not None else None
    start_utc = _utc(start)
    end_utc = _utc(end) if end is not None else None

    for year in spec.years:
        if year < start.year:
            continue
        if end is not None and year > end.year:
            return
        for month in spec.months:
            if (year, month) < (start.year, start.month):
                continue
            if end is not None and (year, month) > (end.year, end.month):
                return
            for day in spec.days:
                try:
                    candidate_date = date(year, month, day)
                except ValueError:
                    continue  # e.g. 31 in a 30-day month
                if candidate_date < start_date:
                    continue
                if end_date is not None and candidate_date > end_date:
                    return
                if candidate_date.isoweekday() not in weekdays:
                    continue
                for hour in spec.hours:
                    for minute in spec.minutes:
                        instant = datetime(year, month, day, hour, minute, tzinfo=spec.tz)
                        if _utc(instant) < start_utc:
                            continue
                        if end_utc is not None and _utc(instant) > end_utc:
                            return
                        yield instant


def is_stale(spec: ScheduleSpec, stored_at: datetime, now: datetime) -> bool:
    """
    True if a scheduled refresh instant falls in (stored_at, now].

    Args:
        spec: Parsed schedule
        stored_at: When the entry was written
        now: Current instant
    """
    stored_at = _localize(stored_at, spec.tz)
    now = _localize(now, spec.tz)
    if _utc(now) <= _utc(stored_at):
        return False

    for instant in _walk(spec, stored_at, now):
        if _utc(instant) > _utc(stored_at):
            return True
    return False


def next_occurrence(spec: ScheduleSpec, now: datetime) -> Optional[datetime]:
    """
    Earliest scheduled instant at or after `now`, or None if there is none.

    Wildcard fields are widened to their following cycle first.
    """
    now = _localize(now, spec.tz)
    return next(_walk(spec.with_rollover(), now, None), None)


def effective_ttl(
    ttl: Optional[timedelta],
    next_at: Optional[datetime],
    stored_at: datetime,
) -> Optional[timedelta]:
    """
    Lifetime advertised to clients: the shorter of the fixed TTL and the
    time from `stored_at` to the next scheduled refresh.
    """
    schedule_ttl = None
    if next_at is not None:
        schedule_ttl = _utc(next_at) - _utc(_localize(stored_at, next_at.tzinfo))

    if ttl is not None and schedule_ttl is not None:
        return min(ttl, schedule_ttl)
    if ttl is not None:
        return ttl
    return schedule_ttl


@dataclass(frozen=True)
class StalenessDecision:
    """Outcome of evaluating one entry at one instant. Never persisted."""
    is_stale: bool
    stored_at: datetime
    effective_ttl: Optional[timedelta] = None
    ttl_expired: bool = False
    schedule_crossed: bool = False
    next_refresh: Optional[datetime] = None

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.effective_ttl is None:
            return None
        if self.stored_at.tzinfo is None:
            return self.stored_at + self.effective_ttl
        return _utc(self.stored_at) + self.effective_ttl

    def max_age(self, now: datetime) -> Optional[int]:
        """Seconds left before expiry, floored at zero."""
        expires_at = self.expires_at
        if expires_at is None:
            return None
        remaining = (expires_at - _localize(now, expires_at.tzinfo)).total_seconds()
        return max(0, int(remaining))


class StalenessEvaluator:
    """
    Judges stored entries against a fixed TTL and a refresh schedule.

    Either signal may be disabled with None. Cheap enough to build and
    run on every request.
    """

    def __init__(
        self,
        ttl: Optional[timedelta] = None,
        schedule: Optional[ScheduleSpec] = None,
    ):
        self.ttl = ttl
        self.schedule = schedule

    def evaluate(self, stored_at: datetime, now: datetime) -> StalenessDecision:
        ttl_expired = self.ttl is not None and now > stored_at + self.ttl

        schedule_crossed = False
        next_refresh = None
        if self.schedule is not None:
            schedule_crossed = is_stale(self.schedule, stored_at, now)
            next_refresh = next_occurrence(self.schedule, now)

        return StalenessDecision(
            is_stale=ttl_expired or schedule_crossed,
            stored_at=stored_at,
            effective_ttl=effective_ttl(self.ttl, next_refresh, stored_at),
            ttl_expired=ttl_expired,
            schedule_crossed=schedule_crossed,
            next_refresh=next_refresh,
        )
