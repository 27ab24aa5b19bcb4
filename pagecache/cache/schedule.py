"""
Recurrence schedule parsing.

A schedule is six whitespace-separated fields:

    minute  hour  day-of-month  month  day-of-week  year

Each field is one of:
- `*`            the current value of the field at parse time
- `low-high`     inclusive range, optionally `low-high/step`
- `a,b,c`        explicit list of non-negative integers

Example: `0 6,18 1-31 1-12 1-5 2020-2030` refreshes at 06:00 and 18:00
on weekdays.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Dict, FrozenSet, Optional, Tuple

from pagecache.exceptions import ConfigError


FIELD_NAMES: Tuple[str, ...] = ("minute", "hour", "day", "month", "weekday", "year")

# Inclusive domain of each field
FIELD_DOMAINS: Dict[str, Tuple[int, int]] = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day": (1, 31),
    "month": (1, 12),
    "weekday": (1, 7),      # ISO, Monday=1
    "year": (1900, 3000),
}

_RANGE_RE = re.compile(r"^(\d+)-(\d+)(?:/(\d+))?$")
_LIST_RE = re.compile(r"^[\d,]+$")


@dataclass(frozen=True)
class ScheduleSpec:
    """
    A parsed recurrence schedule: one sorted value tuple per field.

    `wildcards` names the fields that were `*` and were resolved from
    `parsed_at`. Candidate instants are built in `tz`.
    """
    minutes: Tuple[int, ...]
    hours: Tuple[int, ...]
    days: Tuple[int, ...]
    months: Tuple[int, ...]
    weekdays: Tuple[int, ...]
    years: Tuple[int, ...]
    wildcards: FrozenSet[str] = frozenset()
    parsed_at: Optional[datetime] = None
    tz: tzinfo = timezone.utc

    def values(self, name: str) -> Tuple[int, ...]:
        return {
            "minute": self.minutes,
            "hour": self.hours,
            "day": self.days,
            "month": self.months,
            "weekday": self.weekdays,
            "year": self.years,
        }[name]

    def with_rollover(self) -> "ScheduleSpec":
        """
        Widen wildcard fields so the next cycle is reachable.

        A wildcard resolved to "this hour" only ever names one instant.
        Looking forward, the field also needs its following value and
        the value it wraps around to (e.g. hour 11 -> 12 and 0).
        """
        if not self.wildcards:
            return self

        widened: Dict[str, Tuple[int, ...]] = {}
        for name in FIELD_NAMES:
            values = set(self.values(name))
            if name in self.wildcards and values:
                low, high = FIELD_DOMAINS[name]
                following = max(values) + 1
                if following <= high:
                    values.add(following)
                if name != "year":
                    values.add(low)
            widened[name] = tuple(sorted(values))

        return ScheduleSpec(
            minutes=widened["minute"],
            hours=widened["hour"],
            days=widened["day"],
            months=widened["month"],
            weekdays=widened["weekday"],
            years=widened["year"],
            wildcards=self.wildcards,
            parsed_at=self.parsed_at,
            tz=self.tz,
        )


def _current_value(name: str, now: datetime) -> int:
    if name == "minute":
        return now.minute
    if name == "hour":
        return now.hour
    if name == "day":
        return now.day
    if name == "month":
        return now.month
    if name == "weekday":
        return now.isoweekday()
    return now.year


def _parse_field(name: str, token: str, now: datetime) -> Tuple[int, ...]:
    if token == "*":
        return (_current_value(name, now),)

    match = _RANGE_RE.match(token)
    if match:
        low, high = int(match.group(1)), int(match.group(2))
        if low >= high:
            raise ConfigError("inverted range", f"{name} field '{token}'")
        step = int(match.group(3)) if match.group(3) is not None else 1
        if step < 1:
            raise ConfigError("bad step", f"{name} field '{token}'")
        return tuple(range(low, high + 1, step))

    if _LIST_RE.match(token):
        # Empty tokens ("1,,2") are dropped
        return tuple(sorted({int(part) for part in token.split(",") if part}))

    raise ConfigError("unsupported token", f"{name} field '{token}'")


def _check_domain(name: str, values: Tuple[int, ...]) -> None:
    low, high = FIELD_DOMAINS[name]
    for value in values:
        if value < low or value > high:
            raise ConfigError(
                "out of range",
                f"{value} {name} (expected {low}-{high})",
            )


def parse_schedule(
    text: str,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> ScheduleSpec:
    """
    Parse a 6-field recurrence string.

    Args:
        text: Schedule string, fields separated by whitespace
        now: Instant used to resolve `*` fields (defaults to the clock)
        tz: Timezone the schedule is expressed in (defaults to UTC)

    Returns:
        Immutable ScheduleSpec

    Raises:
        ConfigError: On malformed or out-of-range fields
    """
    tz = tz or timezone.utc
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    else:
        now = now.astimezone(tz)

    tokens = text.split()
    if len(tokens) != len(FIELD_NAMES):
        raise ConfigError(
            "field count",
            f"expected {len(FIELD_NAMES)} fields, got {len(tokens)} in '{text}'",
        )

    resolved: Dict[str, Tuple[int, ...]] = {}
    for name, token in zip(FIELD_NAMES, tokens):
        values = _parse_field(name, token, now)
        _check_domain(name, values)
        resolved[name] = values

    return ScheduleSpec(
        minutes=resolved["minute"],
        hours=resolved["hour"],
        days=resolved["day"],
        months=resolved["month"],
        weekdays=resolved["weekday"],
        years=resolved["year"],
        wildcards=frozenset(name for name, token in zip(FIELD_NAMES, tokens) if token == "*"),
        parsed_at=now,
        tz=tz,
    )
