"""
Unit tests for staleness evaluation (fixed TTL + refresh schedule).
"""
import pytest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from pagecache.cache.schedule import parse_schedule
from pagecache.cache.staleness import (
    StalenessEvaluator,
    effective_ttl,
    is_stale,
    next_occurrence,
)


def at(day, hour, minute=0, second=0):
    """An instant in March 2024, UTC. 15 March 2024 is a Friday."""
    return datetime(2024, 3, day, hour, minute, second, tzinfo=timezone.utc)


# =============================================================================
# Schedule window
# =============================================================================

def test_hourly_schedule_crossing_the_hour_is_stale():
    """Stored 10:30, request at 11:05 crossed the 11:00 refresh."""
    now = at(15, 11, 5)
    spec = parse_schedule("0 * * * * *", now=now)
    assert is_stale(spec, at(15, 10, 30), now) is True


def test_hourly_schedule_within_the_hour_is_fresh():
    """Stored 10:30, request at 10:45: the 10:00 refresh came before the write."""
    now = at(15, 10, 45)
    spec = parse_schedule("0 * * * * *", now=now)
    assert is_stale(spec, at(15, 10, 30), now) is False


def test_daily_midnight_schedule():
    """`0 0 * * * *` refreshes at midnight of the current day."""
    now = at(16, 0, 10)
    spec = parse_schedule("0 0 * * * *", now=now)
    assert is_stale(spec, at(15, 23, 30), now) is True

    now = at(15, 11, 5)
    spec = parse_schedule("0 0 * * * *", now=now)
    assert is_stale(spec, at(15, 10, 30), now) is False


def test_same_instant_is_never_stale():
    """No refresh can fall strictly after stored_at and at or before it."""
    spec = parse_schedule("0-59 0-23 1-31 1-12 1-7 2024", now=at(15, 10))
    moment = at(15, 10, 0)
    assert is_stale(spec, moment, moment) is False


def test_window_upper_bound_is_inclusive():
    spec = parse_schedule("0 12 1-31 1-12 1-7 2024", now=at(15, 10))
    assert is_stale(spec, at(15, 11, 59), at(15, 12, 0)) is True
    assert is_stale(spec, at(15, 12, 0), at(15, 12, 30)) is False


def test_clock_going_backwards_is_not_stale():
    spec = parse_schedule("0-59 0-23 1-31 1-12 1-7 2024", now=at(15, 10))
    assert is_stale(spec, at(15, 12), at(15, 10)) is False


def test_weekday_filter():
    """Monday 09:00 only; 15 March 2024 is a Friday, 18 March a Monday."""
    spec = parse_schedule("0 9 1-31 1-12 1 2024", now=at(15, 10))
    assert is_stale(spec, at(15, 10), at(17, 12)) is False
    assert is_stale(spec, at(15, 10), at(18, 9)) is True


def test_invalid_calendar_dates_are_skipped():
    """31 February never happens; it is skipped rather than an error."""
    spec = parse_schedule("0 0 30,31 2 1-7 2024", now=at(15, 10))
    stored = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert is_stale(spec, stored, at(15, 10)) is False
    assert next_occurrence(spec, stored) is None


def test_naive_datetimes_are_read_in_schedule_timezone():
    plus_two = timezone(timedelta(hours=2))
    spec = parse_schedule("0 12 1-31 1-12 1-7 2024", now=at(15, 8), tz=plus_two)
    # 12:00 at +02:00 is 10:00 UTC
    assert is_stale(spec, at(15, 9, 30), at(15, 10, 30)) is True
    assert is_stale(spec, datetime(2024, 3, 15, 11, 30), datetime(2024, 3, 15, 12, 30)) is True


def test_is_stale_is_deterministic():
    spec = parse_schedule("15 8-18 1-31 1-12 1-5 2024", now=at(15, 10))
    results = {is_stale(spec, at(14, 17), at(15, 9)) for _ in range(5)}
    assert results == {True}


def test_wide_schedule_terminates_quickly():
    """Every minute of every day for a millennium still answers immediately."""
    spec = parse_schedule("0-59 0-23 1-31 1-12 1-7 1900-3000", now=at(15, 10))
    assert is_stale(spec, at(15, 10, 0, 30), at(15, 10, 1)) is True
    assert next_occurrence(spec, at(15, 10, 0, 30)) == at(15, 10, 1)


# =============================================================================
# Next occurrence
# =============================================================================

def test_next_occurrence_same_day_and_following_day():
    spec = parse_schedule("30 8 1-31 1-12 1-7 2024-2025", now=at(15, 10))
    assert next_occurrence(spec, at(15, 7)) == at(15, 8, 30)
    assert next_occurrence(spec, at(15, 10)) == at(16, 8, 30)


def test_next_occurrence_includes_now():
    spec = parse_schedule("30 8 1-31 1-12 1-7 2024", now=at(15, 8))
    assert next_occurrence(spec, at(15, 8, 30)) == at(15, 8, 30)


def test_next_occurrence_none_for_past_schedule():
    spec = parse_schedule("0 0 1 1 1-7 2000-2001", now=at(15, 10))
    assert next_occurrence(spec, at(15, 10)) is None


def test_next_occurrence_rolls_wildcards_forward():
    """An hourly schedule parsed at 10:30 still knows about 11:00."""
    spec = parse_schedule("0 * * * * *", now=at(15, 10, 30))
    assert next_occurrence(spec, at(15, 10, 30)) == at(15, 11)


def test_next_occurrence_rolls_over_midnight():
    spec = parse_schedule("0 * * * * *", now=at(15, 23, 30))
    assert next_occurrence(spec, at(15, 23, 30)) == at(16, 0)


@pytest.mark.parametrize("hour", [0, 6, 11, 17, 23])
def test_next_occurrence_is_never_before_now(hour):
    now = at(15, hour, 17)
    for text in ("0 * * * * *", "0,30 6-18 1-31 1-12 1-5 2024-2025", "* * * * * *"):
        spec = parse_schedule(text, now=now)
        found = next_occurrence(spec, now)
        assert found is None or found >= now


# =============================================================================
# Effective TTL
# =============================================================================

def test_effective_ttl_takes_the_shorter_lifetime():
    stored = at(15, 10)
    assert effective_ttl(timedelta(seconds=300), at(15, 10, 10), stored) == timedelta(seconds=300)
    assert effective_ttl(timedelta(hours=1), at(15, 10, 10), stored) == timedelta(minutes=10)


def test_effective_ttl_with_one_signal():
    stored = at(15, 10)
    assert effective_ttl(None, at(15, 10, 10), stored) == timedelta(minutes=10)
    assert effective_ttl(timedelta(seconds=60), None, stored) == timedelta(seconds=60)
    assert effective_ttl(None, None, stored) is None


# =============================================================================
# Evaluator
# =============================================================================

def test_ttl_fresh_then_stale():
    """TTL 300s: fresh at T+200 with ~100s left, stale at T+400."""
    stored = at(15, 10)
    evaluator = StalenessEvaluator(ttl=timedelta(seconds=300))

    decision = evaluator.evaluate(stored, stored + timedelta(seconds=200))
    assert decision.is_stale is False
    assert decision.max_age(stored + timedelta(seconds=200)) == 100
    assert decision.expires_at == stored + timedelta(seconds=300)

    decision = evaluator.evaluate(stored, stored + timedelta(seconds=400))
    assert decision.is_stale is True
    assert decision.ttl_expired is True
    assert decision.max_age(stored + timedelta(seconds=400)) == 0


def test_ttl_boundary_is_still_fresh():
    stored = at(15, 10)
    evaluator = StalenessEvaluator(ttl=timedelta(seconds=300))
    assert evaluator.evaluate(stored, stored + timedelta(seconds=300)).is_stale is False


def test_schedule_makes_entry_stale_before_ttl():
    now = at(15, 11, 5)
    evaluator = StalenessEvaluator(
        ttl=timedelta(hours=2),
        schedule=parse_schedule("0 * * * * *", now=now),
    )
    decision = evaluator.evaluate(at(15, 10, 30), now)
    assert decision.is_stale is True
    assert decision.ttl_expired is False
    assert decision.schedule_crossed is True
    assert decision.next_refresh == at(15, 12)


def test_schedule_shortens_advertised_lifetime():
    """Stored 10:30 with the next refresh at 11:00: 30 minutes, not the 2h TTL."""
    now = at(15, 10, 45)
    evaluator = StalenessEvaluator(
        ttl=timedelta(hours=2),
        schedule=parse_schedule("0 * * * * *", now=now),
    )
    decision = evaluator.evaluate(at(15, 10, 30), now)
    assert decision.is_stale is False
    assert decision.effective_ttl == timedelta(minutes=30)
    assert decision.max_age(now) == 15 * 60


def test_no_expiry_signals():
    evaluator = StalenessEvaluator()
    decision = evaluator.evaluate(at(1, 0), at(15, 10))
    assert decision.is_stale is False
    assert decision.effective_ttl is None
    assert decision.max_age(at(15, 10)) is None


def test_lifetime_across_spring_forward_uses_real_elapsed_time():
    """
    Europe/Berlin skips 02:00-03:00 on 31 March 2024. Stored at 00:30 CET,
    the 06:00 CEST refresh is 4.5 real hours away, not 5.5 wall-clock hours.
    """
    berlin = ZoneInfo("Europe/Berlin")
    stored = datetime(2024, 3, 30, 23, 30, tzinfo=timezone.utc)
    evaluator = StalenessEvaluator(
        schedule=parse_schedule("0 6 1-31 1-12 1-7 2024", now=stored, tz=berlin),
    )

    decision = evaluator.evaluate(stored, stored)
    assert decision.next_refresh == datetime(2024, 3, 31, 4, 0, tzinfo=timezone.utc)
    assert decision.effective_ttl == timedelta(hours=4, minutes=30)
    assert decision.expires_at == datetime(2024, 3, 31, 4, 0, tzinfo=timezone.utc)
    assert decision.max_age(stored) == 16200

    just_before = datetime(2024, 3, 31, 3, 59, tzinfo=timezone.utc)
    assert evaluator.evaluate(stored, just_before).is_stale is False
    just_after = datetime(2024, 3, 31, 4, 1, tzinfo=timezone.utc)
    assert evaluator.evaluate(stored, just_after).is_stale is True
