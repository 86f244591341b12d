"""
Calendar arithmetic for sync planning.

Weeks run Monday..Sunday. All ranges are inclusive on both ends and
calendar-day granular. "Today" is always passed in explicitly so every helper
here stays pure.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, List, Optional, Tuple, Union

DateLike = Union[date, datetime, str]

DAILY = "daily"
WEEKLY = "weekly"


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"DateRange start {self.start} is after end {self.end}")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, other: "DateRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def label(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


@dataclass(frozen=True)
class SyncRange:
    """A window plus the granularity it should be fetched at."""

    range: DateRange
    period_type: str


def parse_date(value: DateLike) -> date:
    """
    Normalize to a ``date``.

    Accepts date/datetime objects, ``YYYY-MM-DD`` strings and ISO timestamps
    (the date part is kept; a trailing ``Z`` is tolerated).
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Cannot parse date from {value!r}")
    text = value.strip()
    if len(text) >= 10:
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError as exc:
        raise ValueError(f"Cannot parse date from {value!r}") from exc


def add_days(value: date, days: int) -> date:
    return value + timedelta(days=days)


def default_high_watermark(today: date) -> date:
    """Latest date treated as final: yesterday."""
    return today - timedelta(days=1)


def week_start(value: date) -> date:
    return value - timedelta(days=value.weekday())


def week_range(value: date) -> DateRange:
    start = week_start(value)
    return DateRange(start, start + timedelta(days=6))


def previous_week_range(today: date) -> DateRange:
    return week_range(today - timedelta(days=7))


def is_week_closed(week_start_day: date, today: date) -> bool:
    """A week is closed once its following Monday has arrived."""
    return today >= week_start(week_start_day) + timedelta(days=7)


def is_weekly_rebuild_window(today: date) -> bool:
    """Monday or Tuesday: the window where last week's report is rebuilt upstream."""
    return today.weekday() in (0, 1)


def last_closed_week_range(today: date) -> DateRange:
    return previous_week_range(today)


def backfill_anchor_week(today: date) -> Optional[DateRange]:
    """
    First week a fresh backfill targets.

    Monday/Tuesday: the week that just closed. Wednesday..Saturday: the week
    before it, because the just-closed week is owned by the forward weekly
    pass once the rebuild window has passed. Sunday: no anchor.
    """
    weekday = today.weekday()
    if weekday == 6:
        return None
    previous = previous_week_range(today)
    if is_weekly_rebuild_window(today):
        return previous
    return week_range(previous.start - timedelta(days=7))


def count_weeks_between(from_week_start: date, to_week_start: date) -> int:
    """Inclusive count of Monday-aligned weeks from ``from`` to ``to``."""
    if from_week_start > to_week_start:
        return 0
    return (to_week_start - from_week_start).days // 7 + 1


def build_weeks(today: date, lower_bound: date) -> Tuple[DateRange, List[DateRange]]:
    """
    Return ``(current_week, full_weeks)``.

    ``full_weeks`` walks backward from the previous week while the week start
    is on/after ``lower_bound``; newest first.
    """
    current = week_range(today)
    weeks: List[DateRange] = []
    cursor = previous_week_range(today).start
    while cursor >= lower_bound:
        weeks.append(DateRange(cursor, cursor + timedelta(days=6)))
        cursor -= timedelta(days=7)
    return current, weeks


def build_sync_ranges_for_window(start: date, end: date) -> List[SyncRange]:
    """Split a window into whole Monday..Sunday weeks (weekly) and leftover pieces (daily)."""
    if start > end:
        return []
    ranges: List[SyncRange] = []
    cursor = start
    while cursor <= end:
        week = week_range(cursor)
        if cursor == week.start and week.end <= end:
            ranges.append(SyncRange(week, WEEKLY))
            cursor = week.end + timedelta(days=1)
            continue
        piece_end = min(week.end, end)
        ranges.append(SyncRange(DateRange(cursor, piece_end), DAILY))
        cursor = piece_end + timedelta(days=1)
    return ranges


def iter_days(window: DateRange) -> Iterator[date]:
    current = window.start
    while current <= window.end:
        yield current
        current += timedelta(days=1)


def iter_date_chunks(window: DateRange, chunk_days: int) -> Iterator[DateRange]:
    step = max(1, chunk_days)
    current = window.start
    while current <= window.end:
        chunk_end = min(current + timedelta(days=step - 1), window.end)
        yield DateRange(current, chunk_end)
        current = chunk_end + timedelta(days=1)
