"""Expected-close-date windows used to narrow opportunity lists."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

from agencydesk.core.config import Settings


T = TypeVar("T")
Clock = Callable[[], datetime]


class Period(str, Enum):
    ALL = "all"
    TODAY = "today"
    THIS_WEEK = "this_week"
    THIS_MONTH = "this_month"
    OVERDUE = "overdue"
    NO_DUE_DATE = "no_due_date"


_WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


@dataclass(frozen=True)
class PeriodWindow:
    """Half-open date range; a ``None`` bound is unbounded."""

    start: date | None
    end: date | None

    def contains(self, value: date) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value >= self.end:
            return False
        return True


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def start_of_week(today: date, week_start: str = "sunday") -> date:
    try:
        first_weekday = _WEEKDAYS[week_start.lower()]
    except KeyError:
        raise ValueError(f"unknown week_start '{week_start}'") from None
    return today - timedelta(days=(today.weekday() - first_weekday) % 7)


def start_of_next_month(today: date) -> date:
    if today.month == 12:
        return date(today.year + 1, 1, 1)
    return date(today.year, today.month + 1, 1)


def window_for(period: Period | str, today: date, week_start: str = "sunday") -> PeriodWindow | None:
    period = Period(period)
    if period is Period.TODAY:
        return PeriodWindow(today, today + timedelta(days=1))
    if period is Period.THIS_WEEK:
        first = start_of_week(today, week_start)
        return PeriodWindow(first, first + timedelta(days=7))
    if period is Period.THIS_MONTH:
        return PeriodWindow(today.replace(day=1), start_of_next_month(today))
    if period is Period.OVERDUE:
        return PeriodWindow(None, today)
    return None


def matches_period(
    expected_close_date: date | datetime | None,
    period: Period | str,
    today: date,
    week_start: str = "sunday",
) -> bool:
    period = Period(period)
    if period is Period.ALL:
        return True
    if expected_close_date is None:
        return period is Period.NO_DUE_DATE
    if period is Period.NO_DUE_DATE:
        return False

    window = window_for(period, today, week_start)
    return window is not None and window.contains(_as_date(expected_close_date))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeriodFilter:
    def __init__(self, clock: Clock | None = None, tz_name: str = "UTC", week_start: str = "sunday") -> None:
        self.clock = clock or _utcnow
        self.tz = ZoneInfo(tz_name)
        if week_start.lower() not in _WEEKDAYS:
            raise ValueError(f"unknown week_start '{week_start}'")
        self.week_start = week_start.lower()

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock | None = None) -> PeriodFilter:
        return cls(clock=clock, tz_name=settings.app_timezone, week_start=settings.week_start)

    def today(self) -> date:
        now = self.clock()
        # naive clocks are taken to already be in local time
        if now.tzinfo is None:
            return now.date()
        return now.astimezone(self.tz).date()

    def matches(self, expected_close_date: date | datetime | None, period: Period | str) -> bool:
        return matches_period(expected_close_date, period, self.today(), self.week_start)

    def apply(
        self,
        items: Iterable[T],
        period: Period | str,
        key: Callable[[T], Any] = lambda item: getattr(item, "expected_close_date"),
    ) -> list[T]:
        period = Period(period)
        if period is Period.ALL:
            return list(items)
        today = self.today()
        return [item for item in items if matches_period(key(item), period, today, self.week_start)]
