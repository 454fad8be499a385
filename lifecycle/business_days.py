"""
Caseflow — Business Day Calendar

The lifecycle engine only needs ``is_business_day(date, region)``. The
default HolidayCalendar treats configured weekend days and holidays as
non-working; deployments with a real calendar service plug in any
object with the same method.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Any, Protocol


class BusinessCalendar(Protocol):
    def is_business_day(self, day: date, region: str = "") -> bool: ...


@dataclass(frozen=True)
class HolidayCalendar:
    """
    Weekend days use ``date.weekday()`` numbering (5 = Saturday).
    Holidays under the "*" key apply to every region.
    """
    weekend_days: frozenset[int] = frozenset({5, 6})
    holidays: dict[str, frozenset[date]] = field(default_factory=dict)

    def is_business_day(self, day: date, region: str = "") -> bool:
        if day.weekday() in self.weekend_days:
            return False
        if day in self.holidays.get("*", frozenset()):
            return False
        if region and day in self.holidays.get(region, frozenset()):
            return False
        return True

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> HolidayCalendar:
        data = data or {}
        holidays = {
            region: frozenset(
                d if isinstance(d, date) else date.fromisoformat(str(d))
                for d in days or []
            )
            for region, days in (data.get("holidays") or {}).items()
        }
        return HolidayCalendar(
            weekend_days=frozenset(data.get("weekend_days", (5, 6))),
            holidays=holidays,
        )


def add_business_days(
    calendar: BusinessCalendar,
    start: date,
    days: int,
    region: str = "",
) -> date:
    """Date ``days`` business days after ``start``. Zero days returns ``start``."""
    current = start
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if calendar.is_business_day(current, region):
            remaining -= 1
    return current


def due_timestamp(
    calendar: BusinessCalendar,
    now: float,
    days: int,
    region: str = "",
) -> float:
    """End of the business day ``days`` working days from ``now`` (UTC epoch)."""
    start = datetime.fromtimestamp(now, tz=timezone.utc).date()
    due = add_business_days(calendar, start, days, region)
    return datetime.combine(due, dtime(23, 59, 59), tzinfo=timezone.utc).timestamp()
