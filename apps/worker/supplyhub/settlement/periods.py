from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, timedelta

from supplyhub.portfolio.models import BillingFrequency


@dataclass(frozen=True, slots=True)
class Period:
    """Half-open date interval [start, end)."""

    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days


def _first_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def period_start_for(day: date, frequency: BillingFrequency | str) -> date:
    frequency = BillingFrequency(frequency)
    if frequency is BillingFrequency.WEEKLY:
        return day - timedelta(days=day.weekday())
    if frequency is BillingFrequency.MONTHLY:
        return day.replace(day=1)
    return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)


def period_end_for(start: date, frequency: BillingFrequency | str) -> date:
    """Exclusive end of the billing period that contains ``start``."""
    frequency = BillingFrequency(frequency)
    if frequency is BillingFrequency.WEEKLY:
        return start + timedelta(days=7 - start.weekday())
    if frequency is BillingFrequency.MONTHLY:
        return _first_of_next_month(start)
    quarter_first_month = 3 * ((start.month - 1) // 3) + 1
    if quarter_first_month == 10:
        return date(start.year + 1, 1, 1)
    return date(start.year, quarter_first_month + 3, 1)


def period_containing(day: date, frequency: BillingFrequency | str) -> Period:
    return Period(start=period_start_for(day, frequency), end=period_end_for(day, frequency))


def is_period_due(period: Period, today: date) -> bool:
    """A period can be settled once its exclusive end has been reached."""
    return period.end <= today


def periods_between(start: date, frequency: BillingFrequency | str, until: date) -> Iterator[Period]:
    """Consecutive periods from ``start`` until one would begin on or after ``until``.

    The first period may be partial: it starts at ``start`` and ends at the regular
    boundary after it.
    """
    cursor = start
    while cursor < until:
        end = period_end_for(cursor, frequency)
        yield Period(start=cursor, end=end)
        cursor = end
