"""Period arithmetic for the cube.

Every ledger date belongs to exactly one WEEKLY and one MONTHLY period. Periods
are half-open ``[start, end)`` intervals; weeks are anchored to a configurable
weekday (Sunday unless told otherwise).
"""

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterable

SUNDAY = 6


class PeriodType(str, Enum):
    weekly = "WEEKLY"
    monthly = "MONTHLY"


class Granularity(str, Enum):
    weekly = "WEEKLY"
    bi_weekly = "BI_WEEKLY"
    monthly = "MONTHLY"
    quarterly = "QUARTERLY"
    bi_annually = "BI_ANNUALLY"
    annually = "ANNUALLY"

    @property
    def base_type(self) -> PeriodType:
        if self in (Granularity.weekly, Granularity.bi_weekly):
            return PeriodType.weekly
        return PeriodType.monthly

    @property
    def is_persisted(self) -> bool:
        return self in (Granularity.weekly, Granularity.monthly)


@dataclass(frozen=True, order=True)
class Period:
    period_type: PeriodType
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    @property
    def last_day(self) -> date:
        return self.end - date.resolution


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_month_start(day: date) -> date:
    first = day.replace(day=1)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def previous_month_start(day: date) -> date:
    return (day.replace(day=1) - date.resolution).replace(day=1)


def bucket_start(day: date, granularity: Granularity) -> date:
    """Start of the reporting bucket containing ``day``.

    WEEKLY and MONTHLY buckets are the persisted periods themselves, so
    ``day`` is expected to already be a period start for those.
    """
    if granularity == Granularity.bi_weekly:
        reference = date(day.year, 1, 1)
        offset = (day - reference).days // 14
        return reference + timedelta(days=offset * 14)
    if granularity == Granularity.quarterly:
        return date(day.year, ((day.month - 1) // 3) * 3 + 1, 1)
    if granularity == Granularity.bi_annually:
        return date(day.year, 1 if day.month <= 6 else 7, 1)
    if granularity == Granularity.annually:
        return date(day.year, 1, 1)
    return day


class PeriodCalculator:
    def __init__(self, week_starts_on: int = SUNDAY) -> None:
        if not 0 <= week_starts_on <= 6:
            raise ValueError("week_starts_on must be a weekday number 0-6")
        self.week_starts_on = week_starts_on

    def week_start(self, day: date) -> date:
        offset = (day.weekday() - self.week_starts_on) % 7
        return day - timedelta(days=offset)

    def period_for(self, day: date, period_type: PeriodType) -> Period:
        if period_type == PeriodType.weekly:
            start = self.week_start(day)
            return Period(PeriodType.weekly, start, start + timedelta(days=7))
        return Period(PeriodType.monthly, month_start(day), next_month_start(day))

    def periods_covering(self, day: date) -> tuple[Period, Period]:
        return (
            self.period_for(day, PeriodType.weekly),
            self.period_for(day, PeriodType.monthly),
        )

    def distinct_periods(self, dates: Iterable[date]) -> set[Period]:
        periods: set[Period] = set()
        for day in set(dates):
            periods.update(self.periods_covering(day))
        return periods

    def next_period(self, period: Period) -> Period:
        return self.period_for(period.end, period.period_type)

    def previous_period(self, period: Period) -> Period:
        return self.period_for(period.start - date.resolution, period.period_type)

    def periods_between(self, start: date, end: date) -> list[Period]:
        """All periods touching the inclusive date range ``start..end``."""
        if start > end:
            raise ValueError("Start date must be before end date")
        found = self.distinct_periods({start, end})
        for period_type in PeriodType:
            current = self.period_for(start, period_type)
            last = self.period_for(end, period_type)
            while current.start < last.start:
                current = self.next_period(current)
                found.add(current)
        return sorted(found)

    def recent_periods(self, today: date, weeks: int, months: int) -> list[Period]:
        """The ``weeks`` most recent weeks and ``months`` most recent months."""
        periods: list[Period] = []
        for period_type, count in (
            (PeriodType.weekly, weeks),
            (PeriodType.monthly, months),
        ):
            current = self.period_for(today, period_type)
            for _ in range(max(count, 0)):
                periods.append(current)
                current = self.previous_period(current)
        return sorted(periods)


def bucket_end(start: date, granularity: Granularity) -> date:
    """Exclusive end of the reporting bucket beginning at ``start``."""
    if granularity == Granularity.weekly:
        return start + timedelta(days=7)
    if granularity == Granularity.bi_weekly:
        return min(start + timedelta(days=14), date(start.year + 1, 1, 1))
    months = {
        Granularity.monthly: 1,
        Granularity.quarterly: 3,
        Granularity.bi_annually: 6,
        Granularity.annually: 12,
    }[granularity]
    end = start
    for _ in range(months):
        end = next_month_start(end)
    return end
