"""Period calculation for usage counters.

Every usage counter accumulates inside a bucket identified by a string key.
Two bucketing strategies exist:

- ``rolling``: fixed-length windows anchored to an epoch date. All processes
  derive the same bucket for the same instant without coordination.
- ``calendar_month``: one bucket per UTC calendar month, keyed ``YYYY-MM``.

All arithmetic happens on UTC calendar days.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum

DEFAULT_EPOCH = date(2024, 1, 1)


class PeriodStrategy(str, Enum):
    """How a resource kind buckets its usage."""

    ROLLING = "rolling"
    CALENDAR_MONTH = "calendar_month"


@dataclass(frozen=True)
class Period:
    """A resolved usage bucket."""

    key: str
    start: str
    end: str


def _utc_day(now: datetime) -> date:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).date()


def period_start(
    now: datetime, period_length_days: int, epoch: date = DEFAULT_EPOCH
) -> str:
    """Return the ISO start date of the rolling window containing ``now``.

    Args:
        now: The instant to bucket. Naive values are treated as UTC.
        period_length_days: Window length in days.
        epoch: Anchor date of the first window.

    Returns:
        The window start as ``YYYY-MM-DD``.

    Raises:
        ValueError: If period_length_days is less than 1.
    """
    if period_length_days < 1:
        raise ValueError(
            "period_length_days must be >= 1, got {}".format(period_length_days)
        )

    days_since_epoch = (_utc_day(now) - epoch).days
    period_index = days_since_epoch // period_length_days
    start = epoch + timedelta(days=period_index * period_length_days)
    return start.isoformat()


def period_end(start_key: str, period_length_days: int) -> str:
    """Return the ISO date of the last day in a rolling window."""
    start = date.fromisoformat(start_key)
    return (start + timedelta(days=period_length_days - 1)).isoformat()


def month_key(now: datetime) -> str:
    """Return the ``YYYY-MM`` key of the UTC calendar month containing ``now``."""
    return _utc_day(now).strftime("%Y-%m")


def resolve_period(
    strategy: PeriodStrategy,
    now: datetime,
    period_length_days: int = 14,
    epoch: date = DEFAULT_EPOCH,
) -> Period:
    """Resolve the bucket for ``now`` under the given strategy."""
    if strategy == PeriodStrategy.CALENDAR_MONTH:
        day = _utc_day(now)
        last_day = calendar.monthrange(day.year, day.month)[1]
        return Period(
            key=month_key(now),
            start=day.replace(day=1).isoformat(),
            end=day.replace(day=last_day).isoformat(),
        )

    start = period_start(now, period_length_days, epoch)
    return Period(key=start, start=start, end=period_end(start, period_length_days))
