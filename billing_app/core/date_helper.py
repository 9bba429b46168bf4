import calendar
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from .settings import settings


@dataclass(frozen=True)
class BillingPeriod:
    index: int
    period_key: str
    due_date: date


def period_key_for(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def month_start(value: date) -> date:
    return value.replace(day=1)


def due_date_for(start_date: date, year: int, month: int) -> date:
    """Due date of the period in ``year``/``month`` for an agreement starting on ``start_date``.

    The period containing ``start_date`` is due on ``start_date`` itself. Any
    later period is due on the same day-of-month, clamped to the last day of
    short months. The day is always taken from ``start_date`` so a clamp in
    February never leaks into March.
    """
    if (year, month) == (start_date.year, start_date.month):
        return start_date
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start_date.day, last_day))


def iter_billing_periods(
    start_date: date,
    as_of: date,
    end_date: Optional[date] = None,
) -> Iterator[BillingPeriod]:
    """Yield billing periods from the start month through the month after ``as_of``.

    Periods never run past the month of ``end_date`` when one is given.
    Re-running with the same ``start_date`` always yields the same pairs;
    only the upper bound moves with ``as_of``.
    """
    first = month_start(start_date)
    upper = month_start(as_of) + relativedelta(months=1)
    if end_date is not None:
        upper = min(upper, month_start(end_date))

    index = 0
    current = first
    while current <= upper:
        yield BillingPeriod(
            index=index,
            period_key=period_key_for(current),
            due_date=due_date_for(start_date, current.year, current.month),
        )
        index += 1
        current = first + relativedelta(months=index)


def billing_tz() -> ZoneInfo:
    return ZoneInfo(settings.BILLING_TIMEZONE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def today_in_billing_tz(now: Optional[datetime] = None) -> date:
    instant = as_utc(now) if now is not None else utc_now()
    return instant.astimezone(billing_tz()).date()


def days_between(earlier: date, later: date) -> int:
    return (later - earlier).days
