import datetime as dt
import logging

from cardpoints.domain.models import PeriodKey

logger = logging.getLogger(__name__)


def _previous_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def resolve_period(
    date: dt.date,
    period_type: str,
    anchor_day: int = 1,
    promo_start_date: dt.date | None = None,
) -> PeriodKey:
    """Map a transaction date to the cap period it counts against.

    ``statement_month`` periods are named after the month the cycle starts in:
    with ``anchor_day=19`` a purchase on 2025-01-05 belongs to the cycle that
    began on 2024-12-19, i.e. ``PeriodKey(2024, 12, 19)``. Anchors are compared
    literally, so a day-31 anchor simply puts every earlier day of a month into
    the previous cycle.

    ``promotional`` periods are pinned to the promotion's start month, so every
    purchase under one promotion shares a single bucket.
    """
    if period_type == "calendar":
        return PeriodKey(year=date.year, month=date.month, cycle_start_day=1)

    if period_type == "statement_month":
        year, month = date.year, date.month
        if date.day < anchor_day:
            year, month = _previous_month(year, month)
        return PeriodKey(year=year, month=month, cycle_start_day=anchor_day)

    if period_type == "promotional":
        if promo_start_date is None:
            logger.debug("Promotional period without a start date; bucketing by %s", date)
            promo_start_date = date
        return PeriodKey(year=promo_start_date.year, month=promo_start_date.month, cycle_start_day=1)

    raise ValueError(f"Unknown period type: {period_type}")


def _cycle_start(year: int, month: int, day: int) -> dt.date:
    # Plain day arithmetic: a day-31 anchor in February lands in early March.
    return dt.date(year, month, 1) + dt.timedelta(days=day - 1)


def period_bounds(key: PeriodKey, period_type: str) -> tuple[dt.date, dt.date | None]:
    """Return ``(start, end_exclusive)`` for a period; promotions are open-ended."""
    if period_type == "promotional":
        return dt.date(key.year, key.month, 1), None

    day = key.cycle_start_day if period_type == "statement_month" else 1
    start = _cycle_start(key.year, key.month, day)
    end = _cycle_start(*_next_month(key.year, key.month), day)
    return start, end
