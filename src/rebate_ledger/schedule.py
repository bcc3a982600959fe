"""Credit-term and rebate due-date calculation."""

from __future__ import annotations

import calendar
import re
from datetime import date

from rebate_ledger.errors import ValidationError
from rebate_ledger.models import RebateConfig, RebatePeriod

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")

# "consume this month, settle day 15 next month" and the Chinese
# "本月消耗，次月第15天结算" form still found in older agency records.
_CREDIT_TERM_PATTERNS = (
    re.compile(r"次月第\s*(\d+)\s*天"),
    re.compile(r"day\s*(\d+)\s*(?:of\s+)?(?:the\s+)?next\s+month", re.IGNORECASE),
    re.compile(r"next\s+month[^\d]*(\d+)", re.IGNORECASE),
)


def month_of(value: date) -> str:
    """Return the ``YYYY-MM`` month key for a date."""
    return f"{value.year:04d}-{value.month:02d}"


def parse_month(month: str) -> tuple[int, int]:
    """Split a ``YYYY-MM`` key into (year, month)."""
    match = _MONTH_RE.match(month or "")
    if not match:
        raise ValidationError(f"month must be YYYY-MM, got {month!r}")
    year, month_num = int(match.group(1)), int(match.group(2))
    if not 1 <= month_num <= 12:
        raise ValidationError(f"month must be YYYY-MM, got {month!r}")
    return year, month_num


def _shift_month(year: int, month_num: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month_num - 1) + months
    return index // 12, index % 12 + 1


def _last_day(year: int, month_num: int) -> date:
    return date(year, month_num, calendar.monthrange(year, month_num)[1])


def parse_credit_term_day(credit_term: str | None) -> int | None:
    """Extract the settlement day-of-next-month from a credit-term rule."""
    if not credit_term:
        return None
    for pattern in _CREDIT_TERM_PATTERNS:
        match = pattern.search(credit_term)
        if match:
            day = int(match.group(1))
            return day if 1 <= day <= 31 else None
    return None


def due_date(credit_term: str | None, month: str) -> date | None:
    """Expected payment date for consumption booked in ``month``.

    The rule's day is applied to the following month and clamped to that
    month's last day. Unparseable rules yield ``None``.
    """
    day = parse_credit_term_day(credit_term)
    if day is None:
        return None
    year, month_num = parse_month(month)
    next_year, next_month = _shift_month(year, month_num, 1)
    last = _last_day(next_year, next_month)
    return last.replace(day=min(day, last.day))


def rebate_due_date(config: RebateConfig | None, month: str) -> date | None:
    """Expected rebate arrival date for consumption booked in ``month``.

    Monthly rebates arrive on the last day of the next month; quarterly
    rebates on the last day of the month after the quarter closes.
    """
    if config is None:
        return None
    year, month_num = parse_month(month)
    if config.period == RebatePeriod.MONTHLY:
        target_year, target_month = _shift_month(year, month_num, 1)
    else:
        quarter_end = ((month_num - 1) // 3 + 1) * 3
        target_year, target_month = _shift_month(year, quarter_end, 1)
    return _last_day(target_year, target_month)
