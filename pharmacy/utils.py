from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import Optional, Union

from pharmacy.errors import ValidationError

DateLike = Union[date, str]


def iso_today() -> str:
    return date.today().isoformat()


def iso_now() -> str:
    # Use UTC ISO timestamps for consistency.
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def safe_div(n: float, d: float) -> float:
    return float(n) / float(d) if d else 0.0


def money(v: float) -> float:
    return round(float(v), 2)


def parse_date(value: Optional[DateLike], *, field: str = "date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value or "").strip()
    if not s:
        raise ValidationError(f"{field} is required.", field=field)
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD), got {s!r}.", field=field)


def add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + int(months)
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def iso_now_local() -> str:
    # Fiscal documents are dated in the merchant's local time, not UTC.
    return datetime.now().astimezone().replace(microsecond=0).isoformat()
