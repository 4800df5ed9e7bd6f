import calendar
import re
from datetime import date, datetime, timezone
from typing import Optional, Tuple

from fastapi import HTTPException

from savingsplan.app.models.models import utcnow

MONTH_LABEL_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a timestamp to naive UTC. Naive input is assumed to already be UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def month_label(value: Optional[datetime] = None) -> str:
    """`YYYY-MM` of the instant in UTC, independent of the device timezone"""
    value = to_naive_utc(value) if value is not None else utcnow()
    return f"{value.year:04d}-{value.month:02d}"


def validate_month_label(label: str) -> str:
    if not label or not MONTH_LABEL_PATTERN.match(label):
        raise HTTPException(status_code=400, detail=f"Invalid month label '{label}', expected YYYY-MM")
    return label


def month_bounds(label: str) -> Tuple[datetime, datetime]:
    """[start, end) of a month label as naive UTC datetimes"""
    year, month = (int(part) for part in validate_month_label(label).split("-"))
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return start, end


def is_last_day_of_month(value: datetime) -> bool:
    return value.day == calendar.monthrange(value.year, value.month)[1]


def days_until(deadline: date, now: datetime) -> int:
    return (deadline - to_naive_utc(now).date()).days
