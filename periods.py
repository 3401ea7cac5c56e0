import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from errors import InvalidInput


MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class SummaryPeriod:
    month: str
    start: datetime
    end: datetime


def month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def validate_month(value: Optional[str]) -> str:
    month = (value or "").strip()
    if not MONTH_PATTERN.match(month):
        raise InvalidInput(f"Invalid month '{month}', expected YYYY-MM")
    return month


def summary_period(now: datetime) -> SummaryPeriod:
    """Month-to-date window ending at ``now``.

    The window opens at midnight on the first day of ``now``'s month and
    closes at ``now`` itself, both inclusive.
    """
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return SummaryPeriod(month=month_key(now), start=start, end=now)
