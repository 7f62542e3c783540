"""
Fiscal Quarter Module

Quarter keys look like "2025Q1". The fiscal year starts in July:
Q1 = Jul-Sep, Q2 = Oct-Dec, Q3 = Jan-Mar and Q4 = Apr-Jun, the last two
falling in the following calendar year.
"""

from datetime import datetime, timezone
from typing import NamedTuple
import re

from .clock import Clock
from .errors import StateConflictError, ValidationError, QUARTER_NOT_ENDED


QUARTER_KEY_PATTERN = re.compile(r"\d{4}Q[1-4]")

# quarter -> (calendar year offset, first month, last month, last day)
_FISCAL_QUARTERS = {
    1: (0, 7, 9, 30),
    2: (0, 10, 12, 31),
    3: (1, 1, 3, 31),
    4: (1, 4, 6, 30),
}


class QuarterWindow(NamedTuple):
    """Inclusive period covered by a fiscal quarter"""
    start: datetime
    end: datetime


def validate_quarter_key(quarter_key: str) -> str:
    if not isinstance(quarter_key, str) or not QUARTER_KEY_PATTERN.fullmatch(quarter_key):
        raise ValidationError(
            f"Invalid quarter key {quarter_key!r}; expected YYYYQn with n in 1..4",
            details={'quarter_key': quarter_key}
        )
    return quarter_key


class QuarterResolver:
    """Maps quarter keys to UTC periods and gates work on quarters that have not ended"""

    def __init__(self, clock: Clock):
        self.clock = clock

    def resolve(self, quarter_key: str) -> QuarterWindow:
        """
        Period of a fiscal quarter

        Starts at 00:00:00 UTC on the first day and ends at 23:59:59 UTC on
        the last day.
        """
        validate_quarter_key(quarter_key)
        year = int(quarter_key[:4])
        offset, first_month, last_month, last_day = _FISCAL_QUARTERS[int(quarter_key[5])]
        start = datetime(year + offset, first_month, 1, 0, 0, 0, tzinfo=timezone.utc)
        end = datetime(year + offset, last_month, last_day, 23, 59, 59, tzinfo=timezone.utc)
        return QuarterWindow(start, end)

    def has_ended(self, period_end: datetime) -> bool:
        return self.clock.now() >= period_end

    def ensure_ended(self, quarter_key: str, period_end: datetime) -> None:
        if not self.has_ended(period_end):
            raise StateConflictError(
                f"Cannot process interest for {quarter_key}: the quarter has not ended yet",
                reason=QUARTER_NOT_ENDED,
                details={'quarter_key': quarter_key, 'period_end': period_end.isoformat()}
            )
