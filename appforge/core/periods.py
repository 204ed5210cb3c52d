"""
Monthly billing periods.

Recurring grants are bucketed by calendar month in UTC. ``PeriodKey`` is the
canonical, sortable identifier for such a bucket (``YYYY-MM``).
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, order=True)
class PeriodKey:
    """A calendar month in UTC."""
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"month must be in 1..12, got {self.month}")
        if not 1 <= self.year <= 9999:
            raise ValueError(f"year must be in 1..9999, got {self.year}")

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @classmethod
    def parse(cls, value: str) -> "PeriodKey":
        """Parse a ``YYYY-MM`` string.

        Raises:
            ValueError: If the string is not a valid period key
        """
        match = _PERIOD_RE.match(value or "")
        if not match:
            raise ValueError(f"Invalid period key: {value!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def from_datetime(cls, moment: datetime) -> "PeriodKey":
        """Period containing ``moment``. Naive datetimes are taken as UTC."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        else:
            moment = moment.astimezone(timezone.utc)
        return cls(moment.year, moment.month)

    @classmethod
    def current(cls, now: Optional[datetime] = None) -> "PeriodKey":
        return cls.from_datetime(now or utcnow())

    def next(self) -> "PeriodKey":
        if self.month == 12:
            return PeriodKey(self.year + 1, 1)
        return PeriodKey(self.year, self.month + 1)

    def bounds(self) -> Tuple[datetime, datetime]:
        """Start (inclusive) and end (exclusive) of the month in UTC."""
        following = self.next()
        start = datetime(self.year, self.month, 1, tzinfo=timezone.utc)
        end = datetime(following.year, following.month, 1, tzinfo=timezone.utc)
        return start, end
