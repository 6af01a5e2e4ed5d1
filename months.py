import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True, order=True)
class Month:
    """A calendar month, rendered as ``YYYY-MM``."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {self.month}")
        if not 1 <= self.year <= 9999:
            raise ValueError(f"Year out of range: {self.year}")

    @classmethod
    def parse(cls, value: str) -> "Month":
        match = _MONTH_RE.match(value or "")
        if not match:
            raise ValueError(f"Month must look like YYYY-MM, got {value!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def from_date(cls, value: date) -> "Month":
        return cls(value.year, value.month)

    def add(self, count: int) -> "Month":
        month_index = (self.year * 12) + (self.month - 1) + count
        return Month(month_index // 12, (month_index % 12) + 1)

    def next(self) -> "Month":
        return self.add(1)

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return self.next().start - date.resolution

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def local_today(timezone: Optional[str] = None) -> date:
    tz = ZoneInfo(timezone or get_settings().timezone)
    return datetime.now(tz).date()


def current_month(timezone: Optional[str] = None) -> Month:
    return Month.from_date(local_today(timezone))
