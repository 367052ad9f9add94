from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: Optional[date] = None

    def contains(self, day: date) -> bool:
        if day < self.start:
            return False
        return self.end is None or day <= self.end


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def trailing_window(days: int, *, today: Optional[date] = None) -> Period:
    """Window of ``days`` days ending today.

    Open-ended: operations dated after today still fall inside it.
    """
    if days < 0:
        raise ValueError("Window must not be negative")
    today = today or local_today()
    return Period(f"last_{days}_days", today - timedelta(days=days))


def resolve_period(
    start: Optional[str],
    end: Optional[str],
) -> Optional[Period]:
    if not start and not end:
        return None
    if not start:
        raise ValueError("Date range requires a start date")
    start_date = date.fromisoformat(start)
    end_date = date.fromisoformat(end) if end else None
    if end_date is not None and start_date > end_date:
        raise ValueError("Start date must be before end date")
    return Period("custom", start_date, end_date)
