from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from database import utcnow


class Clock:
    """Source of "now" for windowing and de-duplication.

    ``now()`` is naive UTC, matching how timestamps are stored.
    ``today()`` is the calendar date in the household's timezone.
    """

    def __init__(self, tz_name: Optional[str] = None) -> None:
        self.tz = ZoneInfo(tz_name or get_settings().timezone)

    def now(self) -> datetime:
        return utcnow()

    def today(self) -> date:
        return datetime.now(self.tz).date()
