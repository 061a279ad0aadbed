"""Time source for the pipeline, always expressed in one configured zone."""
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Seoul"


class Clock:
    """Wall clock pinned to an IANA zone.

    Every "today" and every window comparison in the pipeline goes through
    ``localize`` so that server zone never leaks into a decision.
    """

    def __init__(self, timezone: str = DEFAULT_TIMEZONE):
        self.zone = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self.zone)

    def localize(self, moment: Optional[datetime] = None) -> datetime:
        """Return ``moment`` (or now) as an aware datetime in the clock zone.

        Naive datetimes are taken to already be in the clock zone.
        """
        if moment is None:
            return self.now()
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.zone)
        return moment.astimezone(self.zone)

    def today(self, moment: Optional[datetime] = None) -> date:
        return self.localize(moment).date()


class FixedClock(Clock):
    """Clock that always reports the same instant. Used by tests and replays."""

    def __init__(self, moment: datetime, timezone: str = DEFAULT_TIMEZONE):
        super().__init__(timezone)
        self._moment = self.localize(moment)

    def now(self) -> datetime:
        return self._moment

    def set(self, moment: datetime):
        self._moment = self.localize(moment)

    def advance(self, **kwargs):
        self._moment = self._moment + timedelta(**kwargs)
