"""
Time source shared by every time-dependent component.
All timestamps are naive UTC so they compare the same way on every backend.
"""

import calendar
from datetime import datetime, timezone


class Clock:
    """Wall clock returning naive UTC datetimes"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def epoch(self) -> int:
        return to_epoch(self.now())


def to_epoch(moment: datetime) -> int:
    return calendar.timegm(moment.utctimetuple())


def from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
