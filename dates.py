"""
Reporting-day calendar.

The POS servers keep Moscow civil time, so date bounds are always computed
in a fixed UTC+3 offset regardless of where the bot itself runs.
"""
from datetime import datetime, timedelta

import pytz

# Fixed UTC+3, no DST
REPORTING_TZ = pytz.FixedOffset(180)

DATE_FORMAT = '%Y-%m-%d'


def reporting_now(now=None):
    """Return the current moment in the reporting calendar.

    Args:
        now: Optional aware datetime to convert instead of the wall clock.
            Naive values are taken as UTC.
    """
    if now is None:
        now = datetime.now(pytz.utc)
    elif now.tzinfo is None:
        now = pytz.utc.localize(now)
    return now.astimezone(REPORTING_TZ)


def reporting_today(now=None):
    """Today's date in the reporting calendar."""
    return reporting_now(now).date()


class DateRange:
    """A shift listing window ending on the current reporting day.

    Use one of the constructors: `week()`, `this_month()` or `custom(n)`.
    """

    WEEK = 'week'
    THIS_MONTH = 'this_month'
    CUSTOM = 'custom'

    def __init__(self, kind: str, days_back: int = 0):
        if kind not in (self.WEEK, self.THIS_MONTH, self.CUSTOM):
            raise ValueError(f"Unknown date range: {kind}")
        if days_back < 0:
            raise ValueError("days_back must not be negative")
        self.kind = kind
        self.days_back = days_back

    @classmethod
    def week(cls):
        return cls(cls.WEEK)

    @classmethod
    def this_month(cls):
        return cls(cls.THIS_MONTH)

    @classmethod
    def custom(cls, days_back: int):
        return cls(cls.CUSTOM, days_back)

    def bounds(self, now=None):
        """Return (date_from, date_to) as YYYY-MM-DD strings.

        The week covers the last 7 calendar days including today, the month
        starts on the 1st, a custom range goes `days_back` days back.
        """
        today = reporting_today(now)
        if self.kind == self.WEEK:
            back = 6
        elif self.kind == self.THIS_MONTH:
            back = today.day - 1
        else:
            back = self.days_back
        date_from = today - timedelta(days=back)
        return date_from.strftime(DATE_FORMAT), today.strftime(DATE_FORMAT)

    def __eq__(self, other):
        if not isinstance(other, DateRange):
            return NotImplemented
        return (self.kind, self.days_back) == (other.kind, other.days_back)

    def __repr__(self):
        if self.kind == self.CUSTOM:
            return f"DateRange.custom({self.days_back})"
        return f"DateRange.{self.kind}()"
