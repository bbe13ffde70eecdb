"""
Calendar helpers for billing periods
"""
import calendar
from datetime import datetime


def add_months(moment: datetime, months: int = 1) -> datetime:
    """
    Move a timestamp by whole calendar months, clamping to month end

    Jan 31 + 1 month is Feb 28 (Feb 29 in leap years), never Mar 3.
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_one_month(moment: datetime) -> datetime:
    return add_months(moment, 1)
