"""
Timezone utilities for company-aware date/time handling.

Timestamps are stored as naive UTC. "Today" and "this month" are computed in
the company's timezone (default America/Sao_Paulo) so that an appointment at
22:00 local time does not land on the next UTC day.
"""
from datetime import datetime, date, timedelta
from typing import Tuple
import pytz

from config import settings


def get_company_timezone(company_timezone: str = None):
    """
    Get pytz timezone object for a company.

    Falls back to UTC for unknown timezone names.
    """
    try:
        return pytz.timezone(company_timezone or settings.DEFAULT_TIMEZONE)
    except pytz.exceptions.UnknownTimeZoneError:
        return pytz.UTC


def utc_to_local(value: datetime, company_timezone: str = None) -> datetime:
    """Convert a naive UTC datetime to the company's local time (aware)."""
    tz = get_company_timezone(company_timezone)
    return pytz.UTC.localize(value).astimezone(tz)


def get_company_today(company_timezone: str = None) -> date:
    """Current date in the company's timezone"""
    return utc_to_local(datetime.utcnow(), company_timezone).date()


def local_day_start_utc(day: date, company_timezone: str = None) -> datetime:
    """Naive UTC instant at which `day` starts in the company's timezone"""
    tz = get_company_timezone(company_timezone)
    local_start = tz.localize(datetime.combine(day, datetime.min.time()))
    return local_start.astimezone(pytz.UTC).replace(tzinfo=None)


def get_company_day_range(day: date, company_timezone: str = None) -> Tuple[datetime, datetime]:
    """
    UTC range [start, end) covering one local day.

    Example:
        For Sao Paulo (UTC-3), 2024-05-10 maps to
        2024-05-10 03:00 UTC .. 2024-05-11 03:00 UTC
    """
    return (
        local_day_start_utc(day, company_timezone),
        local_day_start_utc(day + timedelta(days=1), company_timezone),
    )


def month_start(day: date) -> date:
    return day.replace(day=1)


def previous_month_start(day: date) -> date:
    first = month_start(day)
    return month_start(first - timedelta(days=1))


def last_n_month_starts(day: date, n: int) -> list:
    """First day of the last n months, oldest first, ending with day's month"""
    months = [month_start(day)]
    while len(months) < n:
        months.append(previous_month_start(months[-1]))
    return list(reversed(months))
