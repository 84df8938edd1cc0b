"""membership_lifecycle.dates

Calendar-date arithmetic for expirations and schedule offsets.

Every value is reduced to a ``datetime.date`` before any comparison so that a
time-of-day component can never move a member across an expiry boundary.
Strings without a timezone keep the calendar day they name; they are never
shifted through UTC.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any

from membership_lifecycle.normalize import trim

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%b %d, %Y",
    "%B %d, %Y",
)
_DATETIME_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%Y-%m-%d %H:%M:%S",
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_date(value: Any) -> date | None:
    """Parse a sheet cell into a calendar date, or None.

    Accepts date/datetime objects, ISO dates and timestamps (with or without
    an offset), US-style 'M/D/YYYY' cells and 'Jul 23, 2025'.  Timezone-aware
    timestamps are converted to local time before the date is taken.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone()
        return value.date()
    if isinstance(value, date):
        return value
    v = trim(value)
    if v is None:
        return None

    iso = v[:-1] + "+00:00" if v.endswith("Z") else v
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone()
        return parsed.date()

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


def date_only(value: Any) -> date:
    """Like parse_date but required: raises ValueError when no date results."""
    d = parse_date(value)
    if d is None:
        raise ValueError(f"not a calendar date: {value!r}")
    return d


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------

def add_days(d: date, days: int = 0) -> date:
    return date_only(d) + timedelta(days=days)


def add_years(d: date, years: int = 0) -> date:
    """Add whole years; Feb 29 rolls forward to Mar 1 in a non-leap year."""
    d = date_only(d)
    target = d.year + years
    if d.month == 2 and d.day == 29 and not calendar.isleap(target):
        return date(target, 3, 1)
    return d.replace(year=target)


def calculate_expiration(
    today: date,
    existing_expiration: date | None,
    period: int = 1,
) -> date:
    """Return the new expiration for a join or renewal.

    The later of (today + period) and (existing + period).  An early renewal
    therefore extends from the current expiry, a late one from today.
    """
    from_today = add_years(today, period)
    if existing_expiration is None:
        return from_today
    return max(from_today, add_years(existing_expiration, period))


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def to_iso(d: date | None) -> str:
    """Sheet storage form: 'YYYY-MM-DD', or '' for no date."""
    return d.isoformat() if d is not None else ""


def to_locale_date_string(d: date | None) -> str:
    """Human form used in member emails, e.g. '3/1/2026'."""
    if d is None:
        return ""
    return f"{d.month}/{d.day}/{d.year}"
