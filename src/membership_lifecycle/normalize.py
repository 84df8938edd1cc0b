"""Normalization functions for membership sheet rows.

All functions accept loosely-typed cell values (str | None, and where noted the
native types a spreadsheet export may already carry) and return the
appropriate type or a lenient default.  Nothing here raises on bad input:
human-entered data must never block a batch.
"""

from __future__ import annotations

import re
from typing import Any

_PERIOD_RE = re.compile(r"(\d+)\s*year", re.IGNORECASE)
_TRUE_STRINGS = frozenset({"true", "yes", "y", "1", "x", "checked"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: Any) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


def is_valid_email(value: str | None) -> bool:
    """Return True if the email has the minimal expected local@domain.tld shape."""
    if not value:
        return False
    at = value.find("@")
    return at > 0 and at < len(value) - 1 and "." in value[at:] and " " not in value


# ---------------------------------------------------------------------------
# Rule 4: text_or_empty
# ---------------------------------------------------------------------------

def text_or_empty(value: Any) -> str:
    """Trimmed text, or '' for missing values (names, phone)."""
    return normalize_space(value) or ""


# ---------------------------------------------------------------------------
# Rule 5: parse_period
# ---------------------------------------------------------------------------

def parse_period(payment: Any) -> int:
    """Return the membership term in years from free-text payment wording.

    The first integer immediately preceding the word 'year' wins:
    '2 years' → 2, 'Family - 3 Years ($90)' → 3.  Missing or unparsable
    text defaults to 1.
    """
    v = trim(payment)
    if v is None:
        return 1
    m = _PERIOD_RE.search(v)
    return int(m.group(1)) if m else 1


def parse_int(value: Any, default: int | None = None) -> int | None:
    """Parse an integer cell ('2', '2.0', 2), returning default on failure."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    v = trim(value)
    if v is None:
        return default
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Rule 6: parse_flag
# ---------------------------------------------------------------------------

def parse_flag(value: Any) -> bool:
    """Coerce a sheet checkbox / Yes-No cell to bool."""
    if isinstance(value, bool):
        return value
    v = trim(value)
    if v is None:
        return False
    return v.lower() in _TRUE_STRINGS


# ---------------------------------------------------------------------------
# Rule 7: is_paid
# ---------------------------------------------------------------------------

def is_paid(payable_status: Any) -> bool:
    """True when the payable status case-insensitively starts with 'paid'."""
    v = trim(payable_status)
    return v is not None and v.lower().startswith("paid")


# ---------------------------------------------------------------------------
# Helper: parse_directory_sharing
# ---------------------------------------------------------------------------

def parse_directory_sharing(value: Any) -> tuple[bool, bool, bool] | None:
    """Return (share_name, share_email, share_phone) from a form answer.

    The join form's directory question yields text such as
    'Share Name, Share Email'.  Returns None when the answer is absent so
    callers can leave existing flags untouched.
    """
    v = trim(value)
    if v is None:
        return None
    lowered = v.lower()
    return (
        "share name" in lowered,
        "share email" in lowered,
        "share phone" in lowered,
    )
