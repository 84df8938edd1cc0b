"""membership_lifecycle.records

Canonical record shapes for the membership working set.

Sheet column names are the wire format and are preserved exactly, including
embedded spaces ('Renewed On', 'Email Address').  Each record converts from
and to a column-keyed row dict; member rows are reduced to an explicit
allow-list of columns, transaction rows carry unknown columns through
untouched so write-back never loses form data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from membership_lifecycle.dates import date_only, parse_date, to_iso
from membership_lifecycle.normalize import (
    normalize_email,
    parse_flag,
    parse_int,
    text_or_empty,
    trim,
)

# ---------------------------------------------------------------------------
# Action types
# ---------------------------------------------------------------------------

JOIN = "Join"
RENEW = "Renew"
MIGRATE = "Migrate"
EXPIRY1 = "Expiry1"
EXPIRY2 = "Expiry2"
EXPIRY3 = "Expiry3"
EXPIRY4 = "Expiry4"

ACTION_TYPES = (MIGRATE, JOIN, RENEW, EXPIRY1, EXPIRY2, EXPIRY3, EXPIRY4)
TERMINAL_TYPE = EXPIRY4

STATUS_ACTIVE = "Active"
STATUS_EXPIRED = "Expired"


def is_expiry_type(action_type: str) -> bool:
    return action_type.startswith("Expiry")


def canonical_status(value: Any) -> str:
    """Status cell in canonical case; blank means Active, unknown values are kept."""
    status = trim(value)
    if status is None:
        return STATUS_ACTIVE
    for known in (STATUS_ACTIVE, STATUS_EXPIRED):
        if status.lower() == known.lower():
            return known
    return status


# ---------------------------------------------------------------------------
# Column headers
# ---------------------------------------------------------------------------

MEMBER_HEADERS = [
    "Email", "First", "Last", "Phone", "Joined", "Period", "Expires",
    "Renewed On", "Status", "Migrated",
    "Directory Share Name", "Directory Share Email", "Directory Share Phone",
]

TRANSACTION_HEADERS = [
    "Timestamp", "Email Address", "First Name", "Last Name", "Phone",
    "Payable Status", "Payment", "Directory", "Processed",
]

SCHEDULE_HEADERS = ["Date", "Type", "Email"]

# Columns that expand_template renders as locale date strings
DATE_FIELDS = frozenset({"Expires", "Joined", "Renewed On", "Migrated", "Scheduled On"})


# ---------------------------------------------------------------------------
# Member
# ---------------------------------------------------------------------------

@dataclass
class Member:
    email: str
    first: str = ""
    last: str = ""
    phone: str = ""
    period: int = 1
    joined: date | None = None
    expires: date | None = None
    renewed_on: date | None = None
    status: str = STATUS_ACTIVE
    migrated: date | None = None
    share_name: bool = False
    share_email: bool = False
    share_phone: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def set_directory_sharing(self, flags: tuple[bool, bool, bool]) -> None:
        self.share_name, self.share_email, self.share_phone = flags

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Member:
        """Build a Member from an ActiveMembers row; columns outside the schema are ignored."""
        return cls(
            email=normalize_email(row.get("Email")) or "",
            first=text_or_empty(row.get("First")),
            last=text_or_empty(row.get("Last")),
            phone=text_or_empty(row.get("Phone")),
            period=parse_int(row.get("Period"), default=1) or 1,
            joined=parse_date(row.get("Joined")),
            expires=parse_date(row.get("Expires")),
            renewed_on=parse_date(row.get("Renewed On")),
            status=canonical_status(row.get("Status")),
            migrated=parse_date(row.get("Migrated")),
            share_name=parse_flag(row.get("Directory Share Name")),
            share_email=parse_flag(row.get("Directory Share Email")),
            share_phone=parse_flag(row.get("Directory Share Phone")),
        )

    def to_row(self) -> dict[str, Any]:
        """Column-keyed row; dates stay as date objects so templates can format them."""
        return {
            "Email": self.email,
            "First": self.first,
            "Last": self.last,
            "Phone": self.phone,
            "Joined": self.joined,
            "Period": self.period,
            "Expires": self.expires,
            "Renewed On": self.renewed_on,
            "Status": self.status,
            "Migrated": self.migrated,
            "Directory Share Name": self.share_name,
            "Directory Share Email": self.share_email,
            "Directory Share Phone": self.share_phone,
        }

    def to_sheet_row(self) -> dict[str, str]:
        row = self.to_row()
        for key in ("Joined", "Expires", "Renewed On", "Migrated"):
            row[key] = to_iso(row[key])
        for key in ("Directory Share Name", "Directory Share Email", "Directory Share Phone"):
            row[key] = "TRUE" if row[key] else "FALSE"
        row["Period"] = str(self.period)
        return row


def find_active_member(members: list[Member], email: str | None) -> Member | None:
    """Return the Active member with this email, ignoring Expired history rows."""
    key = normalize_email(email)
    if key is None:
        return None
    for member in members:
        if member.email == key and member.is_active:
            return member
    return None


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------

@dataclass
class Transaction:
    email: str | None
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    payable_status: str | None = None
    payment: str | None = None
    directory: str | None = None
    processed: Any = None
    timestamp: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_processed(self) -> bool:
        if isinstance(self.processed, date):
            return True
        return trim(self.processed) is not None

    def mark_processed(self, today: date) -> None:
        self.processed = today
        self.timestamp = today

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Transaction:
        extra = {k: v for k, v in row.items() if k not in TRANSACTION_HEADERS}
        return cls(
            email=normalize_email(row.get("Email Address")),
            first_name=text_or_empty(row.get("First Name")),
            last_name=text_or_empty(row.get("Last Name")),
            phone=text_or_empty(row.get("Phone")),
            payable_status=trim(row.get("Payable Status")),
            payment=trim(row.get("Payment")),
            directory=trim(row.get("Directory")),
            processed=row.get("Processed"),
            timestamp=row.get("Timestamp"),
            extra=extra,
        )

    def to_sheet_row(self) -> dict[str, Any]:
        def _cell(value: Any) -> Any:
            if isinstance(value, date):
                return to_iso(value)
            return "" if value is None else value

        row = {
            "Timestamp": _cell(self.timestamp),
            "Email Address": self.email or "",
            "First Name": self.first_name,
            "Last Name": self.last_name,
            "Phone": self.phone,
            "Payable Status": self.payable_status or "",
            "Payment": self.payment or "",
            "Directory": self.directory or "",
            "Processed": _cell(self.processed),
        }
        row.update(self.extra)
        return row


# ---------------------------------------------------------------------------
# ScheduleEntry
# ---------------------------------------------------------------------------

@dataclass
class ScheduleEntry:
    email: str
    type: str
    date: date
    # position in the ExpirySchedule sheet, when loaded from one
    row_index: int | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_row(cls, row: dict[str, Any], row_index: int | None = None) -> ScheduleEntry:
        """Raises ValueError when the Date cell is not a calendar date."""
        return cls(
            email=normalize_email(row.get("Email")) or "",
            type=trim(row.get("Type")) or "",
            date=date_only(row.get("Date")),
            row_index=row_index,
        )

    def to_sheet_row(self) -> dict[str, str]:
        return {"Date": to_iso(self.date), "Type": self.type, "Email": self.email}
