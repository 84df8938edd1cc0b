"""membership_lifecycle.migrate_members

One-time migration of legacy member rows into the canonical member list
(--mode migrations).

A legacy row is skipped when it is already stamped Migrated, when it carries
a 'Migrate Me' column that is not ticked, when it has no email, or when an
Active member with the same email already exists.  Otherwise it becomes a
canonical Member built from an explicit allow-list of columns; anything else
on the legacy row stays on the legacy sheet only.

Only Active legacy members get Join-equivalent side effects: auto-group
adds, the Migrate notification and a forward Expiry schedule with stages
that have already passed left out.  When even the terminal stage has passed,
it is scheduled for the run date instead so the next expirations run retires
the member.  Inactive rows are converted silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from membership_lifecycle.normalize import (
    normalize_email,
    parse_flag,
    parse_int,
    text_or_empty,
    trim,
)
from membership_lifecycle.dates import parse_date
from membership_lifecycle.notify import SendEmail, compose_message
from membership_lifecycle.records import (
    MIGRATE,
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    TERMINAL_TYPE,
    Member,
    ScheduleEntry,
    find_active_member,
)
from membership_lifecycle.schedule import build_schedule_entries
from membership_lifecycle.shared import BatchError, GroupAdd, RecordError, RunContext

log = logging.getLogger(__name__)

# Legacy columns carried into the canonical record; everything else is dropped
LEGACY_MEMBER_FIELDS = (
    "Email", "First", "Last", "Phone", "Joined", "Period", "Expires",
    "Renewed On", "Status", "Directory",
    "Directory Share Name", "Directory Share Email", "Directory Share Phone",
)
_SHARE_COLUMNS = ("Directory Share Name", "Directory Share Email", "Directory Share Phone")


# ---------------------------------------------------------------------------
# Counters / result
# ---------------------------------------------------------------------------

@dataclass
class MigrationCounters:
    rows_read: int = 0
    rows_migrated: int = 0
    rows_migrated_inactive: int = 0
    rows_migrated_lapsed: int = 0
    rows_skipped_already_migrated: int = 0
    rows_skipped_not_flagged: int = 0
    rows_skipped_no_email: int = 0
    rows_skipped_active_member: int = 0
    group_adds: int = 0
    emails_sent: int = 0
    schedule_entries_added: int = 0
    record_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class MigrationResult:
    migrated: int = 0
    errors: list[RecordError] = field(default_factory=list)
    counters: MigrationCounters = field(default_factory=MigrationCounters)

    def raise_if_errors(self) -> None:
        if self.errors:
            raise BatchError("Errors occurred while migrating members", self.errors)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _legacy_directory_sharing(row: dict[str, Any]) -> tuple[bool, bool, bool]:
    """Explicit share columns win; otherwise the legacy Directory Yes/No flag
    publishes name and email but keeps the phone private."""
    if any(trim(row.get(col)) is not None for col in _SHARE_COLUMNS):
        return tuple(parse_flag(row.get(col)) for col in _SHARE_COLUMNS)  # type: ignore[return-value]
    listed = parse_flag(row.get("Directory"))
    return (listed, listed, False)


def member_from_legacy_row(row: dict[str, Any], today: date) -> Member:
    """Build the canonical Member for a legacy row (allow-listed columns only)."""
    legacy = {k: row.get(k) for k in LEGACY_MEMBER_FIELDS}
    status = trim(legacy["Status"]) or ""
    member = Member(
        email=normalize_email(legacy["Email"]) or "",
        first=text_or_empty(legacy["First"]),
        last=text_or_empty(legacy["Last"]),
        phone=text_or_empty(legacy["Phone"]),
        period=parse_int(legacy["Period"], default=1) or 1,
        joined=parse_date(legacy["Joined"]),
        expires=parse_date(legacy["Expires"]),
        renewed_on=parse_date(legacy["Renewed On"]),
        status=STATUS_ACTIVE if status.lower() == "active" else STATUS_EXPIRED,
        migrated=today,
    )
    member.set_directory_sharing(_legacy_directory_sharing(legacy))
    return member


# ---------------------------------------------------------------------------
# Batch entry point
# ---------------------------------------------------------------------------

def migrate_members(
    legacy_rows: list[dict[str, Any]],
    members: list[Member],
    schedule: list[ScheduleEntry],
    ctx: RunContext,
    group_add: GroupAdd,
    send_email: SendEmail,
) -> MigrationResult:
    """Migrate eligible legacy rows; stamps 'Migrated' on each source row migrated.

    The stamp, the new member and its schedule entries are written only after
    the row's side effects succeed, so a failed row stays eligible for the
    next run.  Errors are collected per row; see ``result.raise_if_errors()``.
    """
    result = MigrationResult()
    counters = result.counters

    for idx, row in enumerate(legacy_rows):
        counters.rows_read += 1
        row_num = idx + 2
        email = normalize_email(row.get("Email"))

        if trim(row.get("Migrated")) is not None:
            counters.rows_skipped_already_migrated += 1
            continue
        if "Migrate Me" in row and not parse_flag(row.get("Migrate Me")):
            counters.rows_skipped_not_flagged += 1
            continue
        if not email:
            log.warning("Skipping row %s, no email address", row_num)
            counters.rows_skipped_no_email += 1
            counters.warnings.append(f"row {row_num}: no email address")
            continue
        if find_active_member(members, email) is not None:
            log.warning("Skipping %s on row %s, already an active member", email, row_num)
            counters.rows_skipped_active_member += 1
            counters.warnings.append(f"row {row_num}: {email} already an active member")
            continue

        try:
            member = member_from_legacy_row(row, ctx.today)
            entries: list[ScheduleEntry] = []
            lapsed = False
            if member.is_active:
                log.info(
                    "Migrating Active member %s, row %s - joining groups and sending member an email",
                    email, row_num,
                )
                if member.expires is None:
                    raise ValueError("Active legacy member has no Expires date")
                entries = build_schedule_entries(
                    member.email, member.expires, ctx.action_specs, ctx.today,
                    immediate_type=MIGRATE if ctx.schedule_immediate_actions else None,
                    skip_elapsed=True,
                )
                lapsed = TERMINAL_TYPE in ctx.action_specs and not any(
                    e.type == TERMINAL_TYPE for e in entries
                )
                if lapsed:
                    log.warning(
                        "%s on row %s lapsed before migration; %s scheduled for today",
                        email, row_num, TERMINAL_TYPE,
                    )
                    entries.append(ScheduleEntry(email=member.email, type=TERMINAL_TYPE, date=ctx.today))
                message = None
                if not ctx.schedule_immediate_actions:
                    message = compose_message(ctx.spec(MIGRATE), member)
                for group_email in ctx.groups:
                    group_add(member.email, group_email)
                    counters.group_adds += 1
                if message is not None:
                    send_email(message)
                    counters.emails_sent += 1
            else:
                log.info(
                    "Migrating Inactive member %s, row %s - no groups will be joined or emails sent",
                    email, row_num,
                )
                counters.rows_migrated_inactive += 1
        except Exception as exc:
            error = RecordError(exc, idx, email, record_kind="migration")
            log.error("%s", error)
            result.errors.append(error)
            counters.record_errors += 1
            counters.warnings.append(str(error))
            continue

        row["Migrated"] = ctx.today
        members.append(member)
        schedule.extend(entries)
        counters.schedule_entries_added += len(entries)
        counters.rows_migrated += 1
        if lapsed:
            counters.rows_migrated_lapsed += 1
        result.migrated += 1
        log.info("Migrated %s, row %s", email, row_num)

    return result


def build_migrations_report(result: MigrationResult, dry_run: bool = False) -> str:
    c = result.counters
    lines = [
        "=== Migration Run Report ===",
        f"dry_run              : {dry_run}",
        f"rows read            : {c.rows_read}",
        f"rows migrated        : {c.rows_migrated}",
        f"  of which inactive  : {c.rows_migrated_inactive}",
        f"  of which lapsed    : {c.rows_migrated_lapsed}",
        f"already migrated     : {c.rows_skipped_already_migrated}",
        f"not flagged          : {c.rows_skipped_not_flagged}",
        f"no email             : {c.rows_skipped_no_email}",
        f"already active       : {c.rows_skipped_active_member}",
        f"group adds           : {c.group_adds}",
        f"emails sent          : {c.emails_sent}",
        f"schedule entries     : {c.schedule_entries_added}",
        f"record errors        : {c.record_errors}",
    ]
    if c.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in c.warnings[:10]]
        if len(c.warnings) > 10:
            lines.append(f"  ... and {len(c.warnings) - 10} more")
    return "\n".join(lines)
