"""membership_lifecycle.process_expirations

Delivers due action-schedule entries (--mode expirations).

Member state machine:
    Active --Expiry1..Expiry3 (notify only)--> Active --Expiry4--> Expired

Run order:
  1. Every entry dated on or before today is retired from the schedule up
     front, so nothing delivered in this run can be delivered again.
  2. Due entries are visited latest date first (ties: Expiry4, then highest
     stage), so when Expiry2 and Expiry4 are both overdue, Expiry4 wins.
  3. Only the first due entry per email is acted on; the rest are logged
     and discarded.
  4. Expiry4 sets Status=Expired, drops the member's remaining entries,
     removes them from every auto group and records them in the expired
     history before the final notice is sent.

An entry whose member cannot be found is logged and still retired.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from membership_lifecycle.notify import SendEmail, compose_message
from membership_lifecycle.records import (
    STATUS_EXPIRED,
    TERMINAL_TYPE,
    Member,
    ScheduleEntry,
    find_active_member,
)
from membership_lifecycle.schedule import remove_entries_for_email
from membership_lifecycle.shared import BatchError, GroupRemove, RecordError, RunContext

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Counters / result
# ---------------------------------------------------------------------------

@dataclass
class ExpirationCounters:
    entries_due: int = 0
    notifications_sent: int = 0
    members_expired: int = 0
    group_removes: int = 0
    pending_entries_dropped: int = 0
    duplicate_stages_skipped: int = 0
    missing_members: int = 0
    record_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class ExpirationResult:
    processed: int = 0
    expired: list[Member] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    counters: ExpirationCounters = field(default_factory=ExpirationCounters)

    def raise_if_errors(self) -> None:
        if self.errors:
            raise BatchError("Errors occurred while processing the action schedule", self.errors)


# ---------------------------------------------------------------------------
# Stage handling
# ---------------------------------------------------------------------------

def _expire_member(
    member: Member,
    schedule: list[ScheduleEntry],
    ctx: RunContext,
    group_remove: GroupRemove,
    expired_members: list[Member] | None,
    result: ExpirationResult,
) -> None:
    counters = result.counters
    member.status = STATUS_EXPIRED
    counters.members_expired += 1
    result.expired.append(member)
    if expired_members is not None:
        expired_members.append(replace(member))

    dropped = remove_entries_for_email(member.email, schedule)
    if dropped:
        log.info("%s - dropped %d pending entries", member.email, dropped)
        counters.pending_entries_dropped += dropped

    for group_email in ctx.groups:
        group_remove(member.email, group_email)
        counters.group_removes += 1
        log.info("%s - %s removed from group %s", TERMINAL_TYPE, member.email, group_email)


# ---------------------------------------------------------------------------
# Batch entry point
# ---------------------------------------------------------------------------

def process_expirations(
    members: list[Member],
    schedule: list[ScheduleEntry],
    ctx: RunContext,
    group_remove: GroupRemove,
    send_email: SendEmail,
    expired_members: list[Member] | None = None,
) -> ExpirationResult:
    """Process every schedule entry due on or before ``ctx.today``.

    ``members`` and ``schedule`` are mutated in place; newly expired members
    are also appended (as copies) to ``expired_members`` when given.
    ``result.processed`` counts the due entries retired, including skipped ones.
    """
    result = ExpirationResult()
    counters = result.counters
    today = ctx.today

    due: list[tuple[int, ScheduleEntry]] = []
    remaining: list[ScheduleEntry] = []
    for idx, entry in enumerate(schedule):
        if entry.date <= today:
            sheet_idx = entry.row_index if entry.row_index is not None else idx
            due.append((sheet_idx, entry))
        else:
            remaining.append(entry)
    schedule[:] = remaining
    due.sort(
        key=lambda item: (item[1].date, item[1].type == TERMINAL_TYPE, item[1].type),
        reverse=True,
    )
    counters.entries_due = len(due)

    handled: set[str] = set()
    for idx, entry in due:
        result.processed += 1
        log.info("%s - %s", entry.type, entry.email)

        if entry.email in handled:
            log.warning("Skipping %s for %s - already processed this run", entry.type, entry.email)
            counters.duplicate_stages_skipped += 1
            continue
        handled.add(entry.email)

        member = find_active_member(members, entry.email)
        if member is None:
            msg = f"Skipping {entry.type} for {entry.email} - not an active member"
            log.warning("%s", msg)
            counters.missing_members += 1
            counters.warnings.append(msg)
            continue

        try:
            spec = ctx.spec(entry.type)
            if entry.type == TERMINAL_TYPE:
                _expire_member(member, schedule, ctx, group_remove, expired_members, result)
            send_email(compose_message(spec, member))
            counters.notifications_sent += 1
            log.info("%s - %s - Email sent", entry.type, member.email)
        except Exception as exc:
            error = RecordError(exc, idx, entry.email, record_kind="schedule entry")
            log.error("%s", error)
            result.errors.append(error)
            counters.record_errors += 1
            counters.warnings.append(str(error))

    return result


def build_expirations_report(result: ExpirationResult, dry_run: bool = False) -> str:
    c = result.counters
    lines = [
        "=== Action Schedule Run Report ===",
        f"dry_run              : {dry_run}",
        f"entries due          : {c.entries_due}",
        f"notifications sent   : {c.notifications_sent}",
        f"members expired      : {c.members_expired}",
        f"group removes        : {c.group_removes}",
        f"pending dropped      : {c.pending_entries_dropped}",
        f"duplicate stages     : {c.duplicate_stages_skipped}",
        f"missing members      : {c.missing_members}",
        f"record errors        : {c.record_errors}",
    ]
    if c.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in c.warnings[:10]]
        if len(c.warnings) > 10:
            lines.append(f"  ... and {len(c.warnings) - 10} more")
    return "\n".join(lines)
