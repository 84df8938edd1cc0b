"""membership_lifecycle.process_transactions

Turns paid payment transactions into member joins and renewals
(--mode transactions).

Per transaction, in sheet order:
  1. Already Processed          -> skipped (re-running a batch is a no-op).
  2. Payable Status not 'paid*' -> left open; has_pending_payments is set.
  3. Payer has an Active member -> renewal: Period, Renewed On, Expires,
                                   schedule regenerated, Renew email.
     Otherwise                  -> join: new Active member appended (Expired
                                   history rows are never overwritten), added
                                   to every auto group, Join email.
  4. Processed/Timestamp stamped only when every step above succeeded.

Side effects run before the in-memory working set is touched, so a
transaction whose group add or email fails leaves no partial member or
schedule change behind and is simply retried on the next run.  Failures are
collected as RecordError (row number + email); the batch always continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from membership_lifecycle.dates import calculate_expiration
from membership_lifecycle.normalize import (
    is_paid,
    is_valid_email,
    parse_directory_sharing,
    parse_period,
)
from membership_lifecycle.notify import SendEmail, compose_message
from membership_lifecycle.records import (
    JOIN,
    RENEW,
    STATUS_ACTIVE,
    Member,
    ScheduleEntry,
    Transaction,
    find_active_member,
)
from membership_lifecycle.schedule import build_schedule_entries, replace_schedule_for_member
from membership_lifecycle.shared import BatchError, GroupAdd, RecordError, RunContext

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Counters / result
# ---------------------------------------------------------------------------

@dataclass
class TransactionCounters:
    rows_read: int = 0
    rows_skipped_processed: int = 0
    rows_pending_payment: int = 0
    members_joined: int = 0
    members_renewed: int = 0
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
class TransactionResult:
    records_changed: bool = False
    has_pending_payments: bool = False
    errors: list[RecordError] = field(default_factory=list)
    counters: TransactionCounters = field(default_factory=TransactionCounters)

    def raise_if_errors(self) -> None:
        if self.errors:
            raise BatchError("Errors occurred while processing transactions", self.errors)


# ---------------------------------------------------------------------------
# Per-transaction steps
# ---------------------------------------------------------------------------

def _renew_member(
    txn: Transaction,
    member: Member,
    period: int,
    schedule: list[ScheduleEntry],
    ctx: RunContext,
    send_email: SendEmail,
    counters: TransactionCounters,
) -> None:
    renewed = replace(
        member,
        period=period,
        renewed_on=ctx.today,
        expires=calculate_expiration(ctx.today, member.expires, period),
    )
    sharing = parse_directory_sharing(txn.directory)
    if sharing is not None:
        renewed.set_directory_sharing(sharing)

    entries = build_schedule_entries(
        renewed.email, renewed.expires, ctx.action_specs, ctx.today,
        immediate_type=RENEW if ctx.schedule_immediate_actions else None,
    )
    if not ctx.schedule_immediate_actions:
        send_email(compose_message(ctx.spec(RENEW), renewed))
        counters.emails_sent += 1

    member.period = renewed.period
    member.renewed_on = renewed.renewed_on
    member.expires = renewed.expires
    member.set_directory_sharing(
        (renewed.share_name, renewed.share_email, renewed.share_phone)
    )
    replace_schedule_for_member(member.email, entries, schedule)
    counters.schedule_entries_added += len(entries)
    counters.members_renewed += 1


def _join_member(
    txn: Transaction,
    period: int,
    members: list[Member],
    schedule: list[ScheduleEntry],
    ctx: RunContext,
    group_add: GroupAdd,
    send_email: SendEmail,
    counters: TransactionCounters,
) -> None:
    new_member = Member(
        email=txn.email or "",
        first=txn.first_name,
        last=txn.last_name,
        phone=txn.phone,
        period=period,
        joined=ctx.today,
        expires=calculate_expiration(ctx.today, ctx.today, period),
        renewed_on=None,
        status=STATUS_ACTIVE,
    )
    sharing = parse_directory_sharing(txn.directory)
    if sharing is not None:
        new_member.set_directory_sharing(sharing)

    entries = build_schedule_entries(
        new_member.email, new_member.expires, ctx.action_specs, ctx.today,
        immediate_type=JOIN if ctx.schedule_immediate_actions else None,
    )
    message = None
    if not ctx.schedule_immediate_actions:
        message = compose_message(ctx.spec(JOIN), new_member)

    for group_email in ctx.groups:
        group_add(new_member.email, group_email)
        counters.group_adds += 1
    if message is not None:
        send_email(message)
        counters.emails_sent += 1

    members.append(new_member)
    schedule.extend(entries)
    counters.schedule_entries_added += len(entries)
    counters.members_joined += 1


# ---------------------------------------------------------------------------
# Batch entry point
# ---------------------------------------------------------------------------

def process_transactions(
    transactions: list[Transaction],
    members: list[Member],
    schedule: list[ScheduleEntry],
    ctx: RunContext,
    group_add: GroupAdd,
    send_email: SendEmail,
) -> TransactionResult:
    """Apply every open, paid transaction to the member list and schedule.

    ``members`` and ``schedule`` are mutated in place.  Never raises for a
    single bad transaction; inspect ``result.errors`` or call
    ``result.raise_if_errors()``.
    """
    result = TransactionResult()
    counters = result.counters

    for idx, txn in enumerate(transactions):
        counters.rows_read += 1
        row_num = idx + 2
        if txn.is_processed:
            counters.rows_skipped_processed += 1
            continue
        if not is_paid(txn.payable_status):
            result.has_pending_payments = True
            counters.rows_pending_payment += 1
            continue

        try:
            if not is_valid_email(txn.email):
                raise ValueError(f"missing or malformed email address: {txn.email!r}")
            period = parse_period(txn.payment)
            member = find_active_member(members, txn.email)
            if member is not None:
                log.info("transaction on row %s %s is a renewing member", row_num, txn.email)
                _renew_member(txn, member, period, schedule, ctx, send_email, counters)
            else:
                log.info("transaction on row %s %s is a new member", row_num, txn.email)
                _join_member(
                    txn, period, members, schedule, ctx, group_add, send_email, counters,
                )
        except Exception as exc:
            error = RecordError(exc, idx, txn.email, record_kind="transaction")
            log.error("%s", error)
            result.errors.append(error)
            counters.record_errors += 1
            counters.warnings.append(str(error))
            continue

        txn.mark_processed(ctx.today)
        result.records_changed = True

    return result


def build_transactions_report(result: TransactionResult, dry_run: bool = False) -> str:
    c = result.counters
    lines = [
        "=== Transactions Run Report ===",
        f"dry_run              : {dry_run}",
        f"rows read            : {c.rows_read}",
        f"already processed    : {c.rows_skipped_processed}",
        f"pending payment      : {c.rows_pending_payment}",
        f"members joined       : {c.members_joined}",
        f"members renewed      : {c.members_renewed}",
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
