"""membership_lifecycle.schedule

Builds and replaces a member's pending action-schedule entries.

Expiry stages are dated relative to the member's Expires date using each
spec's signed day offset.  A member has at most one pending entry per stage:
whenever Expires changes, every entry for the email is dropped and the full
set is regenerated from the new date.

Removal never splices the list being walked; a filtered copy is assigned
back into the caller's list so outside references observe the change.
"""

from __future__ import annotations

import logging
from datetime import date

from membership_lifecycle.action_specs import ActionSpec
from membership_lifecycle.dates import add_days
from membership_lifecycle.records import ScheduleEntry, is_expiry_type

log = logging.getLogger(__name__)


def build_schedule_entries(
    email: str,
    expires: date,
    action_specs: dict[str, ActionSpec],
    today: date,
    *,
    immediate_type: str | None = None,
    skip_elapsed: bool = False,
) -> list[ScheduleEntry]:
    """Return the schedule entries for a member expiring on ``expires``.

    Args:
        email: Member email the entries belong to.
        expires: The member's (new) expiration date.
        action_specs: Lookup of action type -> ActionSpec.
        today: Run date.
        immediate_type: When set (Join/Renew/Migrate), one entry of that type
            dated ``today`` is emitted ahead of the expiry stages.
        skip_elapsed: Suppress expiry entries dated on or before ``today``.
    """
    entries: list[ScheduleEntry] = []
    if immediate_type is not None:
        entries.append(ScheduleEntry(email=email, type=immediate_type, date=today))

    for action_type in sorted(action_specs):
        if not is_expiry_type(action_type):
            continue
        spec = action_specs[action_type]
        when = add_days(expires, spec.offset or 0)
        if skip_elapsed and when <= today:
            log.info("Not scheduling %s for %s: %s has already passed", action_type, email, when)
            continue
        entries.append(ScheduleEntry(email=email, type=action_type, date=when))
    return entries


def remove_entries_for_email(email: str, schedule: list[ScheduleEntry]) -> int:
    """Drop every entry for ``email`` in place; return how many were removed."""
    kept = [entry for entry in schedule if entry.email != email]
    removed = len(schedule) - len(kept)
    schedule[:] = kept
    return removed


def replace_schedule_for_member(
    email: str,
    new_entries: list[ScheduleEntry],
    schedule: list[ScheduleEntry],
) -> None:
    """Replace all of a member's pending entries with ``new_entries``."""
    removed = remove_entries_for_email(email, schedule)
    schedule.extend(new_entries)
    log.debug("Rescheduled %s: %d removed, %d added", email, removed, len(new_entries))
