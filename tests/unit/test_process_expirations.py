"""Unit tests for membership_lifecycle.process_expirations."""

from __future__ import annotations

from datetime import date, timedelta

from membership_lifecycle.process_expirations import (
    build_expirations_report,
    process_expirations,
)
from membership_lifecycle.records import STATUS_EXPIRED, Member, ScheduleEntry
from membership_lifecycle.schedule import build_schedule_entries
from membership_lifecycle.shared import RunContext

TODAY = date(2025, 6, 1)
GROUP = "members@example.org"


def _member(email="ann@example.org", expires=date(2025, 6, 1)) -> Member:
    return Member(email=email, first="Ann", last="Lee", joined=date(2024, 6, 1), expires=expires)


class TestNotificationStages:
    def test_due_reminder_sent_and_retired(self, ctx, recorder):
        member = _member(expires=date(2025, 7, 1))
        schedule = [
            ScheduleEntry("ann@example.org", "Expiry1", TODAY),
            ScheduleEntry("ann@example.org", "Expiry2", date(2025, 6, 24)),
        ]
        removes, emails = recorder(), recorder()

        result = process_expirations([member], schedule, ctx, removes, emails)

        assert result.processed == 1
        assert emails.calls[0][0].subject == "30 days left"
        assert member.status == "Active"
        assert removes.calls == []
        assert schedule == [ScheduleEntry("ann@example.org", "Expiry2", date(2025, 6, 24))]

    def test_nothing_due(self, ctx, recorder):
        schedule = [ScheduleEntry("ann@example.org", "Expiry1", TODAY + timedelta(days=1))]
        emails = recorder()
        result = process_expirations([_member()], schedule, ctx, recorder(), emails)
        assert result.processed == 0
        assert emails.calls == []
        assert len(schedule) == 1

    def test_immediate_join_entry_is_notification_only(self, ctx, recorder):
        member = _member(expires=date(2026, 6, 1))
        schedule = [ScheduleEntry("ann@example.org", "Join", TODAY)]
        emails = recorder()
        process_expirations([member], schedule, ctx, recorder(), emails)
        assert emails.calls[0][0].subject == "Welcome Ann"
        assert member.status == "Active"
        assert schedule == []


class TestTerminalStage:
    def test_expiry4_expires_member(self, ctx, recorder):
        member = _member(expires=date(2025, 5, 22))
        schedule = [
            ScheduleEntry("ann@example.org", "Expiry4", TODAY),
            ScheduleEntry("ann@example.org", "Expiry1", date(2025, 9, 1)),
        ]
        history: list[Member] = []
        removes, emails = recorder(), recorder()

        result = process_expirations([member], schedule, ctx, removes, emails, history)

        assert member.status == STATUS_EXPIRED
        assert removes.calls == [("ann@example.org", GROUP)]
        assert emails.calls[0][0].subject == "Expired"
        assert schedule == []
        assert result.expired == [member]
        assert len(history) == 1
        assert history[0] is not member
        assert history[0].status == STATUS_EXPIRED
        assert result.counters.pending_entries_dropped == 1

    def test_expiry4_wins_over_older_overdue_stage(self, ctx, recorder):
        member = _member()
        schedule = [
            ScheduleEntry("ann@example.org", "Expiry2", date(2025, 5, 20)),
            ScheduleEntry("ann@example.org", "Expiry4", date(2025, 5, 30)),
        ]
        emails = recorder()

        result = process_expirations([member], schedule, ctx, recorder(), emails)

        assert [c[0].subject for c in emails.calls] == ["Expired"]
        assert member.status == STATUS_EXPIRED
        assert schedule == []
        assert result.processed == 2
        assert result.counters.duplicate_stages_skipped == 1

    def test_expiry4_wins_tie_on_same_date(self, ctx, recorder):
        member = _member()
        schedule = [
            ScheduleEntry("ann@example.org", "Expiry2", TODAY),
            ScheduleEntry("ann@example.org", "Expiry4", TODAY),
        ]
        emails = recorder()
        process_expirations([member], schedule, ctx, recorder(), emails)
        assert [c[0].subject for c in emails.calls] == ["Expired"]
        assert member.status == STATUS_EXPIRED

    def test_expiry4_offset_boundary(self, specs, recorder):
        expires = date(2025, 6, 1)
        member = _member(expires=expires)
        schedule = build_schedule_entries(member.email, expires, specs, date(2024, 6, 1))

        day9 = RunContext(today=expires + timedelta(days=9), action_specs=specs, groups=[GROUP])
        process_expirations([member], schedule, day9, recorder(), recorder())
        assert member.status == "Active"
        assert [e.type for e in schedule] == ["Expiry4"]

        day10 = RunContext(today=expires + timedelta(days=10), action_specs=specs, groups=[GROUP])
        process_expirations([member], schedule, day10, recorder(), recorder())
        assert member.status == STATUS_EXPIRED
        assert schedule == []

    def test_failed_final_email_still_expires(self, ctx, recorder):
        member = _member()
        schedule = [ScheduleEntry("ann@example.org", "Expiry4", TODAY)]
        removes = recorder()

        result = process_expirations(
            [member], schedule, ctx, removes, recorder(fail_for={"ann@example.org"}),
        )

        assert member.status == STATUS_EXPIRED
        assert removes.calls == [("ann@example.org", GROUP)]
        assert len(result.errors) == 1
        assert result.errors[0].record_kind == "schedule entry"
        assert schedule == []


class TestAnomalies:
    def test_missing_member_entry_retired(self, ctx, recorder):
        schedule = [ScheduleEntry("ghost@example.org", "Expiry1", TODAY)]
        emails = recorder()
        result = process_expirations([_member()], schedule, ctx, recorder(), emails)
        assert schedule == []
        assert emails.calls == []
        assert result.errors == []
        assert result.counters.missing_members == 1

    def test_expired_member_not_notified(self, ctx, recorder):
        member = _member()
        member.status = STATUS_EXPIRED
        schedule = [ScheduleEntry("ann@example.org", "Expiry2", TODAY)]
        emails = recorder()
        process_expirations([member], schedule, ctx, recorder(), emails)
        assert emails.calls == []
        assert schedule == []

    def test_missing_spec_is_collected(self, specs, recorder):
        del specs["Expiry1"]
        ctx = RunContext(today=TODAY, action_specs=specs, groups=[GROUP])
        schedule = [
            ScheduleEntry("ann@example.org", "Expiry1", TODAY),
            ScheduleEntry("bob@example.org", "Expiry3", TODAY),
        ]
        members = [_member(), _member("bob@example.org")]
        emails = recorder()

        result = process_expirations(members, schedule, ctx, recorder(), emails)

        assert len(result.errors) == 1
        assert result.errors[0].email == "ann@example.org"
        assert emails.recipients == ["bob@example.org"]
        assert schedule == []

    def test_error_row_number_follows_sheet_position(self, specs, recorder):
        del specs["Expiry1"]
        ctx = RunContext(today=TODAY, action_specs=specs, groups=[GROUP])
        entry = ScheduleEntry("ann@example.org", "Expiry1", TODAY, row_index=5)

        result = process_expirations([_member()], [entry], ctx, recorder(), recorder())

        assert [e.row_number for e in result.errors] == [7]


def test_report_lists_counters(ctx, recorder):
    schedule = [ScheduleEntry("ann@example.org", "Expiry4", TODAY)]
    result = process_expirations([_member()], schedule, ctx, recorder(), recorder())
    report = build_expirations_report(result)
    assert "members expired      : 1" in report
    assert "group removes        : 1" in report
