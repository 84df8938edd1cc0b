"""Unit tests for membership_lifecycle.store (CSV working set + run lock)."""

from __future__ import annotations

import csv
from datetime import date
from pathlib import Path

import pytest

from membership_lifecycle.records import Member, ScheduleEntry
from membership_lifecycle.shared import RejectWriter
from membership_lifecycle.store import (
    LOCK_FILE,
    RunLockedError,
    load_working_set,
    read_sheet,
    run_lock,
    save_working_set,
)


def _write(path: Path, header: list[str], rows: list[list[str]]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(header)
        writer.writerows(rows)


def _read(path: Path) -> list[dict]:
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.DictReader(fh))


class TestReadSheet:
    def test_headers_are_stripped(self, tmp_path):
        path = tmp_path / "s.csv"
        _write(path, [" Email ", "Type  "], [["a@b.org", "Expiry1"]])
        headers, rows = read_sheet(path)
        assert headers == ["Email", "Type"]
        assert rows == [{"Email": "a@b.org", "Type": "Expiry1"}]

    def test_bom_is_ignored(self, tmp_path):
        path = tmp_path / "s.csv"
        path.write_bytes("\ufeffEmail\na@b.org\n".encode("utf-8"))
        headers, _ = read_sheet(path)
        assert headers == ["Email"]

    def test_missing_file_is_empty(self, tmp_path):
        assert read_sheet(tmp_path / "absent.csv") == ([], [])


class TestWorkingSet:
    def test_load_and_save(self, tmp_path):
        _write(
            tmp_path / "Transactions.csv",
            ["Timestamp", "Email Address", "First Name", "Last Name", "Phone",
             "Payable Status", "Payment", "Directory", "Processed", "Shirt Size"],
            [["", "Ann@Example.org", "Ann", "Lee", "", "Paid", "1 year", "", "", "M"]],
        )
        _write(
            tmp_path / "ActiveMembers.csv",
            ["Email", "First", "Last", "Expires", "Status"],
            [["bob@example.org", "Bob", "Ray", "2025-07-01", "Active"]],
        )
        _write(
            tmp_path / "ExpirySchedule.csv",
            ["Date", "Type", "Email"],
            [["2025-06-01", "Expiry1", "bob@example.org"]],
        )

        ws = load_working_set(tmp_path)
        assert ws.transactions[0].email == "ann@example.org"
        assert ws.transactions[0].extra == {"Shirt Size": "M"}
        assert ws.members[0].expires == date(2025, 7, 1)
        assert ws.schedule == [ScheduleEntry("bob@example.org", "Expiry1", date(2025, 6, 1))]
        assert ws.legacy_rows == []

        ws.transactions[0].mark_processed(date(2025, 6, 1))
        ws.members.append(Member(email="ann@example.org", expires=date(2026, 6, 1)))
        ws.expired_members.append(Member(email="old@example.org", status="Expired"))
        written = save_working_set(ws)

        assert {p.name for p in written} == {
            "Transactions.csv", "ActiveMembers.csv", "ExpirySchedule.csv", "ExpiredMembers.csv",
        }
        txn_rows = _read(tmp_path / "Transactions.csv")
        assert txn_rows[0]["Processed"] == "2025-06-01"
        assert txn_rows[0]["Shirt Size"] == "M"
        member_rows = _read(tmp_path / "ActiveMembers.csv")
        assert [r["Email"] for r in member_rows] == ["bob@example.org", "ann@example.org"]
        assert member_rows[1]["Expires"] == "2026-06-01"
        assert _read(tmp_path / "ExpiredMembers.csv")[0]["Status"] == "Expired"
        assert not (tmp_path / "MigratingMembers.csv").exists()

    def test_bad_schedule_row_rejected_but_kept(self, tmp_path):
        _write(
            tmp_path / "ExpirySchedule.csv",
            ["Date", "Type", "Email"],
            [["someday", "Expiry1", "bob@example.org"], ["2025-06-01", "Expiry2", "bob@example.org"]],
        )
        rejects_path = tmp_path / "rejects.csv"
        rejects = RejectWriter(rejects_path)
        ws = load_working_set(tmp_path, rejects)
        rejects.close()

        assert [e.type for e in ws.schedule] == ["Expiry2"]
        assert ws.schedule[0].row_index == 1
        reject_rows = _read(rejects_path)
        assert reject_rows[0]["_row_number"] == "2"
        assert "not a calendar date" in reject_rows[0]["_reject_reason"]

        save_working_set(ws)
        dates = [r["Date"] for r in _read(tmp_path / "ExpirySchedule.csv")]
        assert sorted(dates) == ["2025-06-01", "someday"]

    def test_legacy_sheet_gets_migrated_column(self, tmp_path):
        _write(tmp_path / "MigratingMembers.csv", ["Email", "Status"], [["ann@example.org", "Active"]])
        ws = load_working_set(tmp_path)
        assert ws.legacy_headers == ["Email", "Status", "Migrated"]
        ws.legacy_rows[0]["Migrated"] = date(2025, 6, 1)
        save_working_set(ws)
        assert _read(tmp_path / "MigratingMembers.csv")[0]["Migrated"] == "2025-06-01"


class TestRunLock:
    def test_lock_created_and_released(self, tmp_path):
        with run_lock(tmp_path) as lock_path:
            assert lock_path == tmp_path / LOCK_FILE
            assert lock_path.exists()
        assert not (tmp_path / LOCK_FILE).exists()

    def test_second_lock_fails_fast(self, tmp_path):
        with run_lock(tmp_path):
            with pytest.raises(RunLockedError):
                with run_lock(tmp_path):
                    pass

    def test_lock_released_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with run_lock(tmp_path):
                raise RuntimeError("boom")
        assert not (tmp_path / LOCK_FILE).exists()
