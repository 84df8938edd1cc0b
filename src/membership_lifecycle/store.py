"""membership_lifecycle.store

CSV-backed working set for one run.

Each sheet is one CSV file in the data directory:

    Transactions.csv      payment form rows (unknown columns kept)
    ActiveMembers.csv     canonical member list, Active and Expired rows
    ExpirySchedule.csv    pending action-schedule entries
    MigratingMembers.csv  legacy member rows awaiting migration
    ExpiredMembers.csv    history of members expired by the schedule

Headers are whitespace-stripped on read.  A missing sheet loads as empty and
is created on save.  Schedule rows whose Date is not a calendar date are
reported through the RejectWriter and written back untouched, so a bad cell
is never silently dropped from the sheet.
"""

from __future__ import annotations

import csv
import errno
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Iterator

from membership_lifecycle.dates import to_iso
from membership_lifecycle.records import (
    MEMBER_HEADERS,
    SCHEDULE_HEADERS,
    TRANSACTION_HEADERS,
    Member,
    ScheduleEntry,
    Transaction,
)
from membership_lifecycle.shared import RejectWriter

log = logging.getLogger(__name__)

TRANSACTIONS_FILE = "Transactions.csv"
MEMBERS_FILE = "ActiveMembers.csv"
SCHEDULE_FILE = "ExpirySchedule.csv"
MIGRATING_FILE = "MigratingMembers.csv"
EXPIRED_FILE = "ExpiredMembers.csv"
LOCK_FILE = ".membership.lock"


class RunLockedError(RuntimeError):
    """Another run holds the data-directory lock."""


# ---------------------------------------------------------------------------
# Run lock
# ---------------------------------------------------------------------------

@contextmanager
def run_lock(data_dir: Path) -> Iterator[Path]:
    """Hold an exclusive lock file in ``data_dir`` for the duration of a run.

    Raises:
        RunLockedError: the lock file already exists.
    """
    lock_path = data_dir / LOCK_FILE
    data_dir.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except OSError as exc:
        if exc.errno == errno.EEXIST:
            raise RunLockedError(
                f"{lock_path} exists; another run is in progress or a previous run crashed"
            ) from exc
        raise
    try:
        os.write(fd, str(os.getpid()).encode("ascii"))
        os.close(fd)
        yield lock_path
    finally:
        lock_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Sheet I/O
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with header keys whitespace-stripped."""
    return {k.strip(): v for k, v in raw.items() if k is not None}


def read_sheet(path: Path) -> tuple[list[str], list[dict[str, Any]]]:
    """Return (headers, rows) for a CSV sheet; a missing file reads as empty."""
    if not path.exists():
        log.info("%s not found, starting empty", path)
        return [], []
    with open(path, newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        headers = [h.strip() for h in (reader.fieldnames or [])]
        rows = [normalize_headers(raw) for raw in reader]
    return headers, rows


def _cell(value: Any) -> Any:
    if isinstance(value, date):
        return to_iso(value)
    return "" if value is None else value


def write_sheet(path: Path, fieldnames: list[str], rows: list[dict[str, Any]]) -> None:
    """Rewrite a sheet atomically; date values are stored as ISO dates."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: _cell(row.get(k)) for k in fieldnames})
    os.replace(tmp_path, path)


def _merge_headers(existing: list[str], required: list[str]) -> list[str]:
    return existing + [h for h in required if h not in existing]


# ---------------------------------------------------------------------------
# Working set
# ---------------------------------------------------------------------------

@dataclass
class WorkingSet:
    data_dir: Path
    transactions: list[Transaction] = field(default_factory=list)
    members: list[Member] = field(default_factory=list)
    schedule: list[ScheduleEntry] = field(default_factory=list)
    legacy_rows: list[dict[str, Any]] = field(default_factory=list)
    expired_members: list[Member] = field(default_factory=list)
    transaction_headers: list[str] = field(default_factory=lambda: list(TRANSACTION_HEADERS))
    legacy_headers: list[str] = field(default_factory=list)
    unparsed_schedule_rows: list[dict[str, Any]] = field(default_factory=list)


def load_working_set(data_dir: Path, rejects: RejectWriter | None = None) -> WorkingSet:
    ws = WorkingSet(data_dir=data_dir)

    headers, rows = read_sheet(data_dir / TRANSACTIONS_FILE)
    ws.transaction_headers = _merge_headers(headers, TRANSACTION_HEADERS)
    ws.transactions = [Transaction.from_row(row) for row in rows]

    _, rows = read_sheet(data_dir / MEMBERS_FILE)
    ws.members = [Member.from_row(row) for row in rows]

    _, rows = read_sheet(data_dir / SCHEDULE_FILE)
    for i, row in enumerate(rows):
        try:
            ws.schedule.append(ScheduleEntry.from_row(row, row_index=i))
        except ValueError as exc:
            log.error("%s row %s: %s", SCHEDULE_FILE, i + 2, exc)
            ws.unparsed_schedule_rows.append(row)
            if rejects is not None:
                rejects.write(
                    {"_record_kind": "schedule entry", "_row_number": i + 2,
                     "_email": row.get("Email") or ""},
                    f"ValueError: {exc}",
                )

    headers, rows = read_sheet(data_dir / MIGRATING_FILE)
    ws.legacy_headers = _merge_headers(headers, ["Migrated"])
    ws.legacy_rows = rows

    _, rows = read_sheet(data_dir / EXPIRED_FILE)
    ws.expired_members = [Member.from_row(row) for row in rows]

    log.info(
        "Loaded %d transactions, %d members, %d schedule entries, %d legacy rows from %s",
        len(ws.transactions), len(ws.members), len(ws.schedule), len(ws.legacy_rows), data_dir,
    )
    return ws


def save_working_set(ws: WorkingSet) -> list[Path]:
    """Write every sheet back to the data directory; returns the paths written.

    The legacy sheet is only rewritten when it exists or has rows.
    """
    d = ws.data_dir
    write_sheet(
        d / TRANSACTIONS_FILE, ws.transaction_headers,
        [txn.to_sheet_row() for txn in ws.transactions],
    )
    write_sheet(d / MEMBERS_FILE, MEMBER_HEADERS, [m.to_sheet_row() for m in ws.members])
    write_sheet(
        d / SCHEDULE_FILE, SCHEDULE_HEADERS,
        [e.to_sheet_row() for e in ws.schedule] + ws.unparsed_schedule_rows,
    )
    write_sheet(
        d / EXPIRED_FILE, MEMBER_HEADERS,
        [m.to_sheet_row() for m in ws.expired_members],
    )
    written = [d / TRANSACTIONS_FILE, d / MEMBERS_FILE, d / SCHEDULE_FILE, d / EXPIRED_FILE]
    if ws.legacy_rows or (d / MIGRATING_FILE).exists():
        write_sheet(d / MIGRATING_FILE, ws.legacy_headers, ws.legacy_rows)
        written.append(d / MIGRATING_FILE)
    return written
