"""membership_lifecycle.shared

Shared pieces used by the transaction, expiration and migration processors:
the per-run context, typed per-record errors, the lazy CSV error writer and
run-report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable

from membership_lifecycle.action_specs import ActionSpec
from membership_lifecycle.dates import date_only

# Callback signatures for the external collaborators
GroupAdd = Callable[[str, str], None]
GroupRemove = Callable[[str, str], None]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RecordError(Exception):
    """A failure while applying one input record, tagged from construction.

    ``record_index`` is the 0-based position in the input batch; the sheet
    row number adds one for the header and one for 1-based numbering.
    """

    def __init__(
        self,
        cause: BaseException,
        record_index: int,
        email: str | None,
        record_kind: str = "transaction",
    ) -> None:
        self.cause = cause
        self.record_index = record_index
        self.email = email
        self.record_kind = record_kind
        super().__init__(
            f"{record_kind} on row {self.row_number} {email or '<no email>'} had an error: "
            f"{type(cause).__name__}: {cause}"
        )
        self.__cause__ = cause

    @property
    def row_number(self) -> int:
        return self.record_index + 2


class BatchError(Exception):
    """Aggregate of every RecordError collected during one pass."""

    def __init__(self, message: str, errors: list[RecordError]) -> None:
        self.errors = list(errors)
        super().__init__(f"{message} ({len(self.errors)} error(s))")


class MissingActionSpecError(KeyError):
    """Raised when a stage has no configured action spec."""


# ---------------------------------------------------------------------------
# RunContext
# ---------------------------------------------------------------------------

@dataclass
class RunContext:
    """Everything one pass needs besides the working set itself.

    ``today`` is always supplied by the caller; no processor reads the clock.
    """

    today: date
    action_specs: dict[str, ActionSpec]
    groups: list[str] = field(default_factory=list)
    schedule_immediate_actions: bool = False

    def __post_init__(self) -> None:
        self.today = date_only(self.today)

    def spec(self, action_type: str) -> ActionSpec:
        try:
            return self.action_specs[action_type]
        except KeyError:
            raise MissingActionSpecError(f"no action spec configured for '{action_type}'") from None


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows and per-record errors."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def write_record_error(self, error: RecordError) -> None:
        self.write(
            {
                "_record_kind": error.record_kind,
                "_row_number": error.row_number,
                "_email": error.email or "",
            },
            f"{type(error.cause).__name__}: {error.cause}",
        )

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: Any,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
