"""Fixtures for end-to-end CLI runs against CSV sheets in a temp directory."""

from __future__ import annotations

import csv
import textwrap
from pathlib import Path

import pytest

RUN_YAML = textwrap.dedent("""\
    version: "test-1"
    reply_to: membership@example.org
    groups:
      - email: members@example.org
        subscription: auto
    action_specs:
      - type: Join
        subject: "Welcome {First}"
        body: "<p>Until {Expires}</p>"
      - type: Renew
        subject: "Renewed {First}"
        body: "<p>Until {Expires}</p>"
      - type: Migrate
        subject: "Migrated {First}"
        body: "<p>Until {Expires}</p>"
      - type: Expiry1
        offset: -30
        subject: "30 days"
        body: "<p>{Expires}</p>"
      - type: Expiry2
        offset: -7
        subject: "7 days"
        body: "<p>{Expires}</p>"
      - type: Expiry3
        offset: 0
        subject: "Today"
        body: "<p>{Expires}</p>"
      - type: Expiry4
        offset: 10
        subject: "Expired"
        body: "<p>{Expires}</p>"
""")


def write_csv(path: Path, header: list[str], rows: list[list[str]]) -> Path:
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(header)
        writer.writerows(rows)
    return path


def read_csv(path: Path) -> list[dict]:
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.DictReader(fh))


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    p = tmp_path / "membership.yml"
    p.write_text(RUN_YAML, encoding="utf-8")
    return p


@pytest.fixture()
def csv_io():
    """(write_csv, read_csv) helpers."""
    return write_csv, read_csv
