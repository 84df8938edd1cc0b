"""Shared fixtures for processor unit tests.

Processors run against in-memory records with recording fake callbacks;
no files, network or SMTP are touched.
"""

from __future__ import annotations

from datetime import date

import pytest

from membership_lifecycle.action_specs import ActionSpec
from membership_lifecycle.notify import Message
from membership_lifecycle.shared import RunContext

TODAY = date(2025, 6, 1)
GROUP = "members@example.org"


class Recorder:
    """Callable fake transport: records every call, optionally failing for some emails."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.calls: list[tuple] = []
        self.fail_for = set(fail_for or ())

    def __call__(self, *args) -> None:
        key = args[0].to if isinstance(args[0], Message) else args[0]
        if key in self.fail_for:
            raise RuntimeError(f"transport failed for {key}")
        self.calls.append(args)

    @property
    def recipients(self) -> list[str]:
        return [c[0].to if isinstance(c[0], Message) else c[0] for c in self.calls]


def build_specs() -> dict[str, ActionSpec]:
    return {
        "Join": ActionSpec("Join", "Welcome {First}", "<p>Expires {Expires}</p>"),
        "Renew": ActionSpec("Renew", "Renewed {First}", "<p>Now expires {Expires}</p>"),
        "Migrate": ActionSpec("Migrate", "Migrated {First}", "<p>Migrated on {Migrated}</p>"),
        "Expiry1": ActionSpec("Expiry1", "30 days left", "<p>{Expires}</p>", offset=-30),
        "Expiry2": ActionSpec("Expiry2", "7 days left", "<p>{Expires}</p>", offset=-7),
        "Expiry3": ActionSpec("Expiry3", "Expires today", "<p>{Expires}</p>", offset=0),
        "Expiry4": ActionSpec("Expiry4", "Expired", "<p>Expired {Expires}</p>", offset=10),
    }


@pytest.fixture()
def specs() -> dict[str, ActionSpec]:
    return build_specs()


@pytest.fixture()
def ctx(specs) -> RunContext:
    return RunContext(today=TODAY, action_specs=specs, groups=[GROUP])


@pytest.fixture()
def recorder():
    """Factory for Recorder instances: recorder(fail_for={'x@example.org'})."""
    return Recorder
