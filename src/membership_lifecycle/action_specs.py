"""membership_lifecycle.action_specs

YAML-based run configuration: action specs (email templates + expiry offsets)
and the auto-subscribed group list.

Responsibilities:
  - Load and validate the run-config YAML file (config/membership.yml)
  - Build ActionSpec lookups from YAML mappings or from ActionSpecs sheet rows
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from membership_lifecycle.action_specs import load_run_config

    config = load_run_config(Path("config/membership.yml"))
    config.action_specs["Expiry1"].offset   # -> -30
"""

from __future__ import annotations

import hashlib
import math
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from membership_lifecycle.normalize import normalize_email, trim
from membership_lifecycle.records import ACTION_TYPES, is_expiry_type

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_YAML_KEYS = frozenset({"version", "groups", "action_specs"})

ACTION_SPEC_HEADERS = ["Type", "Offset", "Subject", "Body"]

VALID_SUBSCRIPTIONS = ("auto", "manual", "invitation")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when the run-config YAML or an action spec fails validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ActionSpec:
    """Templates and timing for one lifecycle stage."""

    type: str
    subject: str
    body: str
    offset: int | None = None

    @classmethod
    def build(cls, type_: Any, subject: Any, body: Any, offset: Any = None) -> ActionSpec:
        """Validate raw values and return an ActionSpec.

        Raises:
            ConfigValidationError: unknown type, empty subject/body, non-numeric
                offset, or an Expiry stage with no offset.
        """
        type_v = trim(type_)
        if type_v not in ACTION_TYPES:
            raise ConfigValidationError(
                f"action spec Type must be one of {list(ACTION_TYPES)}, got: {type_!r}"
            )
        subject_v = trim(subject)
        if subject_v is None:
            raise ConfigValidationError(f"action spec {type_v}: Subject is required")
        if body is None or str(body).strip() == "":
            raise ConfigValidationError(f"action spec {type_v}: Body is required")

        offset_v: int | None
        if offset is None or (isinstance(offset, str) and offset.strip() == ""):
            offset_v = None
        else:
            try:
                offset_f = float(offset)
            except (TypeError, ValueError):
                raise ConfigValidationError(
                    f"action spec {type_v}: Offset '{offset}' is not numeric"
                )
            if not math.isfinite(offset_f):
                raise ConfigValidationError(
                    f"action spec {type_v}: Offset '{offset}' must be a finite number of days"
                )
            if offset_f != int(offset_f):
                raise ConfigValidationError(
                    f"action spec {type_v}: Offset {offset_f} must be a whole number of days"
                )
            offset_v = int(offset_f)

        if is_expiry_type(type_v) and offset_v is None:
            raise ConfigValidationError(f"action spec {type_v}: Offset is required for expiry stages")

        return cls(type=type_v, subject=subject_v, body=str(body), offset=offset_v)


@dataclass
class GroupConfig:
    email: str
    subscription: str = "auto"


@dataclass
class RunConfig:
    """Parsed, validated run configuration loaded from a YAML file."""

    version: str
    yaml_hash: str
    action_specs: dict[str, ActionSpec]
    groups: list[GroupConfig]
    reply_to: str | None = None
    schedule_immediate_actions: bool = False
    raw_yaml: str = field(repr=False, default="")

    @property
    def auto_groups(self) -> list[str]:
        """Group emails members are added to / removed from automatically."""
        return [g.email for g in self.groups if g.subscription == "auto"]


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_run_config(yaml_path: Path) -> RunConfig:
    """Load, validate, and return a RunConfig from a YAML file.

    Raises:
        ConfigValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    return parse_run_config(data, raw)


def parse_run_config(data: Any, raw: str = "") -> RunConfig:
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise ConfigValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    specs_data = data.get("action_specs") or []
    if not isinstance(specs_data, list) or not specs_data:
        raise ConfigValidationError("'action_specs' must be a non-empty list.")

    action_specs: dict[str, ActionSpec] = {}
    for i, item in enumerate(specs_data):
        if not isinstance(item, dict):
            raise ConfigValidationError(f"action_specs[{i}] must be a mapping.")
        spec = ActionSpec.build(
            item.get("type"), item.get("subject"), item.get("body"), item.get("offset"),
        )
        if spec.type in action_specs:
            raise ConfigValidationError(f"Duplicate action spec type '{spec.type}'.")
        action_specs[spec.type] = spec

    groups = _parse_groups(data.get("groups"))

    reply_to = normalize_email(data.get("reply_to"))
    immediate = data.get("schedule_immediate_actions", False)
    if not isinstance(immediate, bool):
        raise ConfigValidationError("'schedule_immediate_actions' must be true or false.")

    return RunConfig(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        action_specs=action_specs,
        groups=groups,
        reply_to=reply_to,
        schedule_immediate_actions=immediate,
        raw_yaml=raw,
    )


def _parse_groups(groups_data: Any) -> list[GroupConfig]:
    if groups_data is None:
        return []
    if not isinstance(groups_data, list):
        raise ConfigValidationError("'groups' must be a list.")
    groups: list[GroupConfig] = []
    for i, item in enumerate(groups_data):
        if isinstance(item, str):
            email, subscription = item, "auto"
        elif isinstance(item, dict):
            email = item.get("email")
            subscription = (trim(item.get("subscription")) or "auto").lower()
        else:
            raise ConfigValidationError(f"groups[{i}] must be an email or a mapping.")
        email_norm = normalize_email(email)
        if not email_norm or "@" not in email_norm:
            raise ConfigValidationError(f"groups[{i}] has no valid email: {email!r}")
        if subscription not in VALID_SUBSCRIPTIONS:
            raise ConfigValidationError(
                f"groups[{i}] subscription '{subscription}' must be one of {list(VALID_SUBSCRIPTIONS)}"
            )
        groups.append(GroupConfig(email=email_norm, subscription=subscription))
    return groups


# ---------------------------------------------------------------------------
# ActionSpecs sheet rows
# ---------------------------------------------------------------------------

def specs_from_rows(
    rows: list[dict[str, Any]],
    errors: list[str] | None = None,
) -> dict[str, ActionSpec]:
    """Build the action-spec lookup from ActionSpecs sheet rows.

    Invalid rows are skipped, logged, and appended to ``errors`` as
    'Row N: reason' (N counts the header row, so the first data row is 2).
    A later row repeating a Type is treated as invalid.
    """
    specs: dict[str, ActionSpec] = {}
    for i, row in enumerate(rows):
        row_num = i + 2
        try:
            spec = ActionSpec.build(
                row.get("Type"), row.get("Subject"), row.get("Body"), row.get("Offset"),
            )
            if spec.type in specs:
                raise ConfigValidationError(f"duplicate action spec type '{spec.type}'")
        except ConfigValidationError as exc:
            log.error("ActionSpecs row %s: %s", row_num, exc)
            if errors is not None:
                errors.append(f"Row {row_num}: {exc}")
            continue
        specs[spec.type] = spec
    return specs
