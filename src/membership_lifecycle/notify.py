"""membership_lifecycle.notify

Template expansion and message composition for member notifications.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable

from membership_lifecycle.action_specs import ActionSpec
from membership_lifecycle.dates import parse_date, to_locale_date_string
from membership_lifecycle.records import DATE_FIELDS, Member

_PLACEHOLDER_RE = re.compile(r"{([^}]+)}")


@dataclass
class Message:
    to: str
    subject: str
    html_body: str
    reply_to: str | None = None


SendEmail = Callable[[Message], None]


def expand_template(template: str, record: dict[str, Any]) -> str:
    """Replace {Field Name} tokens with values from a column-keyed record.

    Date columns render as locale date strings; missing or empty values
    render as '' (never 'None').
    """
    def _sub(match: re.Match) -> str:
        key = match.group(1)
        value = record.get(key)
        if key in DATE_FIELDS:
            return to_locale_date_string(parse_date(value))
        if value is None:
            return ""
        return str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


def compose_message(spec: ActionSpec, member: Member) -> Message:
    record = member.to_row()
    return Message(
        to=member.email,
        subject=expand_template(spec.subject, record),
        html_body=expand_template(spec.body, record),
    )
