"""Unit tests for membership_lifecycle.notify."""

from __future__ import annotations

from datetime import date

from membership_lifecycle.action_specs import ActionSpec
from membership_lifecycle.notify import compose_message, expand_template
from membership_lifecycle.records import Member


class TestExpandTemplate:
    def test_plain_fields(self):
        assert expand_template("Hi {First} {Last}", {"First": "Ann", "Last": "Lee"}) == "Hi Ann Lee"

    def test_date_field_renders_locale_string(self):
        assert expand_template("Until {Expires}", {"Expires": date(2026, 3, 1)}) == "Until 3/1/2026"

    def test_date_field_from_iso_string(self):
        assert expand_template("{Renewed On}", {"Renewed On": "2025-06-01"}) == "6/1/2025"

    def test_missing_field_renders_empty(self):
        assert expand_template("[{Nickname}]", {}) == "[]"

    def test_none_value_renders_empty(self):
        assert expand_template("[{Phone}]", {"Phone": None}) == "[]"
        assert expand_template("[{Joined}]", {"Joined": None}) == "[]"

    def test_text_without_tokens_unchanged(self):
        assert expand_template("<p>Hello</p>", {"First": "Ann"}) == "<p>Hello</p>"


class TestComposeMessage:
    def test_subject_and_body_expanded_from_member(self):
        spec = ActionSpec("Renew", "Thanks {First}", "<p>Expires {Expires}</p>")
        member = Member(email="ann@example.org", first="Ann", expires=date(2026, 6, 1))
        message = compose_message(spec, member)
        assert message.to == "ann@example.org"
        assert message.subject == "Thanks Ann"
        assert message.html_body == "<p>Expires 6/1/2026</p>"
        assert message.reply_to is None
