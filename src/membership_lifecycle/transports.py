"""membership_lifecycle.transports

Email and group-membership transports handed to the processors.

Email senders are callables taking a Message.  Group clients expose
``add(email, group_email)`` and ``remove(email, group_email)``; the
processors receive the bound methods.

The Logging* variants only log what would have been done (and remember it
on ``.sent`` / ``.calls``); they back --log-only-emails, --log-only-groups
and --dry-run.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

import requests

from membership_lifecycle.notify import Message

log = logging.getLogger(__name__)

DEFAULT_GROUP_API_URL = "https://admin.googleapis.com/admin/directory/v1"


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

class LoggingEmailSender:
    def __init__(self, reply_to: str | None = None) -> None:
        self.reply_to = reply_to
        self.sent: list[Message] = []

    def __call__(self, message: Message) -> None:
        if message.reply_to is None and self.reply_to:
            message.reply_to = self.reply_to
        log.info("Email (log only) to=%s subject=%r", message.to, message.subject)
        log.debug("Email body: %s", message.html_body)
        self.sent.append(message)


class SmtpEmailSender:
    """Send HTML email through an SMTP relay, one connection per message."""

    def __init__(
        self,
        host: str,
        sender: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        reply_to: str | None = None,
        starttls: bool = True,
        timeout: int = 30,
    ) -> None:
        self.host = host
        self.sender = sender
        self.port = port
        self.username = username
        self.password = password
        self.reply_to = reply_to
        self.starttls = starttls
        self.timeout = timeout

    def build(self, message: Message) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = message.to
        msg["Subject"] = message.subject
        reply_to = message.reply_to or self.reply_to
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.set_content(message.html_body, subtype="html")
        return msg

    def __call__(self, message: Message) -> None:
        msg = self.build(message)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(msg)
        log.info("Email sent to=%s subject=%r", message.to, message.subject)


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

class LoggingGroupClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    def add(self, email: str, group_email: str) -> None:
        log.info("Group add (log only) %s -> %s", email, group_email)
        self.calls.append(("add", email, group_email))

    def remove(self, email: str, group_email: str) -> None:
        log.info("Group remove (log only) %s -> %s", email, group_email)
        self.calls.append(("remove", email, group_email))


class HttpGroupClient:
    """Group membership over a Directory-style REST API.

    Adding an existing member (409) and removing an absent one (404) are
    logged and treated as success; any other non-2xx status raises
    ``requests.HTTPError``.
    """

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_GROUP_API_URL,
        session: requests.Session | None = None,
        timeout: int = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})
        self.timeout = timeout

    def _members_url(self, group_email: str) -> str:
        return f"{self.base_url}/groups/{group_email}/members"

    def add(self, email: str, group_email: str) -> None:
        resp = self.session.post(
            self._members_url(group_email),
            json={"email": email, "role": "MEMBER"},
            timeout=self.timeout,
        )
        if resp.status_code == 409:
            log.info("%s already a member of %s", email, group_email)
            return
        resp.raise_for_status()
        log.info("%s added to %s", email, group_email)

    def remove(self, email: str, group_email: str) -> None:
        resp = self.session.delete(
            f"{self._members_url(group_email)}/{email}",
            timeout=self.timeout,
        )
        if resp.status_code == 404:
            log.info("%s not a member of %s", email, group_email)
            return
        resp.raise_for_status()
        log.info("%s removed from %s", email, group_email)
