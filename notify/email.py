"""
notify/email.py -- Outbound email: SMTP transport, Jinja2 rendering, Mailer.

Three collaborators, each replaceable on its own:

  SmtpTransport   -- delivers one message over smtplib (STARTTLS or implicit
                     TLS). With no server configured it logs the message
                     instead of sending, so development needs no SMTP setup.
  TemplateRenderer-- renders the named HTML templates in notify/templates/
                     with a Jinja2 Environment (autoescape on).
  Mailer          -- composes the two for each notification kind. It never
                     touches SMTP or Jinja2 directly.

Failures (SMTP errors, socket errors, missing templates) are raised as
InfrastructureError with the original exception chained.

Layer rule: notify/ may import from auth/, never from api/ or core/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from collections.abc import Iterable
from datetime import datetime, timedelta
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from auth.accounts import UserLifecycle, redact_email
from auth.errors import InfrastructureError
from auth.models import PasswordResetSecret

logger = logging.getLogger("hanashi.email")

TEMPLATE_DIR = Path(__file__).parent / "templates"

CONFIRM_TEMPLATE = "email_confirm_email.html"
RESET_TEMPLATE = "pw_reset_email.html"
NAG_TEMPLATE = "slacker_heatenings.html"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class EmailTransport(Protocol):
    def send(self, to: str, from_header: str, subject: str, body: str, subtype: str = "html") -> str:
        """Deliver one message and return its Message-ID."""
        ...


class SmtpTransport:
    """Send mail over SMTP, or log it when no host is configured.

    starttls=True connects in plain text and upgrades with STARTTLS (port
    587). starttls=False uses implicit TLS from the first byte via SMTP_SSL
    (port 465). There is no unencrypted mode.
    """

    def __init__(
        self,
        host: str = "",
        port: int = 587,
        username: str = "",
        password: str = "",
        starttls: bool = True,
        timeout: float = 30,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host)

    def send(self, to: str, from_header: str, subject: str, body: str, subtype: str = "html") -> str:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = from_header
        msg["To"] = to
        msg["Message-ID"] = make_msgid()
        msg.set_content(body, subtype=subtype)

        if not self.is_configured:
            logger.info("Email server not configured; not sending %r to %s", subject, redact_email(to))
            logger.debug("Body of unsent email:\n%s", body)
            return msg["Message-ID"]

        context = ssl.create_default_context()
        try:
            if self.starttls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    self._login(server)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Couldn't send %r to %s: %s", subject, redact_email(to), type(exc).__name__)
            raise InfrastructureError(f"Couldn't send email via {self.host}:{self.port}.") from exc

        logger.info("Sent %r to %s", subject, redact_email(to))
        return msg["Message-ID"]

    def _login(self, server: smtplib.SMTP) -> None:
        if self.username and self.password:
            server.login(self.username, self.password)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class TemplateRenderer:
    def __init__(self, template_dir: Path | str = TEMPLATE_DIR) -> None:
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html"]),
        )

    def render(self, template_name: str, **context) -> str:
        try:
            return self.env.get_template(template_name).render(**context)
        except TemplateError as exc:
            raise InfrastructureError(f"Couldn't render email template {template_name}.") from exc


# ---------------------------------------------------------------------------
# Mailer
# ---------------------------------------------------------------------------


class Mailer:
    """Sends every notification the identity layer needs."""

    def __init__(
        self,
        transport: EmailTransport,
        renderer: TemplateRenderer,
        site_name: str,
        site_link: str,
        from_address: str,
        from_name: str = "",
    ) -> None:
        self.transport = transport
        self.renderer = renderer
        self.site_name = site_name
        self.site_link = site_link
        self.from_header = formataddr((from_name or site_name, from_address))

    def _context(self, secret: str = "") -> dict:
        return {"secret": secret, "site_name": self.site_name, "site_link": self.site_link}

    def _subject(self, text: str) -> str:
        return f"[{self.site_name}] {text}"

    def send_confirmation(self, email: str, secret: str) -> str:
        body = self.renderer.render(CONFIRM_TEMPLATE, **self._context(secret))
        return self.transport.send(email, self.from_header, self._subject("Welcome!"), body)

    def send_pw_reset_email(self, reset: PasswordResetSecret) -> str:
        body = self.renderer.render(RESET_TEMPLATE, **self._context(reset.secret))
        return self.transport.send(reset.email, self.from_header, self._subject("Resetting your password"), body)

    def send_freeform_email(self, recipients: Iterable[str], subject: str, body: str) -> list[str]:
        """Plain-text message to each recipient. Stops at the first transport failure."""
        receipts = []
        for to in recipients:
            receipts.append(self.transport.send(to, self.from_header, subject, body, subtype="plain"))
        logger.info("Sent %d freeform email(s)", len(receipts))
        return receipts

    def send_nag_emails(
        self,
        lifecycle: UserLifecycle,
        inactive_for: timedelta,
        grace_period: timedelta,
        now: datetime | None = None,
    ) -> list[int]:
        """Email every slacker not nagged within grace_period. Returns their ids.

        last_nag_email is stamped after each successful send, so a transport
        failure midway leaves the remaining accounts eligible for the next run.
        """
        now = now or lifecycle.clock()
        slackers = lifecycle.find_slackers(now - inactive_for, cooldown=grace_period)
        if not slackers:
            return []

        body = self.renderer.render(NAG_TEMPLATE, **self._context())
        subject = self._subject("Where did you go?")
        nagged = []
        for account_id, email in slackers:
            self.transport.send(email, self.from_header, subject, body)
            lifecycle.mark_nagged(account_id)
            nagged.append(account_id)
        logger.info("Sent %d re-engagement email(s)", len(nagged))
        return nagged


def build_mailer(
    site_name: str,
    site_link: str,
    from_address: str,
    from_name: str = "",
    host: str = "",
    port: int = 587,
    username: str = "",
    password: str = "",
    starttls: bool = True,
) -> Mailer:
    transport = SmtpTransport(host=host, port=port, username=username, password=password, starttls=starttls)
    return Mailer(transport, TemplateRenderer(), site_name, site_link, from_address, from_name)
