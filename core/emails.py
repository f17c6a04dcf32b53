"""
core/emails.py -- Outgoing email: rendering and delivery.

Delivery is a port with two adapters:
  LogEmailSender  -- development default; writes the message to the log.
  SmtpEmailSender -- production; stdlib smtplib with optional STARTTLS.

Rendering uses a Jinja2 Environment over core/templates/email/<locale>/.
Each message is a pair of templates, <name>.txt and <name>.html. The text
template declares the subject with a top-level `{% set subject = "..." %}`.
Lookup falls back to the default locale when the requested one is missing.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, oauth2/.
"""

from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from core.config import Settings

logger = logging.getLogger("gptauth.email")

_TEMPLATE_DIR = Path(__file__).parent / "templates" / "email"


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    text: str
    html: str | None = None


class EmailSender(ABC):
    """Base email delivery interface. send() returns False on delivery failure."""

    @abstractmethod
    def send(self, message: OutgoingEmail) -> bool:
        """Deliver one message."""


class LogEmailSender(EmailSender):
    def send(self, message: OutgoingEmail) -> bool:
        logger.info("Email to %s: %s\n%s", message.to, message.subject, message.text)
        return True


class SmtpEmailSender(EmailSender):
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        sender: str = "noreply@localhost",
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.use_tls = use_tls

    def send(self, message: OutgoingEmail) -> bool:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.sender
        msg["To"] = message.to
        msg.attach(MIMEText(message.text, "plain", "utf-8"))
        if message.html:
            msg.attach(MIMEText(message.html, "html", "utf-8"))
        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.use_tls:
                    server.starttls()
                if self.user:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send email to %s via %s:%d", message.to, self.host, self.port)
            return False
        logger.info("Email sent to %s", message.to)
        return True


def build_email_sender(settings: Settings) -> EmailSender:
    """Pick the delivery adapter from settings. SMTP only when SMTP_HOST is set."""
    if settings.smtp_host:
        return SmtpEmailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.smtp_from,
            use_tls=settings.smtp_use_tls,
        )
    return LogEmailSender()


class EmailRenderer:
    """Render localized email templates into OutgoingEmail instances."""

    def __init__(self, default_locale: str = "en", template_dir: Path = _TEMPLATE_DIR) -> None:
        self.default_locale = default_locale
        self._text_env = Environment(loader=FileSystemLoader(str(template_dir)), autoescape=False)
        self._html_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html"]),
        )

    def _candidates(self, name: str, locale: str | None, ext: str) -> list[str]:
        names = []
        if locale:
            names.append(f"{locale}/{name}.{ext}")
            # "en-US" -> "en"
            if "-" in locale or "_" in locale:
                names.append(f"{locale.replace('_', '-').split('-')[0]}/{name}.{ext}")
        names.append(f"{self.default_locale}/{name}.{ext}")
        return names

    def render(self, template: str, to: str, locale: str | None = None, **variables) -> OutgoingEmail:
        """Render `template` for `locale` with the given variables.

        Raises jinja2.TemplateNotFound if neither the locale nor the default
        locale provides the text template.
        """
        text_tmpl = self._text_env.select_template(self._candidates(template, locale, "txt"))
        module = text_tmpl.make_module(variables)
        subject = getattr(module, "subject", template)
        try:
            html_tmpl = self._html_env.select_template(self._candidates(template, locale, "html"))
            html = html_tmpl.render(**variables)
        except TemplateNotFound:
            html = None
        return OutgoingEmail(to=to, subject=str(subject).strip(), text=str(module).strip(), html=html)
