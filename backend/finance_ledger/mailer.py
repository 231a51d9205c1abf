import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    html: str


class Mailer:
    def send(self, message: OutgoingEmail) -> None:
        raise NotImplementedError


class LogMailer(Mailer):
    """Used when no SMTP server is configured; the message is only logged."""

    def send(self, message: OutgoingEmail) -> None:
        logger.info("email to %s: %s\n%s", message.to, message.subject, message.html)


class SmtpMailer(Mailer):
    def __init__(self, host: str, port: int, username: str | None, password: str | None, sender: str, timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def send(self, message: OutgoingEmail) -> None:
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = message.to
        email["Subject"] = message.subject
        email.set_content("This message requires an HTML capable mail client.")
        email.add_alternative(message.html, subtype="html")
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as smtp:
                self._deliver(smtp, email)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                self._deliver(smtp, email)

    def _deliver(self, smtp: smtplib.SMTP, email: EmailMessage) -> None:
        if self.username:
            smtp.login(self.username, self.password or "")
        smtp.send_message(email)


def verification_email(to: str, name: str, link: str, valid_hours: int) -> OutgoingEmail:
    html = (
        f"<h1>Hello, {escape(name)}!</h1>"
        "<p>Thanks for signing up. Please confirm your e-mail address by following the link below:</p>"
        f'<a href="{escape(link, quote=True)}">Confirm e-mail</a>'
        f"<p>This link expires in {valid_hours} hours.</p>"
    )
    return OutgoingEmail(to=to, subject="Confirm your e-mail address", html=html)


def send_quietly(mailer: Mailer, message: OutgoingEmail) -> None:
    """Deliver without raising; used for fire-and-forget notifications."""
    try:
        mailer.send(message)
    except Exception:
        logger.exception("failed to send email to %s", message.to)
    else:
        logger.info("email sent to %s: %s", message.to, message.subject)


def get_mailer(settings: Settings) -> Mailer:
    if settings.smtp_host:
        return SmtpMailer(settings.smtp_host, settings.smtp_port, settings.smtp_user, settings.smtp_password, settings.smtp_from)
    return LogMailer()
