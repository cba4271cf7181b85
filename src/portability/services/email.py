"""Email notices for portability requests.

Three notices are sent to the owner:
- created: the request was registered (owner-initiated requests only; the
  administrator address is copied so the request can be reviewed)
- denied: an administrator refused the request
- completed: the export is ready and will expire at expire_at

Bodies are rendered from Jinja2 templates in templates/email/<kind>.txt and
<kind>.html and sent over SMTP as multipart/alternative messages.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, PackageLoader, select_autoescape

from portability.services.collaborators import NoticeKind, owner_attribute

if TYPE_CHECKING:
    from portability.core.config import SMTPSettings
    from portability.db.models.requests import PortabilityRequest

logger = logging.getLogger(__name__)

SUBJECTS: dict[NoticeKind, str] = {
    NoticeKind.CREATED: "Your data export request was received",
    NoticeKind.DENIED: "Your data export request was denied",
    NoticeKind.COMPLETED: "Your data export is ready",
}


class MailDeliveryError(Exception):
    """Raised when a notice cannot be sent."""


@dataclass(frozen=True, slots=True)
class NoticeResult:
    """Result of sending a notice.

    Attributes:
        success: Whether every recipient was accepted by the SMTP server.
        kind: Notice kind.
        recipients: Addresses the notice was sent to.
        message_id: Message-ID of the sent message.
        error: Error message if the notice was not sent.
    """

    success: bool
    kind: NoticeKind
    recipients: tuple[str, ...] = field(default_factory=tuple)
    message_id: str | None = None
    error: str | None = None


class PortabilityMailer:
    """SMTP notice delivery, usable as the lifecycle's MailNotifier."""

    def __init__(
        self,
        smtp_settings: SMTPSettings,
        *,
        email_attribute: str = "email",
        app_name: str = "Data Portability",
    ) -> None:
        """Initialize the mailer.

        Args:
            smtp_settings: SMTP configuration.
            email_attribute: Owner attribute holding the email address.
            app_name: Service name shown in notices.
        """
        self.smtp_settings = smtp_settings
        self.email_attribute = email_attribute
        self.app_name = app_name

        self._env = Environment(
            loader=PackageLoader("portability", "templates/email"),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def recipients(self, kind: NoticeKind, owner: Any) -> list[str]:
        """Resolve the addresses a notice goes to.

        Raises:
            MailDeliveryError: If the owner has no address.
        """
        try:
            address = owner_attribute(owner, self.email_attribute)
        except LookupError as e:
            raise MailDeliveryError(f"Owner has no email address: {e}") from e
        if not address:
            raise MailDeliveryError("Owner email address is empty")

        addresses = [str(address)]
        if kind == NoticeKind.CREATED and self.smtp_settings.admin_address:
            addresses.append(self.smtp_settings.admin_address)
        return addresses

    def render(
        self,
        kind: NoticeKind,
        request: PortabilityRequest,
        owner: Any,
    ) -> tuple[str, str, str]:
        """Render a notice.

        Returns:
            Tuple of (subject, html_body, text_body).
        """
        context = {
            "app_name": self.app_name,
            "request_id": str(request.request_id),
            "owner": owner,
            "expire_at": request.expire_at,
            "requested_by": request.requested_by,
        }
        html_body = self._env.get_template(f"{kind.value}.html").render(**context)
        text_body = self._env.get_template(f"{kind.value}.txt").render(**context)
        return f"[{self.app_name}] {SUBJECTS[kind]}", html_body, text_body

    async def send_mail(
        self,
        kind: NoticeKind,
        request: PortabilityRequest,
        owner: Any,
    ) -> NoticeResult:
        """Send a lifecycle notice.

        Args:
            kind: Notice to send.
            request: Request the notice is about.
            owner: Owner entity (its email attribute is the recipient).

        Returns:
            NoticeResult for the sent message.

        Raises:
            MailDeliveryError: If the notice cannot be sent.
        """
        recipients = self.recipients(kind, owner)
        subject, html_body, text_body = self.render(kind, request, owner)

        try:
            message_id = await asyncio.to_thread(
                self._send_email, recipients, subject, html_body, text_body
            )
        except MailDeliveryError as e:
            logger.error(
                "Failed to send %s notice",
                kind.value,
                extra={"request_id": str(request.request_id), "error": str(e)},
            )
            raise

        logger.info(
            "Notice sent: kind=%s, recipients=%d",
            kind.value,
            len(recipients),
            extra={"request_id": str(request.request_id), "message_id": message_id},
        )
        return NoticeResult(
            success=True,
            kind=kind,
            recipients=tuple(recipients),
            message_id=message_id,
        )

    def _send_email(
        self,
        recipients: list[str],
        subject: str,
        html_body: str,
        text_body: str,
    ) -> str:
        """Send a message via SMTP and return its Message-ID.

        Raises:
            MailDeliveryError: If the message cannot be sent.
        """
        settings = self.smtp_settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{settings.from_name} <{settings.from_address}>"
        msg["To"] = recipients[0]
        if len(recipients) > 1:
            msg["Cc"] = ", ".join(recipients[1:])

        domain = settings.from_address.rpartition("@")[2] or "localhost"
        message_id = f"<{secrets.token_hex(16)}@{domain}>"
        msg["Message-ID"] = message_id

        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            if settings.use_ssl:
                server = smtplib.SMTP_SSL(
                    settings.host,
                    settings.port,
                    timeout=settings.timeout,
                    context=ssl.create_default_context(),
                )
            else:
                server = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)
                if settings.use_tls:
                    server.starttls(context=ssl.create_default_context())

            with server:
                if settings.username and settings.password:
                    server.login(settings.username, settings.password.get_secret_value())
                server.sendmail(settings.from_address, recipients, msg.as_string())
        except smtplib.SMTPException as e:
            raise MailDeliveryError(f"SMTP error: {e}") from e
        except OSError as e:
            raise MailDeliveryError(f"Connection error: {e}") from e

        return message_id
