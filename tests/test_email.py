"""Tests for owner notices.

Tests cover:
- Recipient resolution (owner address, admin copy on created)
- Template rendering for each notice kind
- SMTP delivery paths (plain, STARTTLS, SSL) and failures
"""

import smtplib
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
from pydantic import SecretStr

from portability.core.config import SMTPSettings
from portability.db.models.base import RequestState
from portability.services.collaborators import NoticeKind
from portability.services.email import MailDeliveryError, PortabilityMailer


@pytest.fixture
def smtp_settings() -> SMTPSettings:
    return SMTPSettings(
        host="smtp.example.com",
        port=2525,
        from_address="noreply@portability.test",
        admin_address="dpo@portability.test",
    )


@pytest.fixture
def portability_mailer(smtp_settings) -> PortabilityMailer:
    return PortabilityMailer(smtp_settings, app_name="Acme")


class TestRecipients:
    """Tests for recipient resolution."""

    def test_created_copies_admin(self, portability_mailer, owner):
        assert portability_mailer.recipients(NoticeKind.CREATED, owner) == [
            "jane.doe@example.com",
            "dpo@portability.test",
        ]

    @pytest.mark.parametrize("kind", [NoticeKind.DENIED, NoticeKind.COMPLETED])
    def test_other_notices_owner_only(self, portability_mailer, owner, kind):
        assert portability_mailer.recipients(kind, owner) == ["jane.doe@example.com"]

    def test_owner_object_attribute(self, portability_mailer):
        owner = MagicMock(spec=["email"], email="john@example.com")
        assert portability_mailer.recipients(NoticeKind.DENIED, owner) == ["john@example.com"]

    def test_owner_without_email(self, portability_mailer):
        with pytest.raises(MailDeliveryError):
            portability_mailer.recipients(NoticeKind.DENIED, {"id": "42"})


class TestRender:
    """Tests for template rendering."""

    def test_completed_mentions_expiry(self, portability_mailer, owner, make_request):
        request = make_request(
            state=RequestState.DONE,
            expire_at=datetime(2026, 10, 21, 9, 30, tzinfo=UTC),
        )

        subject, html_body, text_body = portability_mailer.render(
            NoticeKind.COMPLETED, request, owner
        )

        assert subject == "[Acme] Your data export is ready"
        assert "2026-10-21 09:30 UTC" in text_body
        assert "2026-10-21 09:30 UTC" in html_body
        assert str(request.request_id) in text_body

    @pytest.mark.parametrize("kind", list(NoticeKind))
    def test_every_kind_renders(self, portability_mailer, owner, make_request, kind):
        subject, html_body, text_body = portability_mailer.render(kind, make_request(), owner)
        assert subject.startswith("[Acme] ")
        assert "<html" in html_body
        assert text_body.startswith("Acme")


class TestSendMail:
    """Tests for SMTP delivery."""

    @patch("portability.services.email.smtplib.SMTP")
    async def test_plain_smtp(self, mock_smtp_class, portability_mailer, owner, make_request):
        mock_smtp = MagicMock()
        mock_smtp_class.return_value = mock_smtp

        result = await portability_mailer.send_mail(NoticeKind.CREATED, make_request(), owner)

        mock_smtp_class.assert_called_once_with("smtp.example.com", 2525, timeout=30)
        mock_smtp.starttls.assert_not_called()
        mock_smtp.login.assert_not_called()
        from_address, recipients, message = mock_smtp.sendmail.call_args.args
        assert from_address == "noreply@portability.test"
        assert recipients == ["jane.doe@example.com", "dpo@portability.test"]
        assert "Cc: dpo@portability.test" in message
        assert result.success is True
        assert result.message_id.endswith("@portability.test>")

    @patch("portability.services.email.smtplib.SMTP")
    async def test_starttls_and_login(self, mock_smtp_class, smtp_settings, owner, make_request):
        settings = smtp_settings.model_copy(
            update={"use_tls": True, "username": "bot", "password": SecretStr("pw")}
        )
        mock_smtp = MagicMock()
        mock_smtp_class.return_value = mock_smtp

        await PortabilityMailer(settings).send_mail(NoticeKind.DENIED, make_request(), owner)

        mock_smtp.starttls.assert_called_once()
        mock_smtp.login.assert_called_once_with("bot", "pw")

    @patch("portability.services.email.smtplib.SMTP_SSL")
    async def test_implicit_ssl(self, mock_ssl_class, smtp_settings, owner, make_request):
        settings = smtp_settings.model_copy(update={"use_ssl": True})
        mock_ssl_class.return_value = MagicMock()

        await PortabilityMailer(settings).send_mail(NoticeKind.DENIED, make_request(), owner)

        mock_ssl_class.assert_called_once()

    @patch("portability.services.email.smtplib.SMTP")
    async def test_smtp_failure(self, mock_smtp_class, portability_mailer, owner, make_request):
        mock_smtp = MagicMock()
        mock_smtp.sendmail.side_effect = smtplib.SMTPException("relay denied")
        mock_smtp_class.return_value = mock_smtp

        with pytest.raises(MailDeliveryError, match="relay denied"):
            await portability_mailer.send_mail(NoticeKind.DENIED, make_request(), owner)

    @patch("portability.services.email.smtplib.SMTP")
    async def test_connection_failure(
        self, mock_smtp_class, portability_mailer, owner, make_request
    ):
        mock_smtp_class.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(MailDeliveryError, match="Connection error"):
            await portability_mailer.send_mail(NoticeKind.DENIED, make_request(), owner)
