"""
Tests for email and Telegram notifications (transports mocked)
"""
import smtplib
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from visa_dashboard.core.errors import TransportError
from visa_dashboard.notifications import NotificationService


@pytest.fixture(name="email_service")
def email_service_fixture():
    return NotificationService(email_user="monitor@example.test", email_password="secret")


def _settings(**overrides):
    values = dict(
        visa_type="B1B2",
        email_notifications=False,
        email_address=None,
        telegram_bot_token=None,
        telegram_chat_id=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestEmail:
    """Tests for SMTP delivery"""

    def test_unconfigured_raises(self):
        service = NotificationService()
        with pytest.raises(TransportError) as exc_info:
            service.send_email("to@example.test", "subject", "body")
        assert exc_info.value.channel == "email"

    @patch("visa_dashboard.notifications.service.smtplib.SMTP_SSL")
    def test_send_email(self, mock_smtp, email_service):
        email_service.send_email("to@example.test", "Hello", "Slots open")

        mock_smtp.assert_called_once_with("smtp.gmail.com", 465, timeout=10)
        smtp = mock_smtp.return_value.__enter__.return_value
        smtp.login.assert_called_once_with("monitor@example.test", "secret")
        message = smtp.send_message.call_args[0][0]
        assert message["To"] == "to@example.test"
        assert message["Subject"] == "Hello"

    @patch("visa_dashboard.notifications.service.smtplib.SMTP_SSL")
    def test_smtp_failure_raises(self, mock_smtp, email_service):
        smtp = mock_smtp.return_value.__enter__.return_value
        smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

        with pytest.raises(TransportError):
            email_service.send_email("to@example.test", "Hello", "Slots open")

    @patch("visa_dashboard.notifications.service.smtplib.SMTP_SSL")
    def test_test_email_reports_result(self, mock_smtp, email_service):
        assert email_service.test_email("to@example.test") is True
        mock_smtp.side_effect = OSError("network unreachable")
        assert email_service.test_email("to@example.test") is False

    def test_render_email_escapes_body(self, email_service):
        rendered = email_service.render_email("Alert", "<script>x</script>")
        assert "<script>" not in rendered
        assert "&lt;script&gt;" in rendered
        assert email_service.booking_url in rendered

    def test_credentials_fall_back_to_environment(self, monkeypatch):
        monkeypatch.setenv("EMAIL_USER", "env@example.test")
        monkeypatch.setenv("EMAIL_PASS", "env-secret")
        service = NotificationService.from_config({"email": {"user": None, "password": None}})
        assert service.email_user == "env@example.test"
        assert service.email_configured


class TestTelegram:
    """Tests for Bot API delivery"""

    @patch("visa_dashboard.notifications.service.requests.post")
    def test_send_telegram(self, mock_post):
        mock_post.return_value = MagicMock(ok=True)
        service = NotificationService()

        service.send_telegram("123:abc", "42", "hi")

        url = mock_post.call_args[0][0]
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        assert mock_post.call_args[1]["json"] == {"chat_id": "42", "text": "hi", "parse_mode": "HTML"}

    @patch("visa_dashboard.notifications.service.requests.post")
    def test_api_error_raises(self, mock_post):
        mock_post.return_value = MagicMock(ok=False, status_code=401, reason="Unauthorized")
        with pytest.raises(TransportError) as exc_info:
            NotificationService().send_telegram("bad", "42", "hi")
        assert "401" in exc_info.value.message

    @patch("visa_dashboard.notifications.service.requests.post")
    def test_network_error_raises(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(TransportError):
            NotificationService().send_telegram("123:abc", "42", "hi")

    @patch("visa_dashboard.notifications.service.requests.post")
    def test_network_error_hides_token(self, mock_post):
        """Test the bot token in a failed request URL is masked in the error message"""
        mock_post.side_effect = requests.ConnectionError(
            "Max retries exceeded with url: /bot123:secret-token/sendMessage"
        )

        with pytest.raises(TransportError) as exc_info:
            NotificationService().send_telegram("123:secret-token", "42", "hi")

        assert "123:secret-token" not in exc_info.value.message
        assert "/bot***/sendMessage" in exc_info.value.message

    @patch("visa_dashboard.notifications.service.requests.post")
    def test_test_telegram_reports_result(self, mock_post):
        mock_post.return_value = MagicMock(ok=True)
        assert NotificationService().test_telegram("123:abc", "42") is True
        mock_post.return_value = MagicMock(ok=False, status_code=400, reason="Bad Request")
        assert NotificationService().test_telegram("123:abc", "42") is False


class TestNotifyAppointmentAvailable:
    """Tests for fan-out on a positive check"""

    @patch("visa_dashboard.notifications.service.requests.post")
    @patch("visa_dashboard.notifications.service.smtplib.SMTP_SSL")
    def test_all_enabled_channels(self, mock_smtp, mock_post, email_service):
        mock_post.return_value = MagicMock(ok=True)
        settings = _settings(
            email_notifications=True,
            email_address="to@example.test",
            telegram_bot_token="123:abc",
            telegram_chat_id="42",
        )

        outcomes = email_service.notify_appointment_available(settings, "Nairobi Embassy")

        assert outcomes == {"email": None, "telegram": None}
        text = mock_post.call_args[1]["json"]["text"]
        assert "B1B2" in text
        assert "Nairobi Embassy" in text

    def test_disabled_channels_skipped(self, email_service):
        settings = _settings(email_notifications=False, email_address="to@example.test")
        assert email_service.notify_appointment_available(settings) == {}

    @patch("visa_dashboard.notifications.service.requests.post")
    def test_one_channel_failing_does_not_stop_others(self, mock_post):
        """Test an email failure is reported and Telegram is still attempted"""
        mock_post.return_value = MagicMock(ok=True)
        service = NotificationService()
        settings = _settings(
            email_notifications=True,
            email_address="to@example.test",
            telegram_bot_token="123:abc",
            telegram_chat_id="42",
        )

        outcomes = service.notify_appointment_available(settings)

        assert outcomes["email"] == "Email credentials are not configured"
        assert outcomes["telegram"] is None
        mock_post.assert_called_once()
