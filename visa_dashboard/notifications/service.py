"""
Notification dispatcher: email over SMTP and Telegram over the Bot API.

send_email / send_telegram raise TransportError on any failure. Callers that must
not fail (the monitoring lifecycle, the test endpoints) catch it themselves.
"""
import html
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional

import requests

from visa_dashboard.core.errors import TransportError

DEFAULT_BOOKING_URL = "https://ais.usvisa-info.com/en-ke/niv"
DEFAULT_EMBASSY_NAME = "Nairobi Embassy"

EMAIL_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background-color: #1976D2; color: white; padding: 20px; text-align: center;">
    <h1 style="margin: 0;">US Visa Appointment Alert</h1>
  </div>
  <div style="padding: 20px; background-color: #f8f9fa;">
    <h2 style="color: #1976D2;">{title}</h2>
    <p style="font-size: 16px; line-height: 1.6;">{body}</p>
    <div style="background-color: #fff3cd; border: 1px solid #ffeaa7; padding: 15px; margin: 20px 0; border-radius: 5px;">
      <strong>Important:</strong> Please verify appointment availability manually on the official website
      and book through legitimate channels only.
    </div>
    <div style="text-align: center; margin: 30px 0;">
      <a href="{booking_url}" style="background-color: #1976D2; color: white; padding: 15px 30px; text-decoration: none; border-radius: 5px; display: inline-block;">Visit Official Website</a>
    </div>
    <p style="color: #666; font-size: 14px; margin-top: 30px;">
      This notification was sent by the US Visa Appointment Monitor.
      This tool is for assistance only and does not guarantee appointment availability.
    </p>
  </div>
</div>
"""

TEST_EMAIL_SUBJECT = "Test Email - US Visa Monitor"
TEST_EMAIL_BODY = (
    "This is a test email from your US Visa Appointment Monitor. "
    "If you received this, your email notifications are working correctly!"
)
TEST_TELEGRAM_TEXT = (
    "Test Message\n\nThis is a test message from your US Visa Appointment Monitor. "
    "If you received this, your Telegram notifications are working correctly!"
)


class NotificationService:
    def __init__(
        self,
        email_user: Optional[str] = None,
        email_password: Optional[str] = None,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 465,
        email_timeout: float = 10,
        telegram_api_base: str = "https://api.telegram.org",
        telegram_timeout: float = 10,
        booking_url: str = DEFAULT_BOOKING_URL,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.email_user = email_user
        self.email_password = email_password
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.email_timeout = email_timeout
        self.telegram_api_base = telegram_api_base.rstrip("/")
        self.telegram_timeout = telegram_timeout
        self.booking_url = booking_url

    @classmethod
    def from_config(cls, config_data: Dict[str, Any]) -> "NotificationService":
        service = cls()
        service.configure(config_data)
        return service

    def configure(self, config_data: Dict[str, Any]) -> None:
        """(Re)read email/telegram settings from the app config. Env EMAIL_USER/EMAIL_PASS fill gaps."""
        email_config = config_data.get("email") or {}
        telegram_config = config_data.get("telegram") or {}
        monitoring_config = config_data.get("monitoring") or {}
        self.email_user = email_config.get("user") or os.environ.get("EMAIL_USER")
        self.email_password = email_config.get("password") or os.environ.get("EMAIL_PASS")
        self.smtp_host = email_config.get("smtp_host", self.smtp_host)
        self.smtp_port = int(email_config.get("smtp_port", self.smtp_port))
        self.email_timeout = float(email_config.get("timeout", self.email_timeout))
        self.telegram_api_base = str(telegram_config.get("api_base", self.telegram_api_base)).rstrip("/")
        self.telegram_timeout = float(telegram_config.get("timeout", self.telegram_timeout))
        self.booking_url = monitoring_config.get("booking_url") or self.booking_url
        self.logger.debug(
            f"Notifications configured: email_user={'set' if self.email_user else 'unset'}, "
            f"smtp={self.smtp_host}:{self.smtp_port}, telegram_api={self.telegram_api_base}"
        )

    @property
    def email_configured(self) -> bool:
        return bool(self.email_user and self.email_password)

    def render_email(self, subject: str, body: str) -> str:
        """Wrap a plain-text body in the branded HTML template."""
        return EMAIL_TEMPLATE.format(
            title=html.escape(subject),
            body=html.escape(body),
            booking_url=html.escape(self.booking_url, quote=True),
        )

    def send_email(self, to: str, subject: str, body: str) -> None:
        if not self.email_configured:
            raise TransportError("Email credentials are not configured", channel="email")

        message = EmailMessage()
        message["From"] = self.email_user
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        message.add_alternative(self.render_email(subject, body), subtype="html")

        try:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=self.email_timeout) as smtp:
                smtp.login(self.email_user, self.email_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"Email delivery failed: {e}", channel="email", details={"to": to}) from e
        self.logger.info(f"Email notification sent to {to}")

    def send_telegram(self, bot_token: str, chat_id: str, text: str) -> None:
        url = f"{self.telegram_api_base}/bot{bot_token}/sendMessage"
        try:
            response = requests.post(
                url,
                json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
                timeout=self.telegram_timeout,
            )
        except requests.RequestException as e:
            # The request URL carries the bot token and requests echoes it in error text
            reason = str(e).replace(bot_token, "***") if bot_token else str(e)
            raise TransportError(f"Telegram request failed: {reason}", channel="telegram") from e
        if not response.ok:
            raise TransportError(
                f"Telegram API error: {response.status_code} {response.reason}",
                channel="telegram",
                details={"chatId": chat_id},
            )
        self.logger.info(f"Telegram notification sent to chat {chat_id}")

    def notify_appointment_available(self, settings, embassy_name: str = DEFAULT_EMBASSY_NAME) -> Dict[str, Any]:
        """
        Fan out an "appointment available" alert on every channel the settings enable.
        Returns {channel: None on success | error message}; never raises TransportError.
        """
        outcomes: Dict[str, Any] = {}
        if settings.email_notifications and settings.email_address:
            try:
                self.send_email(
                    settings.email_address,
                    "US Visa Appointment Available",
                    f"An appointment slot has become available for {settings.visa_type} visa at the "
                    f"{embassy_name}. Please check the official website immediately to book your appointment.",
                )
                outcomes["email"] = None
            except TransportError as e:
                self.logger.error(f"Error sending email notification: {e.message}")
                outcomes["email"] = e.message
        if settings.telegram_bot_token and settings.telegram_chat_id:
            try:
                self.send_telegram(
                    settings.telegram_bot_token,
                    settings.telegram_chat_id,
                    f"Appointment Available!\n\nAn appointment slot has become available for "
                    f"{settings.visa_type} visa at the {embassy_name}. Check the official website now!\n"
                    f"{self.booking_url}",
                )
                outcomes["telegram"] = None
            except TransportError as e:
                self.logger.error(f"Error sending Telegram notification: {e.message}")
                outcomes["telegram"] = e.message
        return outcomes

    def test_email(self, address: str) -> bool:
        try:
            self.send_email(address, TEST_EMAIL_SUBJECT, TEST_EMAIL_BODY)
            return True
        except TransportError as e:
            self.logger.error(f"Email test failed: {e.message}")
            return False

    def test_telegram(self, bot_token: str, chat_id: str) -> bool:
        try:
            self.send_telegram(bot_token, chat_id, TEST_TELEGRAM_TEXT)
            return True
        except TransportError as e:
            self.logger.error(f"Telegram test failed: {e.message}")
            return False
