"""
Page fetch prober: GET the appointment page and look for text markers.

config:
  url: page to fetch (required)
  unavailable_text: marker meaning "no appointments" (default "There are no available appointments")
  available_text: optional marker meaning "appointments available"; when set it is required
  timeout: request timeout in seconds (default 20)
  user_agent: optional User-Agent header
"""
import logging
from typing import Optional

import requests

from visa_dashboard.core.errors import ProbeError

from .base import (
    MESSAGE_APPOINTMENTS_AVAILABLE,
    MESSAGE_NO_APPOINTMENTS,
    AppointmentProber,
    ProbeResult,
)

DEFAULT_UNAVAILABLE_TEXT = "There are no available appointments"
DEFAULT_USER_AGENT = "Mozilla/5.0 (Visa Appointment Dashboard)"


class PageFetchProber(AppointmentProber):
    def __init__(
        self,
        url: str,
        unavailable_text: str = DEFAULT_UNAVAILABLE_TEXT,
        available_text: Optional[str] = None,
        timeout: float = 20,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
        logger=None,
    ):
        if not url:
            raise ValueError("PageFetchProber needs a url")
        self.url = url
        self.unavailable_text = unavailable_text
        self.available_text = available_text
        self.timeout = timeout
        self.headers = {"User-Agent": user_agent, "Accept": "text/html"}
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: dict, logger=None) -> "PageFetchProber":
        return cls(
            url=config.get("url"),
            unavailable_text=config.get("unavailable_text") or DEFAULT_UNAVAILABLE_TEXT,
            available_text=config.get("available_text"),
            timeout=float(config.get("timeout", 20)),
            user_agent=config.get("user_agent") or DEFAULT_USER_AGENT,
            logger=logger,
        )

    def probe(self) -> ProbeResult:
        self.logger.debug(f"Fetching appointment page {self.url}")
        try:
            response = self.session.get(self.url, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ProbeError(f"Failed to fetch appointment page: {e}", {"url": self.url}) from e
        return self.parse(response.text)

    def parse(self, html: str) -> ProbeResult:
        text = html.lower()
        if self.available_text:
            if self.available_text.lower() in text:
                return ProbeResult(True, MESSAGE_APPOINTMENTS_AVAILABLE)
            return ProbeResult(False, MESSAGE_NO_APPOINTMENTS)
        if self.unavailable_text.lower() in text:
            return ProbeResult(False, MESSAGE_NO_APPOINTMENTS)
        return ProbeResult(True, MESSAGE_APPOINTMENTS_AVAILABLE)
