"""Outbound e-mail through the Brevo transactional API and the admin alert channel."""

import base64
import html
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from fulfillment.core_settings import Settings
from fulfillment.domain.exceptions import NotificationError
from shared.core import get_logger

logger = get_logger(__name__)


@dataclass
class Attachment:
    filename: str
    content: bytes


class Mailer(Protocol):
    def send(self, to_address: str, subject: str, html_body: str,
             attachment: Optional[Attachment] = None) -> None:
        ...


class AdminAlerts(Protocol):
    def notify(self, summary: dict) -> bool:
        ...


class BrevoMailer:
    def __init__(self, settings: Settings, timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.api_key = settings.BREVO_API_KEY
        self.api_url = settings.BREVO_API_URL
        self.sender = {"email": settings.MAIL_SENDER_EMAIL, "name": settings.MAIL_SENDER_NAME}
        self.timeout = timeout
        self.transport = transport

    def send(self, to_address: str, subject: str, html_body: str,
             attachment: Optional[Attachment] = None) -> None:
        if not self.api_key:
            raise NotificationError("BREVO_API_KEY is not configured")

        message = {
            "sender": self.sender,
            "to": [{"email": to_address}],
            "subject": subject,
            "htmlContent": html_body,
        }
        if attachment is not None:
            message["attachment"] = [{
                "name": attachment.filename,
                "content": base64.b64encode(attachment.content).decode("ascii"),
            }]

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    self.api_url,
                    json=message,
                    headers={"api-key": self.api_key, "accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise NotificationError(f"Email transport unreachable: {e}") from e

        if response.status_code >= 400:
            raise NotificationError(f"Email rejected ({response.status_code}): {response.text[:500]}")
        logger.info(
            f"Email sent: {subject}",
            extra={'extra_fields': {'status_code': response.status_code}}
        )


class EmailAdminAlerts:
    """Mails an order summary to every configured admin address."""

    def __init__(self, mailer: Mailer, recipients: list[str]):
        self.mailer = mailer
        self.recipients = recipients

    def notify(self, summary: dict) -> bool:
        """Returns False when no admin recipient is configured."""
        if not self.recipients:
            logger.warning("No admin recipients configured, skipping admin alert")
            return False

        subject = summary.get("subject") or f"Order {summary.get('order_number') or summary.get('order_id')}"
        rows = "".join(
            f"<tr><th align='left'>{html.escape(str(key))}</th><td>{html.escape(str(value))}</td></tr>"
            for key, value in summary.items()
            if key != "subject"
        )
        body = f"<h2>{html.escape(subject)}</h2><table>{rows}</table>"
        failures = []
        for recipient in self.recipients:
            try:
                self.mailer.send(recipient, subject, body)
            except NotificationError as e:
                failures.append(f"{recipient}: {e}")
        if failures:
            raise NotificationError("; ".join(failures))
        return True
