"""
SMTP email transport

smtplib is blocking, so each send runs in a worker thread.
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any

from ..errors import DeliveryError
from ..models import NotificationConfig
from .base import NotificationTransport, register_transport, render_text

logger = logging.getLogger(__name__)


@register_transport
class EmailTransport(NotificationTransport):
    """Sends a plain-text message; the endpoint is a comma-separated recipient list"""

    name = "email"

    def build_message(self, config: NotificationConfig, payload: dict[str, Any]) -> EmailMessage:
        message = EmailMessage()
        status = "RESOLVED" if payload.get("resolved") else str(payload.get("severity", "")).upper()
        message["Subject"] = f"[{status}] {payload.get('title')}"
        message["From"] = config.metadata.get("sender", self.settings.email_sender)
        message["To"] = config.endpoint
        message.set_content(
            "\n".join(
                [
                    render_text(config, payload),
                    "",
                    f"Alert ID: {payload.get('alert_id')}",
                    f"Type: {payload.get('type')}",
                    f"Current value: {payload.get('current_value')}",
                    f"Threshold: {payload.get('threshold')}",
                    f"Time: {payload.get('timestamp')}",
                ]
            )
        )
        return message

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(
            self.settings.smtp_host,
            self.settings.smtp_port,
            timeout=self.settings.delivery_timeout,
        ) as smtp:
            smtp.send_message(message)

    async def deliver(self, config: NotificationConfig, payload: dict[str, Any]) -> bool:
        try:
            message = self.build_message(config, payload)
        except ValueError as e:
            raise DeliveryError(f"email to {config.endpoint} is malformed: {e}") from e
        try:
            await asyncio.to_thread(self._send, message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"email to {config.endpoint} failed: {e}") from e
        return True
