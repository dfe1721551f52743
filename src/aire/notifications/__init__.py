"""
Notification delivery

- NotificationDispatcher: rate-limited FIFO delivery with retries
- NotificationTransport: per-channel delivery interface
- Built-in webhook, Slack and email transports
"""

# Import transports to trigger registration
from .base import (
    NotificationTransport,
    TransportRegistry,
    register_transport,
    registry,
    render_text,
)
from .dispatcher import NotificationDispatcher
from .email import EmailTransport
from .slack import SlackTransport
from .webhook import WebhookTransport

__all__ = [
    "registry",
    "TransportRegistry",
    "NotificationTransport",
    "NotificationDispatcher",
    "register_transport",
    "render_text",
    "EmailTransport",
    "SlackTransport",
    "WebhookTransport",
]
