"""
Slack incoming-webhook transport
"""

from datetime import datetime
from typing import Any

from ..models import NotificationConfig
from .base import NotificationTransport, register_transport, render_text

SEVERITY_COLORS = {
    "low": "#36a64f",
    "medium": "#ff9500",
    "high": "#ff0000",
    "critical": "#8b0000",
}
RESOLVED_COLOR = "#2eb886"


def build_slack_message(config: NotificationConfig, payload: dict[str, Any]) -> dict[str, Any]:
    """Slack attachment message for an alert payload"""
    resolved = payload.get("resolved", False)
    timestamp = payload.get("timestamp")
    fields = [
        {"title": "Severity", "value": str(payload.get("severity", "")).upper(), "short": True},
        {"title": "Type", "value": payload.get("type"), "short": True},
        {"title": "Current Value", "value": str(payload.get("current_value")), "short": True},
        {"title": "Threshold", "value": str(payload.get("threshold")), "short": True},
        {"title": "Time", "value": timestamp, "short": False},
    ]

    attachment = {
        "color": RESOLVED_COLOR if resolved else SEVERITY_COLORS.get(payload.get("severity"), "#cccccc"),
        "title": payload.get("title"),
        "text": payload.get("message"),
        "fields": fields,
        "footer": "aire",
    }
    if timestamp:
        attachment["ts"] = int(datetime.fromisoformat(timestamp).timestamp())

    prefix = "Resolved" if resolved else "Alert"
    text = render_text(config, payload) if config.template else f"{prefix}: {payload.get('title')}"
    return {"text": text, "attachments": [attachment]}


@register_transport
class SlackTransport(NotificationTransport):
    name = "slack"

    async def deliver(self, config: NotificationConfig, payload: dict[str, Any]) -> bool:
        return await self._post_json(config.endpoint, build_slack_message(config, payload))
