"""
Generic webhook transport
"""

from typing import Any

from ..models import NotificationConfig
from .base import NotificationTransport, register_transport, render_text

USER_AGENT = "aire-dispatcher/0.1"


@register_transport
class WebhookTransport(NotificationTransport):
    """POSTs the flat alert payload as JSON"""

    name = "webhook"

    async def deliver(self, config: NotificationConfig, payload: dict[str, Any]) -> bool:
        body = dict(payload)
        if config.template:
            body["text"] = render_text(config, payload)
        headers = {"User-Agent": USER_AGENT, **config.metadata.get("headers", {})}
        return await self._post_json(config.endpoint, body, headers)
