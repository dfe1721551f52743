"""
Notification transports

Defines the delivery interface shared by all channel kinds and a registry
mapping channel names to transport classes.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from jinja2 import Environment, StrictUndefined, TemplateError

from ..config import NotificationSettings
from ..errors import DeliveryError
from ..models import NotificationConfig

logger = logging.getLogger(__name__)

_template_env = Environment(undefined=StrictUndefined, autoescape=False)

DEFAULT_TEXT_TEMPLATE = (
    "[{{ severity | upper }}] {{ title }}"
    "{% if resolved %} (resolved){% endif %}: {{ message }}"
)


def render_text(config: NotificationConfig, payload: dict[str, Any]) -> str:
    """Render the channel's message template (or the default) against a payload"""
    source = config.template or DEFAULT_TEXT_TEMPLATE
    try:
        return _template_env.from_string(source).render(**payload)
    except TemplateError as e:
        logger.warning(f"Template for channel {config.name} failed, using default: {e}")
        return _template_env.from_string(DEFAULT_TEXT_TEMPLATE).render(**payload)


class NotificationTransport(ABC):
    """
    Delivers one payload to one endpoint

    Implementations return True on success and raise DeliveryError with a
    readable reason otherwise.
    """

    name: str = ""

    def __init__(self, settings: NotificationSettings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http = http_client

    @abstractmethod
    async def deliver(self, config: NotificationConfig, payload: dict[str, Any]) -> bool:
        """Deliver a flat alert payload to the configured endpoint"""

    async def _post_json(
        self, url: str, body: dict[str, Any], headers: Optional[dict[str, str]] = None
    ) -> bool:
        try:
            response = await self.http.post(url, json=body, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryError(f"{self.name} request to {url} failed: {e}") from e
        if not response.is_success:
            raise DeliveryError(
                f"{self.name} endpoint {url} returned HTTP {response.status_code}"
            )
        return True


class TransportRegistry:
    """Registry of transport classes keyed by channel name"""

    def __init__(self):
        self._transports: dict[str, type[NotificationTransport]] = {}

    def register(self, transport_class: type[NotificationTransport]) -> None:
        name = getattr(transport_class, "name", None)
        if not name:
            raise ValueError(
                f"Transport class {transport_class.__name__} must have a 'name' attribute"
            )
        self._transports[name] = transport_class
        logger.debug(f"Registered notification transport: {name}")

    def get_transport_class(self, name: str) -> Optional[type[NotificationTransport]]:
        return self._transports.get(name)

    def get_available_transports(self) -> list[str]:
        return list(self._transports.keys())

    def create_transports(
        self, settings: NotificationSettings, http_client: httpx.AsyncClient
    ) -> dict[str, NotificationTransport]:
        """Instantiate every registered transport"""
        return {
            name: transport_class(settings, http_client)
            for name, transport_class in self._transports.items()
        }


# Global registry instance
registry = TransportRegistry()


def register_transport(transport_class: type) -> type:
    """Decorator for registering transport classes"""
    registry.register(transport_class)
    return transport_class
