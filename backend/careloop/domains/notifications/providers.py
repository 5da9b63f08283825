"""
Notification transport providers.

The dispatcher only knows the NotificationProvider interface. The HTTP
provider posts to an SMS/voice/email gateway; the logging provider is for
local development and never fails.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import uuid4

import httpx

from careloop.core.config import settings
from careloop.core.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)


@dataclass
class ProviderReceipt:
    """Provider acceptance of a message."""
    provider_message_id: str


class NotificationProvider(ABC):
    @abstractmethod
    def send(self, channel: str, address: str, content: str, subject: str | None = None) -> ProviderReceipt:
        """Hand a message to the transport. Raises ProviderError on rejection."""


class HttpNotificationProvider(NotificationProvider):
    """
    Client for the messaging gateway.

    Usage:
        with HttpNotificationProvider() as provider:
            receipt = provider.send("SMS", "+15555550100", "Hello")
    """

    def __init__(self, base_url: str | None = None, api_key: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.NOTIFICATION_PROVIDER_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.NOTIFICATION_PROVIDER_API_KEY
        self.timeout = timeout or settings.NOTIFICATION_PROVIDER_TIMEOUT
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client (lazy initialization)."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout, headers=headers)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "HttpNotificationProvider":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def send(self, channel: str, address: str, content: str, subject: str | None = None) -> ProviderReceipt:
        try:
            response = self._get_client().post(
                "/messages",
                json={
                    "channel": channel,
                    "to": address,
                    "body": content,
                    "subject": subject,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Messaging gateway HTTP error for {channel} message: {e}")
            raise ProviderError(f"Messaging gateway returned status {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Messaging gateway request error for {channel} message: {e}")
            raise ProviderError(f"Failed to connect to messaging gateway: {e}") from e

        message_id = data.get("message_id") or data.get("id")
        if not message_id:
            raise ProviderError("Messaging gateway accepted the message without returning an id")
        return ProviderReceipt(provider_message_id=str(message_id))


class LoggingNotificationProvider(NotificationProvider):
    def send(self, channel: str, address: str, content: str, subject: str | None = None) -> ProviderReceipt:
        message_id = f"log-{uuid4()}"
        logger.info(f"[{channel}] -> {address}: {content} ({message_id})")
        return ProviderReceipt(provider_message_id=message_id)


# Shared instance so the HTTP connection pool is reused across dispatchers
_default_provider: NotificationProvider | None = None
_default_provider_name: str | None = None


def get_notification_provider() -> NotificationProvider:
    """Get the provider selected by NOTIFICATION_PROVIDER, built once per process."""
    global _default_provider, _default_provider_name
    name = settings.NOTIFICATION_PROVIDER.lower()
    if _default_provider is not None and _default_provider_name == name:
        return _default_provider

    if name == "http":
        provider: NotificationProvider = HttpNotificationProvider()
    elif name == "log":
        provider = LoggingNotificationProvider()
    else:
        raise ConfigurationError(f"Unknown NOTIFICATION_PROVIDER: {settings.NOTIFICATION_PROVIDER}")

    if isinstance(_default_provider, HttpNotificationProvider):
        _default_provider.close()
    _default_provider, _default_provider_name = provider, name
    return provider
