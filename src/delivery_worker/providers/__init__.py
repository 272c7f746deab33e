"""Provider registry for channel-based delivery dispatch."""

from delivery_shared.enums import Channel

from delivery_worker.providers.base import DeliveryProvider, DeliveryResult
from delivery_worker.providers.chat import ChatProvider
from delivery_worker.providers.email import EmailProvider
from delivery_worker.providers.sms import SMSProvider

__all__ = [
    "ChatProvider",
    "DeliveryProvider",
    "DeliveryResult",
    "EmailProvider",
    "ProviderRegistry",
    "SMSProvider",
    "create_default_registry",
]


class ProviderRegistry:
    """Maps channel names to delivery provider instances."""

    def __init__(self) -> None:
        self._providers: dict[str, DeliveryProvider] = {}

    def register(self, channel: str, provider: DeliveryProvider) -> None:
        self._providers[channel] = provider

    def get(self, channel: str) -> DeliveryProvider:
        """Return the provider for a channel.

        Raises KeyError if no provider is registered for the channel.
        """
        return self._providers[channel]

    def channels(self) -> list[str]:
        return list(self._providers)


def create_default_registry() -> ProviderRegistry:
    """Create a registry with all built-in providers."""
    registry = ProviderRegistry()
    registry.register(Channel.EMAIL, EmailProvider())
    registry.register(Channel.SMS, SMSProvider())
    registry.register(Channel.CHAT, ChatProvider())
    return registry
