"""
Provider registry.

Resolves a provider type to one cached provider instance for the life of the
process. Construction validates credentials immediately, so a misconfigured
provider fails at startup or on the health check rather than mid-transaction.
"""

from typing import Any, Callable, Dict, Optional, Union

from ...core.config import Config, get_config
from ...core.exceptions import ConfigurationError
from ...core.logging_config import get_logger
from ...db.models.billing_enums import ProviderType
from .apple_appstore import AppleAppStoreProvider
from .base import PaymentProvider, ReceiptPlatform
from .google_play import GooglePlayProvider
from .razorpay import RazorpayProvider

logger = get_logger(__name__)

ProviderFactory = Callable[[Config], PaymentProvider]

PROVIDER_FACTORIES: Dict[ProviderType, ProviderFactory] = {
    ProviderType.RAZORPAY: lambda config: RazorpayProvider(config.razorpay, config.billing),
    ProviderType.GOOGLE_PLAY: lambda config: GooglePlayProvider(config.google_play, config.billing),
    ProviderType.APPLE_APPSTORE: lambda config: AppleAppStoreProvider(config.apple, config.billing),
}

PLATFORM_PROVIDERS = {
    ReceiptPlatform.ANDROID: ProviderType.GOOGLE_PLAY,
    ReceiptPlatform.IOS: ProviderType.APPLE_APPSTORE,
}


def is_valid_provider_type(value: Any) -> bool:
    """Whether ``value`` names a known provider variant."""
    if isinstance(value, ProviderType):
        return True
    try:
        ProviderType(value)
    except ValueError:
        return False
    return True


class ProviderRegistry:
    """
    Process wide provider instances.

    Lifecycle: instances are built on first ``get``; ``clear_cache`` drops
    them (tests, credential rotation); ``close`` releases their HTTP sessions.
    """

    def __init__(self, config: Optional[Config] = None, factories: Optional[Dict[ProviderType, ProviderFactory]] = None):
        self._config = config
        self._factories = dict(factories or PROVIDER_FACTORIES)
        self._providers: Dict[ProviderType, PaymentProvider] = {}

    @property
    def config(self) -> Config:
        return self._config or get_config()

    def get(self, provider_type: Union[ProviderType, str]) -> PaymentProvider:
        """
        Get the provider for a type, constructing it on first use.

        Raises:
            ConfigurationError: unknown type or missing credentials
        """
        if not is_valid_provider_type(provider_type):
            raise ConfigurationError(f"Unknown payment provider: {provider_type}", config_key="provider")
        provider_type = ProviderType(provider_type)

        provider = self._providers.get(provider_type)
        if provider is None:
            provider = self._factories[provider_type](self.config)
            self._providers[provider_type] = provider
            logger.info(f"Initialized payment provider: {provider_type.value}")
        return provider

    def for_platform(self, platform: ReceiptPlatform) -> PaymentProvider:
        return self.get(PLATFORM_PROVIDERS[platform])

    def register(self, provider: PaymentProvider) -> None:
        """Install a ready-made provider instance (used by tests)."""
        self._providers[provider.provider_type] = provider

    def health(self) -> Dict[str, Dict[str, Any]]:
        """Try to construct every provider and report configuration problems."""
        report: Dict[str, Dict[str, Any]] = {}
        for provider_type in ProviderType:
            try:
                provider = self.get(provider_type)
            except ConfigurationError as e:
                report[provider_type.value] = {"configured": False, "error": e.message}
                continue
            report[provider_type.value] = {
                "configured": True,
                "operations": sorted(op.value for op in provider.supported_operations),
            }
        return report

    def clear_cache(self) -> None:
        self._providers.clear()

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        logger.info("Payment providers closed")

