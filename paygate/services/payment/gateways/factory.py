"""
Payment Provider Registry
Maps provider ids to adapter instances
"""
from typing import Dict, List, Optional

from paygate.services.payment.errors import UnknownProviderError
from paygate.services.payment.gateways.base import BasePaymentProvider
from paygate.services.payment.gateways.ecpay import ECPayProvider


class ProviderRegistry:
    """
    Registry of payment provider adapters.
    Populated once at startup; adding a provider is a single register() call.
    """

    def __init__(self, providers: Optional[List[BasePaymentProvider]] = None):
        self._providers: Dict[str, BasePaymentProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: BasePaymentProvider) -> None:
        """
        Register a provider adapter.

        Args:
            provider: Adapter instance implementing BasePaymentProvider
        """
        self._providers[provider.provider_id] = provider

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def available_providers(self) -> List[str]:
        """Get list of registered provider IDs"""
        return list(self._providers.keys())

    def resolve(self, provider_id: str) -> BasePaymentProvider:
        """
        Get the adapter for a provider.

        Raises:
            UnknownProviderError: If provider is not registered
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProviderError(
                f"Unknown payment provider: {provider_id}. Available: {self.available_providers()}"
            )
        return provider


_registry: Optional[ProviderRegistry] = None


def default_registry() -> ProviderRegistry:
    """Process-wide registry with every shipped adapter"""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry([
            ECPayProvider(),
            # Add more providers here:
            # StripeProvider(),
        ])
    return _registry
