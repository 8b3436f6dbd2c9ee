"""
Payment Provider Service
Organizer onboarding and management of payment provider configurations
"""
import uuid
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from paygate.models.payment.provider_config import (
    PaymentProviderConfig,
    CreateProviderRequest,
    UpdateProviderRequest,
)
from paygate.services.payment.credentials import CredentialStore, credentials_context
from paygate.services.payment.errors import (
    InvalidCredentialsError,
    ProviderConfigError,
    ProviderConfigNotFoundError,
    UnknownProviderError,
)
from paygate.services.payment.gateways.factory import ProviderRegistry
from paygate.services.payment.store import PaymentStore

logger = logging.getLogger(__name__)


class PaymentProviderService:
    """
    Service for provider configuration.
    Credentials are validated by the adapter and encrypted before storage.
    """

    def __init__(
        self,
        store: PaymentStore,
        registry: ProviderRegistry,
        credential_store: CredentialStore
    ):
        self.store = store
        self.registry = registry
        self.credential_store = credential_store

    @staticmethod
    def generate_config_id() -> str:
        return f"PRV_{uuid.uuid4().hex[:12].upper()}"

    async def _encrypt_validated(self, organizer_id: str, provider_id: str, credentials: Dict[str, Any]) -> str:
        adapter = self.registry.resolve(provider_id)
        if not await adapter.validate_credentials(credentials):
            raise InvalidCredentialsError(f"Invalid credentials for provider '{provider_id}'")
        return self.credential_store.encrypt(credentials, credentials_context(organizer_id, provider_id))

    async def get_active_provider(
        self,
        organizer_id: str,
        preferred_provider_id: Optional[str] = None
    ) -> Optional[PaymentProviderConfig]:
        """
        Pick the provider for a new payment.
        Preferred (if active) -> organizer default -> any active provider.
        """
        provider = None

        if preferred_provider_id:
            provider = await self.store.find_provider(organizer_id, preferred_provider_id)
            if not provider:
                logger.info(
                    "[INFO] Preferred provider %s not active for organizer %s, falling back to default",
                    preferred_provider_id, organizer_id
                )

        if not provider:
            provider = await self.store.find_default_provider(organizer_id)

        if not provider:
            provider = await self.store.find_active_provider(organizer_id)

        return provider

    async def get_provider_config(
        self,
        organizer_id: str,
        provider_id: str,
        active_only: bool = True
    ) -> PaymentProviderConfig:
        """
        Raises:
            ProviderConfigError: If the organizer has no such provider
        """
        provider = await self.store.find_provider(organizer_id, provider_id, active_only=active_only)
        if not provider:
            raise ProviderConfigNotFoundError(f"Payment provider '{provider_id}' not found for organizer")
        return provider

    def get_decrypted_credentials(self, config: PaymentProviderConfig) -> Dict[str, Any]:
        """
        Raises:
            CredentialError: If the stored blob cannot be decrypted
        """
        return self.credential_store.decrypt(
            config.credentials,
            credentials_context(config.organizer_id, config.provider_id)
        )

    async def create_provider(self, organizer_id: str, data: CreateProviderRequest) -> PaymentProviderConfig:
        """Onboard a provider for an organizer"""
        if not self.registry.has_provider(data.provider_id):
            raise UnknownProviderError(f"Payment provider '{data.provider_id}' is not supported")

        existing = await self.store.find_provider(organizer_id, data.provider_id, active_only=False)
        if existing:
            raise ProviderConfigError(
                f"Payment provider '{data.provider_id}' already configured for this organizer"
            )

        encrypted = await self._encrypt_validated(organizer_id, data.provider_id, data.credentials)

        # First provider of an organizer becomes the default
        is_default = data.is_active and (data.is_default or await self.store.count_providers(organizer_id) == 0)

        now = datetime.utcnow()
        config = PaymentProviderConfig(
            id=self.generate_config_id(),
            organizer_id=organizer_id,
            provider_id=data.provider_id,
            provider_name=data.provider_name,
            credentials=encrypted,
            configuration=data.configuration,
            is_active=data.is_active,
            is_default=is_default,
            created_at=now,
            updated_at=now
        )

        if is_default:
            await self.store.clear_default_provider(organizer_id)

        await self.store.insert_provider(config)

        logger.info("[OK] Provider %s onboarded for organizer %s", data.provider_id, organizer_id)
        return config

    async def update_provider(
        self,
        organizer_id: str,
        provider_id: str,
        data: UpdateProviderRequest
    ) -> PaymentProviderConfig:
        """Update a provider; new credentials are re-validated and re-encrypted"""
        config = await self.get_provider_config(organizer_id, provider_id, active_only=False)
        changes: Dict[str, Any] = {}

        if data.credentials is not None:
            changes["credentials"] = await self._encrypt_validated(organizer_id, provider_id, data.credentials)
            logger.info("[OK] Credentials rotated for provider %s of organizer %s", provider_id, organizer_id)

        if data.provider_name is not None:
            changes["provider_name"] = data.provider_name
        if data.configuration is not None:
            changes["configuration"] = data.configuration
        if data.is_active is not None:
            changes["is_active"] = data.is_active
            if not data.is_active:
                changes["is_default"] = False

        if data.is_default is True:
            if changes.get("is_active", config.is_active) is False:
                raise ProviderConfigError("An inactive provider cannot be the default")
            updated = await self.store.set_default_provider(organizer_id, config.id, changes)
            return updated or config
        if data.is_default is False:
            changes["is_default"] = False

        updated = await self.store.update_provider(config.id, changes)
        return updated or config

    async def set_default_provider(self, organizer_id: str, provider_id: str) -> PaymentProviderConfig:
        config = await self.get_provider_config(organizer_id, provider_id)
        return await self.store.set_default_provider(organizer_id, config.id)

    async def remove_provider(self, organizer_id: str, provider_id: str) -> None:
        """Soft-delete: keeps the row so past payments stay traceable"""
        config = await self.get_provider_config(organizer_id, provider_id)
        await self.store.update_provider(config.id, {"is_active": False, "is_default": False})
        logger.info("[OK] Provider %s deactivated for organizer %s", provider_id, organizer_id)

    async def list_providers(self, organizer_id: str) -> List[PaymentProviderConfig]:
        return await self.store.list_providers(organizer_id)
