"""
Payment Provider Routes
Organizer onboarding and management of payment providers
"""
from fastapi import APIRouter, Depends

from paygate.models.payment.provider_config import (
    CreateProviderRequest,
    UpdateProviderRequest,
    ProviderConfigResponse,
)
from paygate.routes.dependencies import get_current_organizer_id, get_provider_service
from paygate.routes.payment.errors import payment_error_response
from paygate.services.payment.errors import PaymentError, UnknownProviderError
from paygate.services.payment.provider_service import PaymentProviderService
from paygate.utils.response import success_response, error_response

router = APIRouter(prefix="/organizers/me/payment-providers", tags=["Payment Providers"])


@router.get("")
async def list_providers(
    organizer_id: str = Depends(get_current_organizer_id),
    provider_service: PaymentProviderService = Depends(get_provider_service)
):
    """List active providers (credentials never returned)"""
    providers = await provider_service.list_providers(organizer_id)

    return success_response(
        message="Providers retrieved successfully",
        data={
            "providers": [ProviderConfigResponse.from_config(p) for p in providers],
            "available": provider_service.registry.available_providers()
        }
    )


@router.post("")
async def create_provider(
    body: CreateProviderRequest,
    organizer_id: str = Depends(get_current_organizer_id),
    provider_service: PaymentProviderService = Depends(get_provider_service)
):
    """Onboard a provider; credentials are validated then encrypted"""
    try:
        config = await provider_service.create_provider(organizer_id, body)
    except UnknownProviderError as e:
        return error_response(message=str(e), status_code=400)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(
        message="Provider configured successfully",
        data=ProviderConfigResponse.from_config(config),
        status_code=201
    )


@router.put("/{provider_id}")
async def update_provider(
    provider_id: str,
    body: UpdateProviderRequest,
    organizer_id: str = Depends(get_current_organizer_id),
    provider_service: PaymentProviderService = Depends(get_provider_service)
):
    """Update a provider or rotate its credentials"""
    try:
        config = await provider_service.update_provider(organizer_id, provider_id, body)
    except UnknownProviderError as e:
        return error_response(message=str(e), status_code=400)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(
        message="Provider updated successfully",
        data=ProviderConfigResponse.from_config(config)
    )


@router.post("/{provider_id}/default")
async def set_default_provider(
    provider_id: str,
    organizer_id: str = Depends(get_current_organizer_id),
    provider_service: PaymentProviderService = Depends(get_provider_service)
):
    """Make a provider the organizer's default"""
    try:
        config = await provider_service.set_default_provider(organizer_id, provider_id)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(
        message="Default provider updated",
        data=ProviderConfigResponse.from_config(config)
    )


@router.delete("/{provider_id}")
async def remove_provider(
    provider_id: str,
    organizer_id: str = Depends(get_current_organizer_id),
    provider_service: PaymentProviderService = Depends(get_provider_service)
):
    """Deactivate a provider (kept for past payments)"""
    try:
        await provider_service.remove_provider(organizer_id, provider_id)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(message="Provider removed")
