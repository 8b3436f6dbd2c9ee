"""
Payment Callback Routes
Endpoints for provider server-to-server notifications
SECURITY: The adapter verifies the signature/MAC before anything is applied
"""
import json
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from paygate.routes.dependencies import get_payment_service
from paygate.services.payment.errors import PaymentError, UnknownProviderError
from paygate.services.payment.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payment Callbacks"])

DEFAULT_FAILURE_ACK = "ERROR"


async def read_callback_data(request: Request) -> dict:
    """Callback payload from a form-encoded or JSON body"""
    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type:
        try:
            data = json.loads(await request.body() or b"{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/callback/{provider_id}")
async def handle_payment_callback(
    provider_id: str,
    request: Request,
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Handle a provider callback.

    SECURITY:
    - Verifies the callback signature/MAC with the organizer's credentials
    - Processes idempotently (duplicate callbacks are acknowledged)
    - Rejections carry only the provider's generic failure ack;
      details are logged server-side
    """
    try:
        adapter = payment_service.registry.resolve(provider_id)
    except UnknownProviderError:
        logger.warning("[SECURITY] Callback for unknown provider %s", provider_id)
        return PlainTextResponse(DEFAULT_FAILURE_ACK, status_code=404)

    callback_data = await read_callback_data(request)

    try:
        result = await payment_service.handle_callback(provider_id, callback_data)
    except PaymentError as e:
        logger.warning("[WARN] %s callback rejected: %s", provider_id, e)
        return PlainTextResponse(adapter.failure_ack)

    return PlainTextResponse(result.acknowledgement)
