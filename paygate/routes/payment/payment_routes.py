"""
Payment Routes
API endpoints for payment operations
"""
from fastapi import APIRouter, Depends
from typing import Optional

from paygate.models.payment.payment import (
    PaymentRequest,
    PaymentRequestBody,
    RefundRequest,
    CancelRequest,
)
from paygate.routes.dependencies import get_current_organizer_id, get_payment_service
from paygate.routes.payment.errors import payment_error_response
from paygate.services.payment.errors import PaymentError
from paygate.services.payment.payment_service import PaymentService
from paygate.utils.response import success_response

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("")
async def create_payment(
    body: PaymentRequestBody,
    organizer_id: str = Depends(get_current_organizer_id),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Create a payment for a registration or other resource.

    The organizer's preferred (or default) provider is used; the response
    carries what the client needs to continue with the provider.
    """
    request = PaymentRequest(**body.model_dump(), organizer_id=organizer_id)

    try:
        result = await payment_service.create_payment(request)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(
        message="Payment created successfully",
        data=result,
        status_code=201
    )


@router.get("/{payment_id}/status")
async def get_payment_status(
    payment_id: str,
    organizer_id: str = Depends(get_current_organizer_id),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Get payment status with its ledger entries"""
    try:
        result = await payment_service.get_payment_status(payment_id, organizer_id)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(
        message="Payment status retrieved successfully",
        data=result
    )


@router.post("/{payment_id}/cancel")
async def cancel_payment(
    payment_id: str,
    body: Optional[CancelRequest] = None,
    organizer_id: str = Depends(get_current_organizer_id),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Cancel a pending or processing payment"""
    try:
        payment = await payment_service.cancel_payment(
            payment_id,
            organizer_id,
            reason=body.reason if body else None
        )
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(
        message="Payment cancelled",
        data={"payment_id": payment.id, "status": payment.status}
    )


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    body: Optional[RefundRequest] = None,
    organizer_id: str = Depends(get_current_organizer_id),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Refund a completed payment.
    Omit amount to refund everything still captured.
    """
    body = body or RefundRequest()

    try:
        payment = await payment_service.refund_payment(
            payment_id,
            organizer_id,
            amount=body.amount,
            reason=body.reason
        )
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(
        message="Refund processed",
        data={"payment_id": payment.id, "status": payment.status}
    )
