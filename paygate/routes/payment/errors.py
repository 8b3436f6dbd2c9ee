"""
Maps payment errors to HTTP responses
"""
import logging
from fastapi.responses import JSONResponse

from paygate.services.payment.errors import (
    PaymentError,
    ProviderNotConfiguredError,
    UnknownProviderError,
    ProviderConfigError,
    ProviderConfigNotFoundError,
    InvalidCredentialsError,
    CredentialError,
    PaymentCreationError,
    PaymentNotFoundError,
    InvalidTransitionError,
    RefundError,
    ConcurrentUpdateError,
)
from paygate.utils.response import error_response

logger = logging.getLogger(__name__)


def payment_error_response(error: PaymentError) -> JSONResponse:
    """Convert a domain error into the standard error envelope"""
    if isinstance(error, (ProviderNotConfiguredError, InvalidCredentialsError)):
        return error_response(message=str(error), status_code=400)
    if isinstance(error, ProviderConfigNotFoundError):
        return error_response(message=str(error), status_code=404)
    if isinstance(error, ProviderConfigError):
        return error_response(message=str(error), status_code=400)
    if isinstance(error, PaymentNotFoundError):
        return error_response(message="Payment not found", status_code=404)
    if isinstance(error, PaymentCreationError):
        return error_response(message="Unable to initiate payment, please retry", status_code=502)
    if isinstance(error, RefundError):
        return error_response(message=str(error), status_code=502 if error.provider_failure else 400)
    if isinstance(error, (InvalidTransitionError, ConcurrentUpdateError)):
        return error_response(message=str(error), status_code=409)
    if isinstance(error, (UnknownProviderError, CredentialError)):
        logger.error("[ERROR] Payment configuration problem: %s", error)
        return error_response(message="Payment provider misconfigured", status_code=500)

    logger.error("[ERROR] Unhandled payment error: %s", error)
    return error_response(message="Payment error", status_code=500)
