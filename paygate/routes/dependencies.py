from functools import lru_cache
from typing import Annotated, Optional
from fastapi import Depends, Header, HTTPException
from motor.motor_asyncio import AsyncIOMotorDatabase

from paygate.database import get_database
from paygate.services.payment.credentials import CredentialStore
from paygate.services.payment.gateways.factory import default_registry
from paygate.services.payment.payment_service import PaymentService
from paygate.services.payment.provider_service import PaymentProviderService
from paygate.services.payment.store import MotorPaymentStore


@lru_cache(maxsize=1)
def get_credential_store() -> CredentialStore:
    """Process-wide credential store (key read from PAYMENT_CREDENTIALS_KEY)"""
    return CredentialStore()


def build_payment_service(db: AsyncIOMotorDatabase) -> PaymentService:
    return PaymentService(MotorPaymentStore(db), default_registry(), get_credential_store())


async def get_current_organizer_id(
    x_organizer_id: Annotated[Optional[str], Header()] = None
) -> str:
    """Organizer identity, set by the authenticating gateway in front of this service"""
    if not x_organizer_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_organizer_id


async def get_payment_service(
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> PaymentService:
    return build_payment_service(db)


async def get_provider_service(
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> PaymentProviderService:
    return PaymentProviderService(MotorPaymentStore(db), default_registry(), get_credential_store())
