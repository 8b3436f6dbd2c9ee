"""
Payment Expiry Scheduler Service

Fails payments that were abandoned before the provider resolved them:
- pending -> failed when created_at + PAYMENT_EXPIRY_MINUTES has passed

Payments already handed to the provider (processing) are left to the
provider's callbacks.
"""
import os
import logging
from typing import Dict, Any
from datetime import datetime, timedelta
from dotenv import load_dotenv

from paygate.models.payment.payment import PaymentStatus
from paygate.services.payment.errors import PaymentError, InvalidTransitionError
from paygate.services.payment.payment_service import PaymentService

load_dotenv()

logger = logging.getLogger(__name__)


class PaymentExpiryScheduler:
    """Background job handler for abandoned payments"""

    def __init__(
        self,
        payment_service: PaymentService,
        expiry_minutes: int = None,
        batch_size: int = 100
    ):
        self.payment_service = payment_service
        self.store = payment_service.store
        if expiry_minutes is None:
            expiry_minutes = int(os.getenv("PAYMENT_EXPIRY_MINUTES", "60"))
        self.expiry_minutes = expiry_minutes
        self.batch_size = batch_size

    async def expire_stale_payments(self) -> Dict[str, Any]:
        """
        Expire pending payments older than the expiry window.

        A payment resolved between the query and the update is skipped,
        not counted as an error.
        """
        cutoff = datetime.utcnow() - timedelta(minutes=self.expiry_minutes)
        results = {
            "processed": 0,
            "skipped": 0,
            "errors": 0
        }

        stale = await self.store.find_stale_payments(
            [PaymentStatus.PENDING],
            created_before=cutoff,
            limit=self.batch_size
        )

        for payment in stale:
            try:
                await self.payment_service.expire_payment(payment.id)
                results["processed"] += 1
            except InvalidTransitionError:
                results["skipped"] += 1
            except PaymentError as e:
                results["errors"] += 1
                logger.error("[ERROR] Failed to expire payment %s: %s", payment.id, e)

        if results["processed"]:
            logger.info("[OK] Expired %d stale payments", results["processed"])

        return results
