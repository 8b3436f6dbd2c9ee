"""
Transaction Ledger
Append-only record of every charge/refund event applied to a payment.
Corrections are new compensating entries; nothing is updated or deleted.
"""
import uuid
import logging
from typing import List, Optional, Dict, Any

from paygate.models.payment.transaction import (
    PaymentTransaction,
    TransactionType,
    TransactionStatus,
    OUTFLOW_TYPES,
)
from paygate.services.payment.errors import DuplicateTransactionError
from paygate.services.payment.store import PaymentStore

logger = logging.getLogger(__name__)


class TransactionLedger:
    """Ledger operations on top of the payment store"""

    def __init__(self, store: PaymentStore):
        self.store = store

    @staticmethod
    def generate_transaction_id() -> str:
        """Generate unique ledger entry ID"""
        return f"TXN_{uuid.uuid4().hex[:16].upper()}"

    @classmethod
    def build_entry(
        cls,
        payment_id: str,
        transaction_type: TransactionType,
        status: TransactionStatus,
        amount: float,
        provider_transaction_id: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None
    ) -> PaymentTransaction:
        return PaymentTransaction(
            id=cls.generate_transaction_id(),
            payment_id=payment_id,
            type=transaction_type,
            status=status,
            amount=amount,
            provider_transaction_id=provider_transaction_id,
            provider_response=provider_response or {}
        )

    async def append(self, transaction: PaymentTransaction) -> bool:
        """
        Append an entry, idempotent on (payment_id, provider_transaction_id, type).

        Returns:
            True if written, False if the same provider event was already recorded
        """
        try:
            await self.store.insert_transaction(transaction)
        except DuplicateTransactionError:
            logger.info(
                "[INFO] Ledger entry already recorded: payment=%s type=%s provider_txn=%s",
                transaction.payment_id, transaction.type.value, transaction.provider_transaction_id
            )
            return False
        return True

    async def exists(
        self,
        payment_id: str,
        provider_transaction_id: Optional[str],
        transaction_type: TransactionType
    ) -> bool:
        found = await self.store.find_transaction(payment_id, provider_transaction_id, transaction_type)
        return found is not None

    async def list_for(self, payment_id: str) -> List[PaymentTransaction]:
        """Entries of a payment in insertion order"""
        return await self.store.list_transactions(payment_id)

    @staticmethod
    def net_amount(transactions: List[PaymentTransaction]) -> float:
        """Completed charges minus completed refunds/chargebacks"""
        total = 0.0
        for txn in transactions:
            if txn.status != TransactionStatus.COMPLETED:
                continue
            if txn.type == TransactionType.CHARGE:
                total += txn.amount
            elif txn.type in OUTFLOW_TYPES:
                total -= txn.amount
        return round(total, 2)

    async def net_captured(self, payment_id: str) -> float:
        """Amount currently held for a payment"""
        return self.net_amount(await self.list_for(payment_id))
