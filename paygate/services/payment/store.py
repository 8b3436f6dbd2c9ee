"""
Payment Store
Persistence boundary for provider configs, payments and ledger entries.

PaymentStore is the repository interface the services depend on;
MotorPaymentStore is the MongoDB implementation.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

from paygate.models.payment.payment import Payment, PaymentStatus
from paygate.models.payment.provider_config import PaymentProviderConfig
from paygate.models.payment.transaction import PaymentTransaction, TransactionType
from paygate.services.payment.errors import (
    DuplicateTransactionError,
    DuplicateMerchantTradeNoError,
    ProviderConfigError,
)

logger = logging.getLogger(__name__)

# Partial unique index name: at most one is_default=True row per organizer
DEFAULT_PROVIDER_INDEX = "organizer_default_unique"


class PaymentStore(ABC):
    """Repository interface for the payment subsystem"""

    # Provider configurations

    @abstractmethod
    async def find_provider(
        self,
        organizer_id: str,
        provider_id: str,
        active_only: bool = True
    ) -> Optional[PaymentProviderConfig]:
        """Get an organizer's config for one provider"""

    @abstractmethod
    async def find_default_provider(self, organizer_id: str) -> Optional[PaymentProviderConfig]:
        """Get the organizer's active default provider"""

    @abstractmethod
    async def find_active_provider(self, organizer_id: str) -> Optional[PaymentProviderConfig]:
        """Get any active provider (oldest first)"""

    @abstractmethod
    async def list_providers(self, organizer_id: str, active_only: bool = True) -> List[PaymentProviderConfig]:
        """List providers, default first then oldest first"""

    @abstractmethod
    async def count_providers(self, organizer_id: str) -> int:
        """Count every provider row of an organizer (active or not)"""

    @abstractmethod
    async def insert_provider(self, config: PaymentProviderConfig) -> None:
        """Insert a provider config (unique per organizer + provider)"""

    @abstractmethod
    async def update_provider(self, config_id: str, changes: Dict[str, Any]) -> Optional[PaymentProviderConfig]:
        """Update a provider config, returns the new version"""

    @abstractmethod
    async def clear_default_provider(self, organizer_id: str, except_id: Optional[str] = None) -> None:
        """Unset is_default on every other provider of the organizer"""

    @abstractmethod
    async def set_default_provider(
        self,
        organizer_id: str,
        config_id: str,
        changes: Optional[Dict[str, Any]] = None
    ) -> Optional[PaymentProviderConfig]:
        """
        Make one provider the organizer's only default, in a single unit of work.

        Raises:
            ProviderConfigError: A concurrent write claimed the default first
        """

    # Payments

    @abstractmethod
    async def insert_payment(self, payment: Payment) -> None:
        """
        Insert a new payment.

        Raises:
            DuplicateMerchantTradeNoError: merchant_trade_no already used
        """

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        """Get payment by ID"""

    @abstractmethod
    async def find_payment_by_merchant_trade_no(self, merchant_trade_no: str) -> Optional[Payment]:
        """Get payment by merchant trade number"""

    @abstractmethod
    async def find_stale_payments(
        self,
        statuses: Iterable[PaymentStatus],
        created_before: datetime,
        limit: int = 100
    ) -> List[Payment]:
        """Payments still in one of the statuses, created before the cutoff"""

    # Ledger

    @abstractmethod
    async def insert_transaction(self, transaction: PaymentTransaction) -> None:
        """
        Insert a ledger entry.

        Raises:
            DuplicateTransactionError: (payment_id, provider_transaction_id, type) exists
        """

    @abstractmethod
    async def find_transaction(
        self,
        payment_id: str,
        provider_transaction_id: Optional[str],
        transaction_type: TransactionType
    ) -> Optional[PaymentTransaction]:
        """Get a ledger entry by its idempotency key"""

    @abstractmethod
    async def list_transactions(self, payment_id: str) -> List[PaymentTransaction]:
        """Ledger entries of a payment in insertion order"""

    # Unit of work

    @abstractmethod
    async def apply_payment_update(
        self,
        payment_id: str,
        expected_version: int,
        changes: Dict[str, Any],
        transaction: Optional[PaymentTransaction] = None
    ) -> Optional[Payment]:
        """
        Update a payment and append its ledger entry atomically.

        The payment is only updated when its version still equals
        expected_version; the version is then incremented.

        Returns:
            The updated payment, or None when the version check failed

        Raises:
            DuplicateTransactionError: Ledger entry already exists (nothing written)
        """


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k != "_id"}


class MotorPaymentStore(PaymentStore):
    """MongoDB implementation (requires a replica set for transactions)"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.client = db.client
        self.providers = db.payment_providers
        self.payments = db.payments
        self.transactions = db.payment_transactions

    # Provider configurations

    async def find_provider(self, organizer_id, provider_id, active_only=True):
        query = {"organizer_id": organizer_id, "provider_id": provider_id}
        if active_only:
            query["is_active"] = True
        doc = await self.providers.find_one(query)
        return PaymentProviderConfig.model_validate(_strip_id(doc)) if doc else None

    async def find_default_provider(self, organizer_id):
        doc = await self.providers.find_one({
            "organizer_id": organizer_id,
            "is_active": True,
            "is_default": True
        })
        return PaymentProviderConfig.model_validate(_strip_id(doc)) if doc else None

    async def find_active_provider(self, organizer_id):
        cursor = self.providers.find(
            {"organizer_id": organizer_id, "is_active": True}
        ).sort("created_at", ASCENDING).limit(1)
        docs = await cursor.to_list(length=1)
        return PaymentProviderConfig.model_validate(_strip_id(docs[0])) if docs else None

    async def list_providers(self, organizer_id, active_only=True):
        query = {"organizer_id": organizer_id}
        if active_only:
            query["is_active"] = True
        cursor = self.providers.find(query).sort([("is_default", DESCENDING), ("created_at", ASCENDING)])
        docs = await cursor.to_list(length=100)
        return [PaymentProviderConfig.model_validate(_strip_id(doc)) for doc in docs]

    async def count_providers(self, organizer_id):
        return await self.providers.count_documents({"organizer_id": organizer_id})

    async def insert_provider(self, config):
        try:
            await self.providers.insert_one(config.model_dump())
        except DuplicateKeyError as e:
            if DEFAULT_PROVIDER_INDEX in str(e):
                raise ProviderConfigError("Default provider changed concurrently, please retry") from e
            raise ProviderConfigError(
                f"Payment provider '{config.provider_id}' already configured for this organizer"
            ) from e

    async def update_provider(self, config_id, changes):
        try:
            doc = await self.providers.find_one_and_update(
                {"id": config_id},
                {"$set": {**changes, "updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError as e:
            raise ProviderConfigError("Organizer already has a default provider") from e
        return PaymentProviderConfig.model_validate(_strip_id(doc)) if doc else None

    async def clear_default_provider(self, organizer_id, except_id=None):
        query = {"organizer_id": organizer_id, "is_default": True}
        if except_id:
            query["id"] = {"$ne": except_id}
        await self.providers.update_many(
            query,
            {"$set": {"is_default": False, "updated_at": datetime.utcnow()}}
        )

    async def set_default_provider(self, organizer_id, config_id, changes=None):
        now = datetime.utcnow()
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    await self.providers.update_many(
                        {"organizer_id": organizer_id, "is_default": True, "id": {"$ne": config_id}},
                        {"$set": {"is_default": False, "updated_at": now}},
                        session=session
                    )
                    doc = await self.providers.find_one_and_update(
                        {"id": config_id, "organizer_id": organizer_id},
                        {"$set": {**(changes or {}), "is_default": True, "updated_at": now}},
                        return_document=ReturnDocument.AFTER,
                        session=session
                    )
        except OperationFailure as e:
            # Unique default index or a write conflict with another default change
            if isinstance(e, DuplicateKeyError) or e.has_error_label("TransientTransactionError"):
                raise ProviderConfigError("Default provider changed concurrently, please retry") from e
            raise
        return PaymentProviderConfig.model_validate(_strip_id(doc)) if doc else None

    # Payments

    async def insert_payment(self, payment):
        try:
            await self.payments.insert_one(payment.model_dump())
        except DuplicateKeyError as e:
            raise DuplicateMerchantTradeNoError(payment.merchant_trade_no) from e

    async def get_payment(self, payment_id):
        doc = await self.payments.find_one({"id": payment_id})
        return Payment.model_validate(_strip_id(doc)) if doc else None

    async def find_payment_by_merchant_trade_no(self, merchant_trade_no):
        doc = await self.payments.find_one({"merchant_trade_no": merchant_trade_no})
        return Payment.model_validate(_strip_id(doc)) if doc else None

    async def find_stale_payments(self, statuses, created_before, limit=100):
        cursor = self.payments.find({
            "status": {"$in": [PaymentStatus(s).value for s in statuses]},
            "created_at": {"$lt": created_before}
        }).sort("created_at", ASCENDING).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [Payment.model_validate(_strip_id(doc)) for doc in docs]

    # Ledger

    async def _insert_transaction(self, transaction, session=None):
        doc = transaction.model_dump()
        doc["sequence"] = await self.transactions.count_documents(
            {"payment_id": transaction.payment_id}, session=session
        )
        try:
            await self.transactions.insert_one(doc, session=session)
        except DuplicateKeyError as e:
            raise DuplicateTransactionError(
                f"{transaction.type.value}:{transaction.provider_transaction_id} already recorded "
                f"for payment {transaction.payment_id}"
            ) from e

    async def insert_transaction(self, transaction):
        await self._insert_transaction(transaction)

    async def find_transaction(self, payment_id, provider_transaction_id, transaction_type):
        doc = await self.transactions.find_one({
            "payment_id": payment_id,
            "provider_transaction_id": provider_transaction_id,
            "type": TransactionType(transaction_type).value
        })
        return PaymentTransaction.model_validate(_strip_id(doc)) if doc else None

    async def list_transactions(self, payment_id):
        cursor = self.transactions.find({"payment_id": payment_id}).sort(
            [("sequence", ASCENDING), ("created_at", ASCENDING)]
        )
        docs = await cursor.to_list(length=None)
        return [PaymentTransaction.model_validate(_strip_id(doc)) for doc in docs]

    # Unit of work

    async def apply_payment_update(self, payment_id, expected_version, changes, transaction=None):
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    doc = await self.payments.find_one_and_update(
                        {"id": payment_id, "version": expected_version},
                        {
                            "$set": {**changes, "updated_at": datetime.utcnow()},
                            "$inc": {"version": 1}
                        },
                        return_document=ReturnDocument.AFTER,
                        session=session
                    )

                    if doc is None:
                        return None

                    # Raising here aborts the whole transaction
                    if transaction is not None:
                        await self._insert_transaction(transaction, session=session)

                    return Payment.model_validate(_strip_id(doc))
        except OperationFailure as e:
            # Another transaction wrote this payment first: same outcome as a lost version check
            if e.has_error_label("TransientTransactionError"):
                logger.warning("[WARN] Write conflict updating payment %s, caller will reload", payment_id)
                return None
            raise
