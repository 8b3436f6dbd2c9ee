"""
In-memory PaymentStore for tests.
Enforces the same unique keys and compare-and-swap rules as the Mongo store.
"""
import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from paygate.models.payment.payment import Payment, PaymentStatus
from paygate.models.payment.provider_config import PaymentProviderConfig
from paygate.models.payment.transaction import PaymentTransaction
from paygate.services.payment.errors import (
    DuplicateMerchantTradeNoError,
    DuplicateTransactionError,
    ProviderConfigError,
)
from paygate.services.payment.store import PaymentStore


class InjectedFailure(RuntimeError):
    """Raised between the payment write and the ledger write"""


class InMemoryPaymentStore(PaymentStore):

    def __init__(self):
        self.provider_rows: Dict[str, PaymentProviderConfig] = {}
        self.payment_rows: Dict[str, Payment] = {}
        self.transaction_rows: List[PaymentTransaction] = []
        self.fail_between_writes = False
        self.update_calls = 0

    # Provider configurations

    async def find_provider(self, organizer_id, provider_id, active_only=True):
        for row in self.provider_rows.values():
            if row.organizer_id == organizer_id and row.provider_id == provider_id:
                if active_only and not row.is_active:
                    return None
                return row.model_copy(deep=True)
        return None

    async def find_default_provider(self, organizer_id):
        for row in self._providers_of(organizer_id, active_only=True):
            if row.is_default:
                return row.model_copy(deep=True)
        return None

    async def find_active_provider(self, organizer_id):
        rows = self._providers_of(organizer_id, active_only=True)
        return rows[0].model_copy(deep=True) if rows else None

    def _providers_of(self, organizer_id, active_only):
        rows = [
            row for row in self.provider_rows.values()
            if row.organizer_id == organizer_id and (row.is_active or not active_only)
        ]
        return sorted(rows, key=lambda row: row.created_at)

    async def list_providers(self, organizer_id, active_only=True):
        rows = self._providers_of(organizer_id, active_only)
        rows.sort(key=lambda row: not row.is_default)
        return [row.model_copy(deep=True) for row in rows]

    async def count_providers(self, organizer_id):
        return len(self._providers_of(organizer_id, active_only=False))

    def _check_single_default(self, row):
        """Mirror of the partial unique index on (organizer_id) where is_default"""
        if not row.is_default:
            return
        for other in self.provider_rows.values():
            if other.id != row.id and other.organizer_id == row.organizer_id and other.is_default:
                raise ProviderConfigError("Organizer already has a default provider")

    async def insert_provider(self, config):
        if await self.find_provider(config.organizer_id, config.provider_id, active_only=False):
            raise ProviderConfigError(f"Payment provider '{config.provider_id}' already configured")
        self._check_single_default(config)
        self.provider_rows[config.id] = config.model_copy(deep=True)

    async def update_provider(self, config_id, changes):
        row = self.provider_rows.get(config_id)
        if row is None:
            return None
        row = row.model_copy(update={**changes, "updated_at": datetime.utcnow()})
        self._check_single_default(row)
        self.provider_rows[config_id] = row
        return row.model_copy(deep=True)

    async def clear_default_provider(self, organizer_id, except_id=None):
        for config_id, row in list(self.provider_rows.items()):
            if row.organizer_id == organizer_id and row.is_default and config_id != except_id:
                self.provider_rows[config_id] = row.model_copy(update={"is_default": False})

    async def set_default_provider(self, organizer_id, config_id, changes=None):
        # Let a concurrent caller interleave before the single-step swap
        await asyncio.sleep(0)
        row = self.provider_rows.get(config_id)
        if row is None or row.organizer_id != organizer_id:
            return None
        await self.clear_default_provider(organizer_id, except_id=config_id)
        return await self.update_provider(config_id, {**(changes or {}), "is_default": True})

    # Payments

    async def insert_payment(self, payment):
        await asyncio.sleep(0)
        if any(p.merchant_trade_no == payment.merchant_trade_no for p in self.payment_rows.values()):
            raise DuplicateMerchantTradeNoError(payment.merchant_trade_no)
        self.payment_rows[payment.id] = payment.model_copy(deep=True)

    async def get_payment(self, payment_id):
        row = self.payment_rows.get(payment_id)
        return row.model_copy(deep=True) if row else None

    async def find_payment_by_merchant_trade_no(self, merchant_trade_no):
        for row in self.payment_rows.values():
            if row.merchant_trade_no == merchant_trade_no:
                return row.model_copy(deep=True)
        return None

    async def find_stale_payments(self, statuses, created_before, limit=100):
        wanted = {PaymentStatus(s) for s in statuses}
        rows = [
            row for row in self.payment_rows.values()
            if row.status in wanted and row.created_at < created_before
        ]
        rows.sort(key=lambda row: row.created_at)
        return [row.model_copy(deep=True) for row in rows[:limit]]

    # Ledger

    def _has_transaction(self, transaction):
        return self._find_transaction(
            transaction.payment_id, transaction.provider_transaction_id, transaction.type
        ) is not None

    def _find_transaction(self, payment_id, provider_transaction_id, transaction_type):
        for row in self.transaction_rows:
            if (
                row.payment_id == payment_id
                and row.provider_transaction_id == provider_transaction_id
                and row.type == transaction_type
            ):
                return row
        return None

    def _append(self, transaction):
        sequence = sum(1 for row in self.transaction_rows if row.payment_id == transaction.payment_id)
        self.transaction_rows.append(transaction.model_copy(update={"sequence": sequence}))

    async def insert_transaction(self, transaction):
        await asyncio.sleep(0)
        if self._has_transaction(transaction):
            raise DuplicateTransactionError(transaction.provider_transaction_id)
        self._append(transaction)

    async def find_transaction(self, payment_id, provider_transaction_id, transaction_type):
        row = self._find_transaction(payment_id, provider_transaction_id, transaction_type)
        return row.model_copy(deep=True) if row else None

    async def list_transactions(self, payment_id):
        return [row.model_copy(deep=True) for row in self.transaction_rows if row.payment_id == payment_id]

    # Unit of work

    async def apply_payment_update(self, payment_id, expected_version, changes, transaction=None):
        self.update_calls += 1
        # Let concurrent callers interleave before the check-and-set
        await asyncio.sleep(0)

        current = self.payment_rows.get(payment_id)
        if current is None or current.version != expected_version:
            return None

        updated = current.model_copy(update={
            **changes,
            "version": current.version + 1,
            "updated_at": datetime.utcnow()
        })

        if transaction is not None and self._has_transaction(transaction):
            raise DuplicateTransactionError(transaction.provider_transaction_id)

        if self.fail_between_writes:
            # Nothing committed: behaves like an aborted transaction
            raise InjectedFailure("storage failure between payment and ledger writes")

        self.payment_rows[payment_id] = updated
        if transaction is not None:
            self._append(transaction)
        return updated.model_copy(deep=True)
