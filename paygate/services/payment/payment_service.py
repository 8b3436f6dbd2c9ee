"""
Payment Service
Orchestrates payments across providers: creation, callback verification,
state transitions and ledger reconciliation.

Concurrency: every state change is a compare-and-swap on the payment
version, paired with its ledger entry in one unit of work. The ledger's
unique key (payment_id, provider_transaction_id, type) makes a duplicate
provider event a no-op even when two deliveries race.
"""
import os
import uuid
import time
import random
import string
import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, FrozenSet
from dotenv import load_dotenv

from paygate.models.payment.payment import (
    Payment,
    PaymentStatus,
    PaymentRequest,
    PaymentResponse,
    PaymentStatusResponse,
)
from paygate.models.payment.transaction import TransactionType, TransactionStatus
from paygate.services.payment.credentials import CredentialStore
from paygate.services.payment.errors import (
    CallbackVerificationError,
    ConcurrentUpdateError,
    DuplicateMerchantTradeNoError,
    DuplicateTransactionError,
    InvalidTransitionError,
    PaymentCreationError,
    PaymentNotFoundError,
    ProviderNotConfiguredError,
    RefundError,
)
from paygate.services.payment.gateways.base import (
    BasePaymentProvider,
    PaymentUpdate,
    ProviderPaymentRequest,
)
from paygate.services.payment.gateways.factory import ProviderRegistry
from paygate.services.payment.ledger import TransactionLedger
from paygate.services.payment.provider_service import PaymentProviderService
from paygate.services.payment.state_machine import UNRESOLVED, ensure_transition
from paygate.services.payment.store import PaymentStore

load_dotenv()

logger = logging.getLogger(__name__)

MAX_TRADE_NO_ATTEMPTS = 5
MAX_UPDATE_ATTEMPTS = 5

# Expiry only ever fails a payment nobody has paid into yet
PENDING_ONLY = frozenset({PaymentStatus.PENDING})

_TRADE_NO_ALPHABET = string.ascii_uppercase + string.digits
_rng = random.SystemRandom()

# In-process serialization per payment; cross-process safety comes from
# the version compare-and-swap and the ledger unique key.
_payment_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _payment_lock(payment_id: str) -> asyncio.Lock:
    lock = _payment_locks.get(payment_id)
    if lock is None:
        lock = asyncio.Lock()
        _payment_locks[payment_id] = lock
    return lock


@dataclass
class CallbackResult:
    """Outcome of a provider callback"""
    payment_id: str
    status: PaymentStatus
    acknowledgement: str
    duplicate: bool = False


class PaymentService:
    """
    Service for payment operations.
    Handles payment creation, provider callbacks, cancellation, expiry and refunds.
    """

    def __init__(
        self,
        store: PaymentStore,
        registry: ProviderRegistry,
        credential_store: CredentialStore,
        provider_timeout: Optional[float] = None,
        callback_base_url: Optional[str] = None
    ):
        self.store = store
        self.registry = registry
        self.providers = PaymentProviderService(store, registry, credential_store)
        self.ledger = TransactionLedger(store)

        if provider_timeout is None:
            provider_timeout = float(os.getenv("PAYMENT_PROVIDER_TIMEOUT", "15"))
        self.provider_timeout = provider_timeout

        base_url = callback_base_url or os.getenv("PAYMENT_CALLBACK_BASE_URL", "http://localhost:8000")
        self.callback_base_url = base_url.rstrip("/")

    @staticmethod
    def generate_merchant_trade_no() -> str:
        """PAY + last 8 digits of epoch millis + 6 random chars (17 chars, ECPay max is 20)"""
        timestamp = str(int(time.time() * 1000))[-8:]
        suffix = "".join(_rng.choice(_TRADE_NO_ALPHABET) for _ in range(6))
        return f"PAY{timestamp}{suffix}"

    @staticmethod
    def generate_payment_id() -> str:
        return str(uuid.uuid4())

    def build_callback_url(self, provider_id: str) -> str:
        return f"{self.callback_base_url}/api/payments/callback/{provider_id}"

    async def _call_provider(self, coro):
        """Run an adapter call bounded by the provider timeout"""
        return await asyncio.wait_for(coro, timeout=self.provider_timeout)

    async def _get_owned_payment(self, payment_id: str, organizer_id: str) -> Payment:
        payment = await self.store.get_payment(payment_id)
        # Never trust the caller's organizer id: compare with the stored row
        if not payment or payment.organizer_id != organizer_id:
            raise PaymentNotFoundError("Payment not found")
        return payment

    # Creation

    async def _insert_pending_payment(self, request: PaymentRequest, provider_id: str) -> Payment:
        for _ in range(MAX_TRADE_NO_ATTEMPTS):
            now = datetime.utcnow()
            payment = Payment(
                id=self.generate_payment_id(),
                organizer_id=request.organizer_id,
                resource_type=request.resource_type,
                resource_id=request.resource_id,
                provider_id=provider_id,
                merchant_trade_no=self.generate_merchant_trade_no(),
                amount=request.amount,
                discount_amount=request.discount_amount,
                final_amount=request.final_amount,
                currency=request.currency,
                payment_method=request.payment_method or "ALL",
                status=PaymentStatus.PENDING,
                metadata={**request.metadata, "description": request.description},
                created_at=now,
                updated_at=now
            )
            try:
                await self.store.insert_payment(payment)
                return payment
            except DuplicateMerchantTradeNoError:
                logger.warning("[WARN] Merchant trade number collision: %s", payment.merchant_trade_no)

        raise PaymentCreationError("Could not allocate a unique merchant trade number")

    async def create_payment(self, request: PaymentRequest) -> PaymentResponse:
        """
        Create a payment and ask the provider for its initiation data.

        The payment row is written as pending before the provider is contacted.

        Raises:
            ProviderNotConfiguredError: Organizer has no active provider
            UnknownProviderError: Configured provider has no adapter
            CredentialError: Stored credentials cannot be decrypted
            PaymentCreationError: Provider failed or timed out
        """
        config = await self.providers.get_active_provider(request.organizer_id, request.preferred_provider_id)
        if not config:
            raise ProviderNotConfiguredError("No active payment provider configured for organizer")

        adapter = self.registry.resolve(config.provider_id)
        credentials = self.providers.get_decrypted_credentials(config)

        payment = await self._insert_pending_payment(request, config.provider_id)

        provider_request = ProviderPaymentRequest(
            payment_id=payment.id,
            merchant_trade_no=payment.merchant_trade_no,
            amount=payment.final_amount,
            currency=payment.currency,
            description=request.description,
            callback_url=request.callback_url or self.build_callback_url(config.provider_id),
            payment_method=request.payment_method,
            return_url=request.return_url,
            metadata=request.metadata
        )

        try:
            result = await self._call_provider(adapter.create_payment(provider_request, credentials))
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                reason = f"Provider timed out after {self.provider_timeout}s"
            else:
                reason = f"{type(e).__name__}: {e}"
            logger.error("[ERROR] create_payment failed for %s via %s: %s", payment.id, config.provider_id, reason)
            await self._mark_creation_failed(payment, reason)
            raise PaymentCreationError(payment_id=payment.id) from e

        changes: Dict[str, Any] = {"provider_response": result.provider_data}
        status = payment.status
        if result.status != payment.status:
            status = ensure_transition(payment.status, result.status, payment.id)
            changes["status"] = status

        updated = await self.store.apply_payment_update(payment.id, payment.version, changes)
        if updated is None:
            # A callback got there first; its state wins
            logger.warning("[WARN] Payment %s changed before provider response was stored", payment.id)
        else:
            status = updated.status

        return PaymentResponse(
            payment_id=payment.id,
            merchant_trade_no=payment.merchant_trade_no,
            status=status,
            redirect_url=result.redirect_url,
            client_secret=result.client_secret,
            provider_data=result.provider_data,
            amount=payment.final_amount,
            currency=payment.currency
        )

    async def _mark_creation_failed(self, payment: Payment, reason: str) -> None:
        updated = await self.store.apply_payment_update(
            payment.id,
            payment.version,
            {"status": PaymentStatus.FAILED, "failure_reason": reason}
        )
        if updated is None:
            logger.error("[ERROR] Could not mark payment %s failed after provider error", payment.id)

    # Callbacks

    async def _verify_callback(
        self,
        adapter: BasePaymentProvider,
        callback_data: Dict[str, Any],
        credentials: Dict[str, Any]
    ) -> bool:
        try:
            return bool(await adapter.validate_callback(callback_data, credentials))
        except Exception as e:
            logger.warning("[SECURITY] %s validate_callback raised %s", adapter.provider_id, type(e).__name__)
            return False

    async def handle_callback(self, provider_id: str, callback_data: Dict[str, Any]) -> CallbackResult:
        """
        Verify and apply a provider callback.

        Duplicate deliveries are acknowledged without side effects.

        Raises:
            UnknownProviderError: No adapter for provider_id
            PaymentNotFoundError: Callback does not match any payment
            CallbackVerificationError: Signature/MAC check failed or payload malformed
            InvalidTransitionError: Provider reported an impossible transition
        """
        adapter = self.registry.resolve(provider_id)

        merchant_trade_no = adapter.get_merchant_trade_no(callback_data)
        if not merchant_trade_no:
            logger.warning("[SECURITY] %s callback without merchant trade number", provider_id)
            raise CallbackVerificationError("Missing merchant trade number")

        payment = await self.store.find_payment_by_merchant_trade_no(merchant_trade_no)
        if not payment:
            logger.warning("[SECURITY] %s callback for unknown payment %s", provider_id, merchant_trade_no)
            raise PaymentNotFoundError(f"No payment for merchant trade number {merchant_trade_no}")

        if payment.provider_id != provider_id:
            logger.warning(
                "[SECURITY] Callback for %s arrived via %s but payment uses %s",
                merchant_trade_no, provider_id, payment.provider_id
            )
            raise CallbackVerificationError("Provider mismatch")

        # Deactivated providers still verify callbacks for their older payments
        config = await self.store.find_provider(payment.organizer_id, provider_id, active_only=False)
        if not config:
            logger.warning(
                "[SECURITY] No %s config for organizer %s (payment %s)",
                provider_id, payment.organizer_id, payment.id
            )
            raise CallbackVerificationError("Provider not configured")

        credentials = self.providers.get_decrypted_credentials(config)

        if not await self._verify_callback(adapter, callback_data, credentials):
            logger.warning(
                "[SECURITY] Invalid %s callback signature for payment %s (%s)",
                provider_id, payment.id, merchant_trade_no
            )
            raise CallbackVerificationError("Invalid payment callback signature")

        async with _payment_lock(payment.id):
            return await self._apply_callback(adapter, callback_data, payment)

    async def _apply_callback(
        self,
        adapter: BasePaymentProvider,
        callback_data: Dict[str, Any],
        payment: Payment
    ) -> CallbackResult:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            try:
                update = await adapter.process_callback(callback_data, payment)
            except Exception as e:
                logger.warning("[SECURITY] Malformed %s callback for %s: %s", adapter.provider_id, payment.id, e)
                raise CallbackVerificationError("Malformed callback") from e

            if (
                update.status == PaymentStatus.COMPLETED
                and update.amount is not None
                and round(update.amount, 2) != round(payment.final_amount, 2)
            ):
                logger.warning(
                    "[SECURITY] Amount mismatch for payment %s: provider %s, expected %s",
                    payment.id, update.amount, payment.final_amount
                )
                raise CallbackVerificationError("Amount mismatch")

            if await self._is_duplicate(payment, update):
                return self._duplicate_result(adapter, payment)

            try:
                target = ensure_transition(payment.status, update.status, payment.id)
            except InvalidTransitionError:
                logger.error(
                    "[ERROR] %s callback for payment %s requested %s -> %s (provider txn %s)",
                    adapter.provider_id, payment.id, payment.status.value,
                    update.status.value, update.provider_transaction_id
                )
                raise

            changes = self._callback_changes(target, update)
            entry = self._callback_entry(payment, update)

            try:
                updated = await self.store.apply_payment_update(payment.id, payment.version, changes, entry)
            except DuplicateTransactionError:
                # Concurrent delivery of the same event won the insert
                return self._duplicate_result(adapter, payment)

            if updated is not None:
                logger.info(
                    "[OK] Payment %s %s -> %s via %s",
                    payment.id, payment.status.value, updated.status.value, adapter.provider_id
                )
                return CallbackResult(
                    payment_id=payment.id,
                    status=updated.status,
                    acknowledgement=adapter.success_ack
                )

            # Lost the compare-and-swap; re-evaluate against the fresh row
            payment = await self.store.get_payment(payment.id)

        raise ConcurrentUpdateError(f"Payment {payment.id} kept changing during callback processing")

    async def _is_duplicate(self, payment: Payment, update: PaymentUpdate) -> bool:
        if update.transaction_type is not None:
            return await self.ledger.exists(payment.id, update.provider_transaction_id, update.transaction_type)
        # Updates without a ledger entry are identified by the status they set
        return payment.status == update.status

    def _duplicate_result(self, adapter: BasePaymentProvider, payment: Payment) -> CallbackResult:
        logger.info("[INFO] Duplicate %s callback for payment %s acknowledged", adapter.provider_id, payment.id)
        return CallbackResult(
            payment_id=payment.id,
            status=payment.status,
            acknowledgement=adapter.success_ack,
            duplicate=True
        )

    @staticmethod
    def _callback_changes(target: PaymentStatus, update: PaymentUpdate) -> Dict[str, Any]:
        changes: Dict[str, Any] = {
            "status": target,
            "provider_response": update.provider_response,
        }
        if update.provider_transaction_id:
            changes["provider_transaction_id"] = update.provider_transaction_id
        if target == PaymentStatus.COMPLETED:
            changes["completed_at"] = datetime.utcnow()
        elif target in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            changes["failure_reason"] = f"Provider reported {target.value}"
        return changes

    def _callback_entry(self, payment: Payment, update: PaymentUpdate):
        if update.transaction_type is None:
            return None
        succeeded = update.status == PaymentStatus.COMPLETED
        return self.ledger.build_entry(
            payment_id=payment.id,
            transaction_type=update.transaction_type,
            status=TransactionStatus.COMPLETED if succeeded else TransactionStatus.FAILED,
            amount=payment.final_amount if succeeded else (update.amount or payment.final_amount),
            provider_transaction_id=update.provider_transaction_id,
            provider_response=update.provider_response
        )

    # Status changes requested by the platform

    async def _transition(
        self,
        payment: Payment,
        target: PaymentStatus,
        extra: Optional[Dict[str, Any]] = None,
        allowed_from: Optional[FrozenSet[PaymentStatus]] = None
    ) -> Payment:
        async with _payment_lock(payment.id):
            for _ in range(MAX_UPDATE_ATTEMPTS):
                # Re-checked after every reload: the row may have moved since the caller read it
                if allowed_from is not None and payment.status not in allowed_from:
                    raise InvalidTransitionError(payment.status, target, payment.id)
                ensure_transition(payment.status, target, payment.id)
                updated = await self.store.apply_payment_update(
                    payment.id,
                    payment.version,
                    {"status": target, **(extra or {})}
                )
                if updated is not None:
                    logger.info("[OK] Payment %s %s -> %s", payment.id, payment.status.value, target.value)
                    return updated
                payment = await self.store.get_payment(payment.id)

        raise ConcurrentUpdateError(f"Payment {payment.id} kept changing")

    async def cancel_payment(self, payment_id: str, organizer_id: str, reason: Optional[str] = None) -> Payment:
        """Cancel a payment the provider has not resolved yet"""
        payment = await self._get_owned_payment(payment_id, organizer_id)
        return await self._transition(
            payment,
            PaymentStatus.CANCELLED,
            {"failure_reason": reason or "Cancelled before provider resolution"},
            allowed_from=UNRESOLVED
        )

    async def expire_payment(self, payment_id: str) -> Payment:
        """External expiry event: an abandoned pending payment becomes failed"""
        payment = await self.store.get_payment(payment_id)
        if not payment:
            raise PaymentNotFoundError("Payment not found")
        return await self._transition(
            payment,
            PaymentStatus.FAILED,
            {"failure_reason": "Expired"},
            allowed_from=PENDING_ONLY
        )

    # Refunds

    @staticmethod
    def generate_refund_id() -> str:
        return f"REF_{uuid.uuid4().hex[:12].upper()}"

    async def refund_payment(
        self,
        payment_id: str,
        organizer_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None
    ) -> Payment:
        """
        Refund a completed payment in full or in part.

        A refund of the whole remaining amount moves the payment to refunded;
        partial refunds keep it completed.

        Raises:
            InvalidTransitionError: Payment is not completed
            RefundError: Amount out of range or provider refused
        """
        payment = await self._get_owned_payment(payment_id, organizer_id)

        async with _payment_lock(payment.id):
            payment = await self.store.get_payment(payment.id)
            if payment.status != PaymentStatus.COMPLETED:
                raise InvalidTransitionError(payment.status, PaymentStatus.REFUNDED, payment.id)

            remaining = await self.ledger.net_captured(payment.id)
            refund_amount = round(amount if amount is not None else remaining, 2)
            if refund_amount <= 0 or refund_amount > remaining:
                raise RefundError(f"Refund amount must be between 0 and {remaining}")

            adapter = self.registry.resolve(payment.provider_id)
            config = await self.store.find_provider(payment.organizer_id, payment.provider_id, active_only=False)
            if not config:
                raise RefundError(f"Provider {payment.provider_id} is no longer configured")
            credentials = self.providers.get_decrypted_credentials(config)

            refund_id = self.generate_refund_id()
            try:
                result = await self._call_provider(
                    adapter.refund_payment(payment, refund_amount, refund_id, credentials)
                )
            except Exception as e:
                logger.error("[ERROR] Refund %s for payment %s failed: %s", refund_id, payment.id, e)
                raise RefundError("Refund failed, please retry", provider_failure=True) from e

            if not result.success:
                logger.warning(
                    "[WARN] Provider refused refund %s for payment %s: %s",
                    refund_id, payment.id, result.error_message
                )
                raise RefundError(result.error_message or "Refund failed", provider_failure=True)

            return await self._record_refund(payment, refund_id, refund_amount, result.raw_response, reason)

    async def _record_refund(
        self,
        payment: Payment,
        refund_id: str,
        refund_amount: float,
        raw_response: Dict[str, Any],
        reason: Optional[str]
    ) -> Payment:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            remaining = await self.ledger.net_captured(payment.id)
            if payment.status != PaymentStatus.COMPLETED or refund_amount > remaining:
                logger.critical(
                    "[ERROR] Refund %s (%s) succeeded at provider but payment %s can no longer absorb it",
                    refund_id, refund_amount, payment.id
                )
                raise ConcurrentUpdateError(f"Refund {refund_id} needs manual reconciliation")

            full = round(remaining - refund_amount, 2) == 0
            changes: Dict[str, Any] = {}
            if full:
                changes["status"] = ensure_transition(payment.status, PaymentStatus.REFUNDED, payment.id)
                changes["refunded_at"] = datetime.utcnow()

            entry = self.ledger.build_entry(
                payment_id=payment.id,
                transaction_type=TransactionType.REFUND if full else TransactionType.PARTIAL_REFUND,
                status=TransactionStatus.COMPLETED,
                amount=refund_amount,
                provider_transaction_id=refund_id,
                provider_response={**raw_response, "reason": reason}
            )

            updated = await self.store.apply_payment_update(payment.id, payment.version, changes, entry)
            if updated is not None:
                logger.info("[OK] Refunded %s on payment %s (%s)", refund_amount, payment.id, refund_id)
                return updated

            payment = await self.store.get_payment(payment.id)

        raise ConcurrentUpdateError(f"Refund {refund_id} needs manual reconciliation")

    # Queries

    async def get_payment_status(self, payment_id: str, organizer_id: str) -> PaymentStatusResponse:
        payment = await self._get_owned_payment(payment_id, organizer_id)
        transactions = await self.ledger.list_for(payment.id)
        return PaymentStatusResponse(payment=payment, status=payment.status, transactions=transactions)
