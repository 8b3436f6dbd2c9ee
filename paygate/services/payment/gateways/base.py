"""
Base Payment Provider
Abstract class defining the interface for all payment provider adapters
"""
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
from dataclasses import dataclass, field

from paygate.models.payment.payment import Payment, PaymentStatus
from paygate.models.payment.transaction import TransactionType


@dataclass
class ProviderPaymentRequest:
    """Everything an adapter needs to initiate a payment"""
    payment_id: str
    merchant_trade_no: str
    amount: float           # Final amount to charge
    currency: str
    description: str
    callback_url: str
    payment_method: Optional[str] = None
    return_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderPaymentResult:
    """Result of initiating a payment with a provider"""
    status: PaymentStatus = PaymentStatus.PENDING
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    provider_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentUpdate:
    """Provider callback mapped onto the internal lifecycle"""
    payment_id: str
    status: PaymentStatus
    provider_transaction_id: Optional[str] = None
    transaction_type: Optional[TransactionType] = None  # None: no money moved
    amount: Optional[float] = None
    provider_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result of a provider refund call"""
    success: bool
    refund_id: str
    amount: float
    provider_refund_id: Optional[str] = None
    error_message: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)


class BasePaymentProvider(ABC):
    """
    Abstract base class for payment provider adapters.

    Adapters translate between the internal payment lifecycle and one
    external provider protocol. They never persist anything: the
    orchestrator owns all state.
    """

    provider_id: str = "base"
    provider_name: str = "Base Provider"

    # Plain-text acknowledgements expected by the provider's callback client
    success_ack: str = "OK"
    failure_ack: str = "ERROR"

    @abstractmethod
    async def validate_credentials(self, credentials: Dict[str, Any]) -> bool:
        """
        Check credential format (and reachability where cheap).

        Returns False for invalid credentials, never raises.
        """

    @abstractmethod
    async def create_payment(
        self,
        request: ProviderPaymentRequest,
        credentials: Dict[str, Any]
    ) -> ProviderPaymentResult:
        """
        Build the provider-specific payment initiation.

        Args:
            request: Payment details including our merchant trade number
            credentials: Decrypted provider credentials

        Returns:
            ProviderPaymentResult with redirect URL / client secret
        """

    @abstractmethod
    async def validate_callback(
        self,
        callback_data: Dict[str, Any],
        credentials: Dict[str, Any]
    ) -> bool:
        """
        Recompute the provider's integrity check over a callback.

        Returns False on mismatch, missing fields or malformed payloads,
        never raises.
        """

    @abstractmethod
    async def process_callback(
        self,
        callback_data: Dict[str, Any],
        payment: Payment
    ) -> PaymentUpdate:
        """
        Map a verified callback to a PaymentUpdate.

        Args:
            callback_data: Callback already accepted by validate_callback
            payment: Payment the callback refers to

        Returns:
            PaymentUpdate with the internal status and provider transaction id
        """

    @abstractmethod
    def get_merchant_trade_no(self, callback_data: Dict[str, Any]) -> Optional[str]:
        """Extract our merchant trade number from a raw callback"""

    async def refund_payment(
        self,
        payment: Payment,
        amount: float,
        refund_id: str,
        credentials: Dict[str, Any]
    ) -> RefundResult:
        """
        Refund (part of) a completed payment.

        Args:
            payment: Completed payment
            amount: Amount to refund
            refund_id: Our internal refund ID
            credentials: Decrypted provider credentials

        Returns:
            RefundResult with refund details
        """
        raise NotImplementedError(f"{self.provider_id} does not support refunds")
