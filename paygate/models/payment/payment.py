"""
Payment Models
Defines the payment record, its status values and the request/response
shapes exposed to the rest of the platform
"""
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum

from paygate.models.payment.transaction import PaymentTransaction


class PaymentStatus(str, Enum):
    """Payment lifecycle status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Payment(BaseModel):
    """Payment record in database (one per payment attempt)"""
    id: str
    organizer_id: str

    # Polymorphic reference to the thing being paid for
    resource_type: str
    resource_id: str

    # Provider info
    provider_id: str
    provider_transaction_id: Optional[str] = None
    merchant_trade_no: str  # Unique, echoed back by the provider

    # Amount info
    amount: float
    discount_amount: float = 0.0
    final_amount: float     # amount - discount_amount
    currency: str = "TWD"
    payment_method: str = "ALL"

    # Status
    status: PaymentStatus = PaymentStatus.PENDING
    failure_reason: Optional[str] = None
    version: int = 0        # Bumped on every state change (compare-and-swap)

    # Raw provider payloads
    provider_response: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_final_amount(self):
        if self.final_amount < 0:
            raise ValueError("final_amount must not be negative")
        if round(self.amount - self.discount_amount, 2) != round(self.final_amount, 2):
            raise ValueError("final_amount must equal amount - discount_amount")
        return self


class PaymentRequestBody(BaseModel):
    """Request to create a payment (organizer comes from the auth layer)"""
    resource_type: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    discount_amount: float = Field(0.0, ge=0)
    currency: str = "TWD"
    description: str = Field(..., min_length=1)
    payment_method: Optional[str] = None
    preferred_provider_id: Optional[str] = None
    callback_url: Optional[str] = None
    return_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise ValueError("currency must be a 3-letter ISO code")
        return value

    @model_validator(mode="after")
    def check_discount(self):
        if self.discount_amount > self.amount:
            raise ValueError("discount_amount cannot exceed amount")
        return self

    @property
    def final_amount(self) -> float:
        return round(self.amount - self.discount_amount, 2)


class PaymentRequest(PaymentRequestBody):
    """Payment request as seen by the orchestrator"""
    organizer_id: str = Field(..., min_length=1)


class PaymentResponse(BaseModel):
    """Result of initiating a payment"""
    payment_id: str
    merchant_trade_no: str
    status: PaymentStatus
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)
    amount: float
    currency: str


class PaymentStatusResponse(BaseModel):
    """Payment snapshot for polling"""
    payment: Payment
    status: PaymentStatus
    transactions: List[PaymentTransaction] = Field(default_factory=list)


class RefundRequest(BaseModel):
    """Request to refund a completed payment"""
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    """Request to cancel an unresolved payment"""
    reason: Optional[str] = None
