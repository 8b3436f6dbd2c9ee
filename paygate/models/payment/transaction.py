"""
Payment Transaction Models
Append-only ledger entries attached to a payment
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum


class TransactionType(str, Enum):
    """Ledger entry type"""
    CHARGE = "charge"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    CHARGEBACK = "chargeback"


class TransactionStatus(str, Enum):
    """Ledger entry status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# Types that take money back out of a payment
OUTFLOW_TYPES = (
    TransactionType.REFUND,
    TransactionType.PARTIAL_REFUND,
    TransactionType.CHARGEBACK,
)


class PaymentTransaction(BaseModel):
    """Ledger entry in database. Immutable once written."""
    id: str
    payment_id: str
    type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    amount: float
    provider_transaction_id: Optional[str] = None
    provider_response: Dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0  # Insertion order within the payment
    created_at: datetime = Field(default_factory=datetime.utcnow)
