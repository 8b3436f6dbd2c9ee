"""
Payment State Machine
Allowed payment status transitions

    pending ----> processing
    pending|processing ----> completed | failed | cancelled
    completed ----> refunded
"""
from typing import Dict, FrozenSet

from paygate.models.payment.payment import PaymentStatus
from paygate.services.payment.errors import InvalidTransitionError


TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Statuses with no provider resolution yet
UNRESOLVED = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Check whether current -> target is allowed"""
    return PaymentStatus(target) in TRANSITIONS[PaymentStatus(current)]


def ensure_transition(current: PaymentStatus, target: PaymentStatus, payment_id: str = None) -> PaymentStatus:
    """
    Validate a transition.

    Raises:
        InvalidTransitionError: If current -> target is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target, payment_id)
    return PaymentStatus(target)


def is_final(status: PaymentStatus) -> bool:
    """True when no further transition is possible"""
    return not TRANSITIONS[PaymentStatus(status)]
