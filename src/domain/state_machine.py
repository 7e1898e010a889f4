# src/domain/state_machine.py

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Set

from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


# Statuses the reconciliation engine never moves away from on its own.
SETTLED_STATUSES = frozenset(
    {
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
        PaymentStatus.REFUNDED,
    }
)


class PaymentStateMachine:
    """
    Central lifecycle controller for payment transitions.
    Defines the legal state transitions.
    """

    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.PROCESSING,
            PaymentStatus.FAILED,
            PaymentStatus.EXPIRED,
        },
        PaymentStatus.PROCESSING: {
            PaymentStatus.PAID,
            PaymentStatus.FAILED,
            PaymentStatus.EXPIRED,
        },
        PaymentStatus.PAID: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.FAILED: set(),
        PaymentStatus.EXPIRED: set(),
        PaymentStatus.REFUNDED: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: PaymentStatus) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def is_settled(cls, status: PaymentStatus) -> bool:
        cls._ensure_valid_status(status)
        return status in SETTLED_STATUSES

    @classmethod
    def get_allowed_transitions(
        cls, status: PaymentStatus
    ) -> Set[PaymentStatus]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @staticmethod
    def _ensure_valid_status(status: PaymentStatus) -> None:
        if not isinstance(status, PaymentStatus):
            raise TypeError(
                f"Expected PaymentStatus, got {type(status)}"
            )


@dataclass(frozen=True)
class GuardDecision:
    apply: bool
    reason: str | None = None


class IdempotencyGuard:
    """
    Decides whether a payment outcome may be written.

    Must be evaluated against a status read inside the same transaction
    that performs the write.
    """

    @staticmethod
    def check(
        current: PaymentStatus,
        target: PaymentStatus,
    ) -> GuardDecision:
        if current == target:
            return GuardDecision(False, f"already {current.value}")
        if PaymentStateMachine.is_settled(current):
            return GuardDecision(
                False,
                f"settled as {current.value}, {target.value} not applied",
            )
        if not PaymentStateMachine.can_transition(current, target):
            return GuardDecision(
                False,
                f"transition {current.value} -> {target.value} not allowed",
            )
        return GuardDecision(True)
