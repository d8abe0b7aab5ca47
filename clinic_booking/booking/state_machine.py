"""
Booking lifecycle state machine.

Every status change a booking can go through is listed in TRANSITIONS.
A booking is created in ``confirmed`` (free appointment types) or
``pending_payment`` (paid types) and only moves along the table below;
anything else is rejected with InvalidTransitionError.

Usage:
    state = initial_state(requires_payment=True)
    state = apply_transition(state, BookingTrigger.PAYMENT_SUCCEEDED)
    assert state.status == BookingStatus.CONFIRMED
"""

from dataclasses import dataclass
from enum import Enum

from clinic_booking.core.errors import InvalidTransitionError


class BookingStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    PAYMENT_FAILED = "payment_failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class BookingTrigger(str, Enum):
    """Events that move a booking between statuses."""
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_ABANDONED = "checkout_abandoned"
    RETRY_PAYMENT = "retry_payment"
    COMPLETE = "complete"
    CANCEL = "cancel"
    MARK_NO_SHOW = "mark_no_show"


# Only these statuses hold a slot; everything else can be re-booked.
TAKEN_STATUSES = frozenset({BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED})

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW})

STAFF_TRIGGERS = frozenset({BookingTrigger.COMPLETE, BookingTrigger.CANCEL, BookingTrigger.MARK_NO_SHOW})


@dataclass(frozen=True)
class BookingState:
    status: BookingStatus
    payment_status: PaymentStatus


@dataclass(frozen=True)
class Transition:
    """A single valid status change. ``payment_status`` None keeps the current one."""
    from_status: BookingStatus
    trigger: BookingTrigger
    to_status: BookingStatus
    payment_status: PaymentStatus | None = None


TRANSITIONS: list[Transition] = [
    # --- Payment outcome ---
    Transition(BookingStatus.PENDING_PAYMENT, BookingTrigger.PAYMENT_SUCCEEDED,
               BookingStatus.CONFIRMED, PaymentStatus.PAID),
    Transition(BookingStatus.PENDING_PAYMENT, BookingTrigger.PAYMENT_FAILED,
               BookingStatus.PAYMENT_FAILED, PaymentStatus.FAILED),
    Transition(BookingStatus.PENDING_PAYMENT, BookingTrigger.CHECKOUT_ABANDONED,
               BookingStatus.PAYMENT_FAILED, PaymentStatus.FAILED),

    # --- Retry ---
    Transition(BookingStatus.PAYMENT_FAILED, BookingTrigger.RETRY_PAYMENT,
               BookingStatus.PENDING_PAYMENT, PaymentStatus.PENDING),
    Transition(BookingStatus.PENDING_PAYMENT, BookingTrigger.RETRY_PAYMENT,
               BookingStatus.PENDING_PAYMENT, PaymentStatus.PENDING),

    # --- Staff actions ---
    Transition(BookingStatus.CONFIRMED, BookingTrigger.COMPLETE, BookingStatus.COMPLETED),
    Transition(BookingStatus.CONFIRMED, BookingTrigger.CANCEL, BookingStatus.CANCELLED),
    Transition(BookingStatus.CONFIRMED, BookingTrigger.MARK_NO_SHOW, BookingStatus.NO_SHOW),
    Transition(BookingStatus.PENDING_PAYMENT, BookingTrigger.CANCEL, BookingStatus.CANCELLED),
    Transition(BookingStatus.PAYMENT_FAILED, BookingTrigger.CANCEL, BookingStatus.CANCELLED),
]


def initial_state(requires_payment: bool) -> BookingState:
    if requires_payment:
        return BookingState(BookingStatus.PENDING_PAYMENT, PaymentStatus.PENDING)
    return BookingState(BookingStatus.CONFIRMED, PaymentStatus.NOT_REQUIRED)


def find_transition(status: BookingStatus, trigger: BookingTrigger) -> Transition | None:
    for transition in TRANSITIONS:
        if transition.from_status == status and transition.trigger == trigger:
            return transition
    return None


def allowed_triggers(status: BookingStatus) -> list[BookingTrigger]:
    return [transition.trigger for transition in TRANSITIONS if transition.from_status == status]


def apply_transition(state: BookingState, trigger: BookingTrigger) -> BookingState:
    """
    Compute the state a booking moves to when ``trigger`` fires.

    Raises:
        InvalidTransitionError: If the table has no entry for (status, trigger).
    """
    status = BookingStatus(state.status)
    trigger = BookingTrigger(trigger)
    transition = find_transition(status, trigger)
    if transition is None:
        allowed = ", ".join(t.value for t in allowed_triggers(status)) or "none"
        raise InvalidTransitionError(
            f"Cannot apply '{trigger.value}' to a booking in '{status.value}' (allowed: {allowed})."
        )

    payment_status = transition.payment_status or PaymentStatus(state.payment_status)
    return BookingState(transition.to_status, payment_status)
