"""
Explicit state machines for cars, bookings and payments.

Statuses are closed enumerations and every change goes through a
transition table {(state, event) -> state}. Call sites never compare
status strings ad hoc.

Implements:
- CarStatus / CarEvent with engine events (reserve, return, release) and
  admin events that can never touch `rented`
- BookingStatus / BookingEvent with terminal `completed` and `cancelled`
- PaymentStatus / PaymentEvent with idempotent authorization confirmation
"""
from enum import Enum
from typing import Dict, Generic, Mapping, Tuple, Type, TypeVar

from fleet_rental.core.exceptions import (
    InvalidStateError,
    InvalidTransitionError,
    RentalError,
)


class CarStatus(str, Enum):
    """Car availability."""

    AVAILABLE = "available"
    RENTED = "rented"
    INSPECTING = "inspecting"
    MAINTENANCE = "maintenance"


class CarEvent(str, Enum):
    """Events that move a car between statuses."""

    # Booking engine
    RESERVE = "reserve"
    RETURN_CLEAN = "return_clean"
    RETURN_DAMAGED = "return_damaged"
    RELEASE = "release"

    # Administrative update path
    MARK_AVAILABLE = "mark_available"
    MARK_INSPECTING = "mark_inspecting"
    MARK_MAINTENANCE = "mark_maintenance"


class BookingStatus(str, Enum):
    """Booking lifecycle."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingEvent(str, Enum):
    COMPLETE = "complete"
    CANCEL = "cancel"


class PaymentStatus(str, Enum):
    """Two-phase payment lifecycle."""

    PENDING_AUTH = "pending_auth"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    VOIDED = "voided"


class PaymentEvent(str, Enum):
    CONFIRM_AUTHORIZATION = "confirm_authorization"
    CAPTURE = "capture"
    VOID = "void"


S = TypeVar("S", bound=Enum)
E = TypeVar("E", bound=Enum)


class StateMachine(Generic[S, E]):
    """
    Transition table checked centrally.

    Any (state, event) pair missing from the table is rejected with the
    machine's error type; the caller's entity is left untouched.
    """

    def __init__(
        self,
        name: str,
        transitions: Mapping[Tuple[S, E], S],
        error_cls: Type[RentalError],
    ):
        self.name = name
        self._transitions: Dict[Tuple[S, E], S] = dict(transitions)
        self._error_cls = error_cls

    def can(self, current: S, event: E) -> bool:
        """Check whether `event` is allowed from `current`."""
        return (current, event) in self._transitions

    def next_state(self, current: S, event: E) -> S:
        """
        Resolve the target state for an event.

        Args:
            current: Current status
            event: Event to apply

        Returns:
            S: Target status

        Raises:
            InvalidTransitionError / InvalidStateError: If the pair is not in the table
        """
        try:
            return self._transitions[(current, event)]
        except KeyError:
            raise self._error_cls(
                f"{self.name}: cannot apply '{event.value}' in state '{current.value}'",
                current=current.value,
                event=event.value,
            ) from None


_NON_RENTED = (CarStatus.AVAILABLE, CarStatus.INSPECTING, CarStatus.MAINTENANCE)

car_machine: StateMachine[CarStatus, CarEvent] = StateMachine(
    "car",
    {
        (CarStatus.AVAILABLE, CarEvent.RESERVE): CarStatus.RENTED,
        (CarStatus.RENTED, CarEvent.RETURN_CLEAN): CarStatus.AVAILABLE,
        (CarStatus.RENTED, CarEvent.RETURN_DAMAGED): CarStatus.MAINTENANCE,
        (CarStatus.RENTED, CarEvent.RELEASE): CarStatus.AVAILABLE,
        **{(s, CarEvent.MARK_AVAILABLE): CarStatus.AVAILABLE for s in _NON_RENTED},
        **{(s, CarEvent.MARK_INSPECTING): CarStatus.INSPECTING for s in _NON_RENTED},
        **{(s, CarEvent.MARK_MAINTENANCE): CarStatus.MAINTENANCE for s in _NON_RENTED},
    },
    InvalidTransitionError,
)

booking_machine: StateMachine[BookingStatus, BookingEvent] = StateMachine(
    "booking",
    {
        (BookingStatus.PENDING, BookingEvent.COMPLETE): BookingStatus.COMPLETED,
        (BookingStatus.ACTIVE, BookingEvent.COMPLETE): BookingStatus.COMPLETED,
        (BookingStatus.PENDING, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    },
    InvalidStateError,
)

payment_machine: StateMachine[PaymentStatus, PaymentEvent] = StateMachine(
    "payment",
    {
        (PaymentStatus.PENDING_AUTH, PaymentEvent.CONFIRM_AUTHORIZATION): PaymentStatus.AUTHORIZED,
        # Replayed confirmations re-assert the current status
        (PaymentStatus.AUTHORIZED, PaymentEvent.CONFIRM_AUTHORIZATION): PaymentStatus.AUTHORIZED,
        (PaymentStatus.CAPTURED, PaymentEvent.CONFIRM_AUTHORIZATION): PaymentStatus.CAPTURED,
        (PaymentStatus.VOIDED, PaymentEvent.CONFIRM_AUTHORIZATION): PaymentStatus.VOIDED,
        (PaymentStatus.PENDING_AUTH, PaymentEvent.CAPTURE): PaymentStatus.CAPTURED,
        (PaymentStatus.AUTHORIZED, PaymentEvent.CAPTURE): PaymentStatus.CAPTURED,
        (PaymentStatus.PENDING_AUTH, PaymentEvent.VOID): PaymentStatus.VOIDED,
        (PaymentStatus.AUTHORIZED, PaymentEvent.VOID): PaymentStatus.VOIDED,
    },
    InvalidStateError,
)

TERMINAL_BOOKING_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

# Admin status requests map to events; `rented` has no admin event
ADMIN_CAR_EVENTS: Dict[CarStatus, CarEvent] = {
    CarStatus.AVAILABLE: CarEvent.MARK_AVAILABLE,
    CarStatus.INSPECTING: CarEvent.MARK_INSPECTING,
    CarStatus.MAINTENANCE: CarEvent.MARK_MAINTENANCE,
}
