"""
Tests for the car, booking and payment transition tables.
"""
import pytest

from fleet_rental.core.exceptions import InvalidStateError, InvalidTransitionError
from fleet_rental.core.state_machine import (
    ADMIN_CAR_EVENTS,
    BookingEvent,
    BookingStatus,
    CarEvent,
    CarStatus,
    PaymentEvent,
    PaymentStatus,
    booking_machine,
    car_machine,
    payment_machine,
)


class TestCarTransitions:
    """Car status changes."""

    @pytest.mark.unit
    def test_reserve_only_from_available(self) -> None:
        assert car_machine.next_state(CarStatus.AVAILABLE, CarEvent.RESERVE) is CarStatus.RENTED
        for status in (CarStatus.RENTED, CarStatus.INSPECTING, CarStatus.MAINTENANCE):
            with pytest.raises(InvalidTransitionError):
                car_machine.next_state(status, CarEvent.RESERVE)

    @pytest.mark.unit
    def test_return_outcomes(self) -> None:
        assert car_machine.next_state(CarStatus.RENTED, CarEvent.RETURN_CLEAN) is CarStatus.AVAILABLE
        assert (
            car_machine.next_state(CarStatus.RENTED, CarEvent.RETURN_DAMAGED)
            is CarStatus.MAINTENANCE
        )

    @pytest.mark.unit
    def test_admin_cannot_release_rented_car(self) -> None:
        """rented -> available is only reachable through the return flow."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            car_machine.next_state(CarStatus.RENTED, CarEvent.MARK_AVAILABLE)

        assert exc_info.value.current == "rented"
        assert exc_info.value.event == "mark_available"
        assert exc_info.value.http_status == 400

    @pytest.mark.unit
    def test_admin_moves_between_non_rented_statuses(self) -> None:
        assert (
            car_machine.next_state(CarStatus.MAINTENANCE, CarEvent.MARK_AVAILABLE)
            is CarStatus.AVAILABLE
        )
        assert (
            car_machine.next_state(CarStatus.AVAILABLE, CarEvent.MARK_INSPECTING)
            is CarStatus.INSPECTING
        )
        for event in ADMIN_CAR_EVENTS.values():
            assert not car_machine.can(CarStatus.RENTED, event)

    @pytest.mark.unit
    def test_rented_has_no_admin_event(self) -> None:
        assert CarStatus.RENTED not in ADMIN_CAR_EVENTS


class TestBookingTransitions:
    """Booking lifecycle."""

    @pytest.mark.unit
    def test_pending_can_complete_or_cancel(self) -> None:
        assert (
            booking_machine.next_state(BookingStatus.PENDING, BookingEvent.COMPLETE)
            is BookingStatus.COMPLETED
        )
        assert (
            booking_machine.next_state(BookingStatus.PENDING, BookingEvent.CANCEL)
            is BookingStatus.CANCELLED
        )

    @pytest.mark.unit
    def test_active_can_complete_but_not_cancel(self) -> None:
        assert booking_machine.can(BookingStatus.ACTIVE, BookingEvent.COMPLETE)
        assert not booking_machine.can(BookingStatus.ACTIVE, BookingEvent.CANCEL)

    @pytest.mark.unit
    @pytest.mark.parametrize("terminal", [BookingStatus.COMPLETED, BookingStatus.CANCELLED])
    @pytest.mark.parametrize("event", list(BookingEvent))
    def test_terminal_states_reject_everything(
        self, terminal: BookingStatus, event: BookingEvent
    ) -> None:
        with pytest.raises(InvalidStateError) as exc_info:
            booking_machine.next_state(terminal, event)

        assert exc_info.value.http_status == 409


class TestPaymentTransitions:
    """Two-phase payment lifecycle."""

    @pytest.mark.unit
    def test_confirmation_is_idempotent(self) -> None:
        status = PaymentStatus.PENDING_AUTH
        for _ in range(3):
            status = payment_machine.next_state(status, PaymentEvent.CONFIRM_AUTHORIZATION)
        assert status is PaymentStatus.AUTHORIZED

    @pytest.mark.unit
    def test_confirmation_after_capture_keeps_captured(self) -> None:
        assert (
            payment_machine.next_state(PaymentStatus.CAPTURED, PaymentEvent.CONFIRM_AUTHORIZATION)
            is PaymentStatus.CAPTURED
        )

    @pytest.mark.unit
    def test_capture_from_pending_or_authorized(self) -> None:
        for status in (PaymentStatus.PENDING_AUTH, PaymentStatus.AUTHORIZED):
            assert payment_machine.next_state(status, PaymentEvent.CAPTURE) is PaymentStatus.CAPTURED

    @pytest.mark.unit
    def test_voided_cannot_be_captured(self) -> None:
        with pytest.raises(InvalidStateError):
            payment_machine.next_state(PaymentStatus.VOIDED, PaymentEvent.CAPTURE)

    @pytest.mark.unit
    def test_captured_cannot_be_voided(self) -> None:
        with pytest.raises(InvalidStateError):
            payment_machine.next_state(PaymentStatus.CAPTURED, PaymentEvent.VOID)
