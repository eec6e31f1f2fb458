"""
Tests for the booking engine: reservation, settlement and cancellation.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_rental.core.bookings import billed_days
from fleet_rental.core.exceptions import (
    AssetUnavailableError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    SettlementFailedError,
    ValidationError,
)
from fleet_rental.database.models import Booking, Payment
from fleet_rental.integrations.stripe_client import StripeError, StripeErrorType
from fleet_rental.schemas import CarRecord, CustomerRecord, TenantContext
from fleet_rental.service import RentalService
from tests.conftest import BOOKING_START, FakeStripeClient, add_car, book


async def load_booking(service: RentalService, tenant: TenantContext, booking_id: uuid.UUID) -> Booking:
    async def work(session: AsyncSession) -> Booking:
        return await session.get(Booking, booking_id)

    return await service.unit.run(tenant, work)


async def load_payment(service: RentalService, tenant: TenantContext, booking_id: uuid.UUID) -> Payment:
    async def work(session: AsyncSession) -> Payment:
        result = await session.execute(select(Payment).where(Payment.booking_id == booking_id))
        return result.scalar_one()

    return await service.unit.run(tenant, work)


class TestBilledDays:
    """Whole 24h periods, rounded down, minimum one."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "duration, expected",
        [
            (timedelta(hours=1), 1),
            (timedelta(hours=23, minutes=59), 1),
            (timedelta(days=1), 1),
            (timedelta(days=2), 2),
            (timedelta(days=2, hours=23), 2),
            (timedelta(days=7, minutes=1), 7),
        ],
    )
    def test_billed_days(self, duration: timedelta, expected: int) -> None:
        assert billed_days(BOOKING_START, BOOKING_START + duration) == expected

    @pytest.mark.unit
    def test_naive_timestamps_are_utc(self) -> None:
        start = datetime(2025, 3, 1, 10, 0)
        assert billed_days(start, start.replace(tzinfo=timezone.utc) + timedelta(days=3)) == 3


class TestCreateBooking:
    """Reservation under the car row lock."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_booking_rents_car(
        self,
        service: RentalService,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        receipt = await book(service, acme, car, customer, authorize=False)

        assert receipt.status == "pending"
        assert receipt.car_id == car.id
        assert (await service.assets.get_car(acme, car.id)).status == "rented"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_booking_conflicts(
        self,
        service: RentalService,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        await book(service, acme, car, customer, authorize=False)

        with pytest.raises(AssetUnavailableError) as exc_info:
            await book(service, acme, car, customer, authorize=False)

        assert isinstance(exc_info.value, ConflictError)
        assert exc_info.value.http_status == 409
        assert exc_info.value.status == "rented"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_car_in_maintenance_is_unavailable(
        self,
        service: RentalService,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        await service.assets.update_car(acme, car.id, status="maintenance")

        with pytest.raises(AssetUnavailableError):
            await book(service, acme, car, customer, authorize=False)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_end_must_follow_start(
        self,
        service: RentalService,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        with pytest.raises(ValidationError):
            await service.bookings.create_booking(
                acme, car.id, customer.id, BOOKING_START, BOOKING_START
            )
        assert (await service.assets.get_car(acme, car.id)).status == "available"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_car_or_customer(
        self,
        service: RentalService,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        end = BOOKING_START + timedelta(days=1)
        with pytest.raises(NotFoundError):
            await service.bookings.create_booking(acme, uuid.uuid4(), customer.id, BOOKING_START, end)
        with pytest.raises(NotFoundError):
            await service.bookings.create_booking(acme, car.id, uuid.uuid4(), BOOKING_START, end)

        # The failed attempt must not leave the car rented
        assert (await service.assets.get_car(acme, car.id)).status == "available"


class TestReturnCar:
    """Settlement: capture inside the transaction, commit only on success."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_clean_return_round_trip(
        self,
        service: RentalService,
        fake_stripe: FakeStripeClient,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        """2 days at 10000 with no damage bills 20000 and frees the car."""
        receipt = await book(service, acme, car, customer, days=2)

        settlement = await service.bookings.return_car(acme, receipt.booking_id, 12500, 0)

        assert settlement.billed_days == 2
        assert settlement.rental_cost_cents == 20000
        assert settlement.final_amount_cents == 20000
        assert settlement.car_status == "available"
        assert settlement.payment_status == "captured"

        returned = await service.assets.get_car(acme, car.id)
        assert returned.status == "available"
        assert returned.odometer == 12500

        booking = await load_booking(service, acme, receipt.booking_id)
        assert booking.status == "completed"
        assert booking.total_amount_cents == 20000
        assert booking.final_odometer == 12500
        assert booking.damage_cost_cents == 0

        payment = await load_payment(service, acme, receipt.booking_id)
        assert payment.status == "captured"
        assert payment.amount_cents == 20000

        assert fake_stripe.captures == {
            f"capture_{receipt.booking_id}": {
                "payment_intent_id": payment.stripe_intent_id,
                "amount_cents": 20000,
            }
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_damaged_return_goes_to_maintenance(
        self,
        service: RentalService,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        receipt = await book(service, acme, car, customer, days=2)

        settlement = await service.bookings.return_car(acme, receipt.booking_id, 12500, 500)

        assert settlement.final_amount_cents == 20500
        assert settlement.damage_cost_cents == 500
        assert settlement.car_status == "maintenance"
        assert (await service.assets.get_car(acme, car.id)).status == "maintenance"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_negative_damage_rejected_without_writes(
        self,
        service: RentalService,
        fake_stripe: FakeStripeClient,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        receipt = await book(service, acme, car, customer)

        with patch.object(service.unit, "run") as unit_run:
            with pytest.raises(ValidationError) as exc_info:
                await service.bookings.return_car(acme, receipt.booking_id, 12500, -1)

        assert exc_info.value.field == "damage_cost_cents"
        unit_run.assert_not_called()
        assert fake_stripe.capture_calls == []
        assert (await load_booking(service, acme, receipt.booking_id)).status == "pending"
        assert (await service.assets.get_car(acme, car.id)).status == "rented"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_returning_twice_is_invalid_state(
        self,
        service: RentalService,
        fake_stripe: FakeStripeClient,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        receipt = await book(service, acme, car, customer)
        await service.bookings.return_car(acme, receipt.booking_id, 12500, 0)

        with pytest.raises(InvalidStateError):
            await service.bookings.return_car(acme, receipt.booking_id, 13000, 0)

        assert len(fake_stripe.capture_calls) == 1
        assert (await service.assets.get_car(acme, car.id)).odometer == 12500

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_failure_rolls_back(
        self,
        service: RentalService,
        fake_stripe: FakeStripeClient,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        receipt = await book(service, acme, car, customer)
        fake_stripe.capture_error = StripeError("Your card was declined", StripeErrorType.PERMANENT)

        with pytest.raises(SettlementFailedError) as exc_info:
            await service.bookings.return_car(acme, receipt.booking_id, 12500, 500)

        assert exc_info.value.http_status == 502
        assert (await load_booking(service, acme, receipt.booking_id)).status == "pending"
        assert (await load_payment(service, acme, receipt.booking_id)).status == "pending_auth"
        car_after = await service.assets.get_car(acme, car.id)
        assert car_after.status == "rented"
        assert car_after.odometer == car.odometer

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retried_return_captures_once(
        self,
        service: RentalService,
        fake_stripe: FakeStripeClient,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        """
        First attempt captures but loses the response; the retry reuses the capture.
        """
        receipt = await book(service, acme, car, customer)
        fake_stripe.lose_next_capture_response = True

        with pytest.raises(SettlementFailedError):
            await service.bookings.return_car(acme, receipt.booking_id, 12500, 0)
        assert (await load_booking(service, acme, receipt.booking_id)).status == "pending"

        settlement = await service.bookings.return_car(acme, receipt.booking_id, 12500, 0)

        assert settlement.final_amount_cents == 20000
        assert fake_stripe.capture_calls == [f"capture_{receipt.booking_id}"] * 2
        assert len(fake_stripe.captures) == 1
        assert (await load_booking(service, acme, receipt.booking_id)).status == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_booking_without_payment_not_found(
        self,
        service: RentalService,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        receipt = await book(service, acme, car, customer, authorize=False)

        with pytest.raises(NotFoundError):
            await service.bookings.return_car(acme, receipt.booking_id, 12500, 0)
        with pytest.raises(NotFoundError):
            await service.bookings.return_car(acme, uuid.uuid4(), 12500, 0)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_day_rounds_down(
        self,
        service: RentalService,
        acme: TenantContext,
        customer: CustomerRecord,
    ) -> None:
        car = await add_car(service, acme, daily_rate_cents=4000)
        receipt = await book(service, acme, car, customer, days=2.5)

        settlement = await service.bookings.return_car(acme, receipt.booking_id, 100, 0)

        assert settlement.billed_days == 2
        assert settlement.final_amount_cents == 8000


class TestCancelBooking:
    """pending -> cancelled."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_releases_car_and_hold(
        self,
        service: RentalService,
        fake_stripe: FakeStripeClient,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        receipt = await book(service, acme, car, customer)

        cancelled = await service.bookings.cancel_booking(acme, receipt.booking_id, "plans changed")

        assert cancelled.status == "cancelled"
        assert (await service.assets.get_car(acme, car.id)).status == "available"
        payment = await load_payment(service, acme, receipt.booking_id)
        assert payment.status == "voided"
        assert fake_stripe.cancels == {f"cancel_{receipt.booking_id}": payment.stripe_intent_id}
        booking = await load_booking(service, acme, receipt.booking_id)
        assert booking.cancellation_reason == "plans changed"

        # The car can be booked again
        again = await book(service, acme, car, customer, authorize=False)
        assert again.status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_without_payment(
        self,
        service: RentalService,
        fake_stripe: FakeStripeClient,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        receipt = await book(service, acme, car, customer, authorize=False)

        await service.bookings.cancel_booking(acme, receipt.booking_id)

        assert fake_stripe.cancels == {}
        assert (await service.assets.get_car(acme, car.id)).status == "available"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_terminal_booking_cannot_be_cancelled_or_returned(
        self,
        service: RentalService,
        acme: TenantContext,
        car: CarRecord,
        customer: CustomerRecord,
    ) -> None:
        completed = await book(service, acme, car, customer)
        await service.bookings.return_car(acme, completed.booking_id, 12500, 0)
        with pytest.raises(InvalidStateError):
            await service.bookings.cancel_booking(acme, completed.booking_id)

        cancelled = await book(service, acme, car, customer)
        await service.bookings.cancel_booking(acme, cancelled.booking_id)
        with pytest.raises(InvalidStateError):
            await service.bookings.cancel_booking(acme, cancelled.booking_id)
        with pytest.raises(InvalidStateError):
            await service.bookings.return_car(acme, cancelled.booking_id, 12500, 0)

        assert (await service.assets.get_car(acme, car.id)).status == "available"
