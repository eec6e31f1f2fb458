"""
Booking engine: reservation lifecycle under pessimistic locking.

Implements:
- CreateBooking: car row locked, availability checked, booking inserted and
  car moved to `rented` in one transaction
- ReturnAsset: booking row locked, final amount captured at the processor
  from inside the transaction, commit only after capture succeeded
- CancelBooking: pending booking cancelled, hold released, car freed

Of N concurrent bookings for one car exactly one succeeds; the rest see the
winner's `rented` status under the lock and get AssetUnavailableError.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_rental.core.assets import lock_for_update, set_odometer, set_status
from fleet_rental.core.exceptions import (
    AssetUnavailableError,
    NotFoundError,
    RentalError,
    ValidationError,
)
from fleet_rental.core.payments import PaymentEngine, cancel_key, capture_key
from fleet_rental.core.state_machine import (
    BookingEvent,
    BookingStatus,
    CarEvent,
    CarStatus,
    PaymentStatus,
    booking_machine,
)
from fleet_rental.database.models import Booking, Car, Customer, Payment
from fleet_rental.database.unit_of_work import TransactionalUnit
from fleet_rental.integrations.webhook_dispatcher import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CREATED,
    WebhookNotifier,
)
from fleet_rental.monitoring.metrics import metrics
from fleet_rental.schemas import BookingReceipt, SettlementReceipt, TenantContext

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def billed_days(start: datetime, end: datetime) -> int:
    """Whole 24h periods between start and end, rounded down, at least one."""
    return max(1, (_as_utc(end) - _as_utc(start)) // timedelta(days=1))


def _receipt(booking: Booking) -> BookingReceipt:
    return BookingReceipt(
        booking_id=booking.id,
        car_id=booking.car_id,
        customer_id=booking.customer_id,
        start_time=booking.start_time,
        end_time=booking.end_time,
        status=booking.status,
    )


def _outcome(error: BaseException) -> str:
    return error.error_code if isinstance(error, RentalError) else "error"


class BookingEngine:
    """
    Sole writer of booking status and, through it, car status.

    Example:
        receipt = await engine.create_booking(tenant, car_id, customer_id, start, end)
        settlement = await engine.return_car(tenant, receipt.booking_id, 42000, 0)
    """

    def __init__(
        self,
        unit: TransactionalUnit,
        payments: PaymentEngine,
        notifier: Optional[WebhookNotifier] = None,
    ):
        """
        Initialize booking engine.

        Args:
            unit: Transactional unit
            payments: Payment engine used for capture and void
            notifier: Outbound webhook notifier
        """
        self.unit = unit
        self.payments = payments
        self.notifier = notifier

    async def create_booking(
        self,
        tenant: TenantContext,
        car_id: uuid.UUID,
        customer_id: uuid.UUID,
        start: datetime,
        end: datetime,
    ) -> BookingReceipt:
        """
        Reserve a car.

        Args:
            tenant: Resolved tenant
            car_id: Car to reserve
            customer_id: Renting customer
            start: Rental start
            end: Rental end, after start

        Returns:
            BookingReceipt: The pending booking

        Raises:
            ValidationError: end not after start
            NotFoundError: Car or customer absent
            AssetUnavailableError: Car not available under the lock
        """
        start, end = _as_utc(start), _as_utc(end)
        if end <= start:
            raise ValidationError("End time must be after start time", field="end_time")

        log = logger.bind(tenant_id=tenant.tenant_id, car_id=str(car_id))

        async def work(session: AsyncSession) -> BookingReceipt:
            car = await lock_for_update(session, car_id)
            if car is None:
                raise NotFoundError("Car", car_id)
            if CarStatus(car.status) is not CarStatus.AVAILABLE:
                raise AssetUnavailableError(car_id, car.status)

            customer = await session.get(Customer, customer_id)
            if customer is None:
                raise NotFoundError("Customer", customer_id)

            booking = Booking(
                id=uuid.uuid4(),
                car_id=car_id,
                customer_id=customer_id,
                start_time=start,
                end_time=end,
                status=BookingStatus.PENDING.value,
            )
            session.add(booking)
            set_status(car, CarEvent.RESERVE)
            await session.flush()
            return _receipt(booking)

        try:
            receipt = await self.unit.run(tenant, work)
        except AssetUnavailableError as e:
            metrics.record_booking_attempt(e.error_code)
            log.info("booking_rejected_car_unavailable", car_status=e.status)
            raise
        except BaseException as e:
            metrics.record_booking_attempt(_outcome(e))
            raise

        metrics.record_booking_attempt("created")
        log.info(
            "booking_created",
            booking_id=str(receipt.booking_id),
            customer_id=str(customer_id),
        )
        self._notify(
            tenant,
            BOOKING_CREATED,
            {
                "booking_id": str(receipt.booking_id),
                "car_id": str(car_id),
                "customer_id": str(customer_id),
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
            },
        )
        return receipt

    async def return_car(
        self,
        tenant: TenantContext,
        booking_id: uuid.UUID,
        final_odometer: int,
        damage_cost_cents: int,
    ) -> SettlementReceipt:
        """
        Settle a booking: capture the final amount and release the car.

        The processor capture runs while the booking row is locked and
        before commit. If it fails nothing is written and the booking can be
        returned again; the capture key derived from the booking id keeps
        the retry from charging twice.

        Args:
            tenant: Resolved tenant
            booking_id: Booking to settle
            final_odometer: Odometer reading at return
            damage_cost_cents: Damage surcharge, zero for a clean return

        Returns:
            SettlementReceipt: Billed days, amounts and resulting statuses

        Raises:
            ValidationError: Negative damage cost or odometer
            NotFoundError: Booking (or its payment) absent
            InvalidStateError: Booking already completed or cancelled
            SettlementFailedError: Capture failed, nothing written
        """
        if damage_cost_cents < 0:
            raise ValidationError("Damage cost must be non-negative", field="damage_cost_cents")
        if final_odometer < 0:
            raise ValidationError("Odometer reading must be non-negative", field="final_odometer")

        log = logger.bind(tenant_id=tenant.tenant_id, booking_id=str(booking_id))

        async def work(session: AsyncSession) -> SettlementReceipt:
            result = await session.execute(
                select(Booking, Payment, Car)
                .join(Payment, Payment.booking_id == Booking.id)
                .join(Car, Car.id == Booking.car_id)
                .where(Booking.id == booking_id)
                .with_for_update(of=Booking)
            )
            row = result.one_or_none()
            if row is None:
                raise NotFoundError(
                    "Booking", booking_id, reason="booking not found or payment missing"
                )
            booking, payment, car = row

            completed = booking_machine.next_state(
                BookingStatus(booking.status), BookingEvent.COMPLETE
            )

            days = billed_days(booking.start_time, booking.end_time)
            rental_cost = days * car.daily_rate_cents
            final_amount = rental_cost + damage_cost_cents

            await self.payments.capture(session, payment, final_amount, capture_key(booking_id))

            booking.status = completed.value
            booking.final_odometer = final_odometer
            booking.damage_cost_cents = damage_cost_cents
            booking.total_amount_cents = final_amount

            car_status = set_status(
                car, CarEvent.RETURN_CLEAN if damage_cost_cents == 0 else CarEvent.RETURN_DAMAGED
            )
            set_odometer(car, final_odometer)

            return SettlementReceipt(
                booking_id=booking_id,
                billed_days=days,
                rental_cost_cents=rental_cost,
                damage_cost_cents=damage_cost_cents,
                final_amount_cents=final_amount,
                car_status=car_status.value,
                payment_status=payment.status,
            )

        try:
            receipt = await self.unit.run(tenant, work)
        except BaseException as e:
            metrics.record_settlement(_outcome(e))
            log.warning("return_failed", error=str(e), outcome=_outcome(e))
            raise

        metrics.record_settlement("completed", receipt.final_amount_cents)
        log.info(
            "booking_completed",
            billed_days=receipt.billed_days,
            final_amount_cents=receipt.final_amount_cents,
            car_status=receipt.car_status,
        )
        self._notify(
            tenant,
            BOOKING_COMPLETED,
            {
                "booking_id": str(booking_id),
                "final_amount_cents": receipt.final_amount_cents,
                "damage_cost_cents": damage_cost_cents,
                "final_odometer": final_odometer,
                "car_status": receipt.car_status,
            },
        )
        return receipt

    async def cancel_booking(
        self, tenant: TenantContext, booking_id: uuid.UUID, reason: str = ""
    ) -> BookingReceipt:
        """
        Cancel a pending booking.

        Releases an uncaptured hold at the processor and frees the car.

        Raises:
            NotFoundError: Booking absent
            InvalidStateError: Booking is not pending
            SettlementFailedError: Processor refused to release the hold
        """
        log = logger.bind(tenant_id=tenant.tenant_id, booking_id=str(booking_id))

        async def work(session: AsyncSession) -> BookingReceipt:
            result = await session.execute(
                select(Booking, Car)
                .join(Car, Car.id == Booking.car_id)
                .where(Booking.id == booking_id)
                .with_for_update()
            )
            row: Optional[Tuple[Booking, Car]] = result.one_or_none()
            if row is None:
                raise NotFoundError("Booking", booking_id)
            booking, car = row

            cancelled = booking_machine.next_state(
                BookingStatus(booking.status), BookingEvent.CANCEL
            )

            payment_result = await session.execute(
                select(Payment).where(Payment.booking_id == booking_id).with_for_update()
            )
            payment = payment_result.scalar_one_or_none()
            if payment is not None and PaymentStatus(payment.status) is not PaymentStatus.VOIDED:
                await self.payments.void(session, payment, cancel_key(booking_id))

            booking.status = cancelled.value
            booking.cancellation_reason = reason or None
            set_status(car, CarEvent.RELEASE)
            await session.flush()
            return _receipt(booking)

        receipt = await self.unit.run(tenant, work)
        log.info("booking_cancelled", reason=reason)
        self._notify(
            tenant,
            BOOKING_CANCELLED,
            {"booking_id": str(booking_id), "reason": reason},
        )
        return receipt

    def _notify(self, tenant: TenantContext, event_type: str, data: dict) -> None:
        if self.notifier is not None:
            self.notifier.notify(tenant, event_type, data)
