"""
Asset registry: cars, customers and the administrative update path.

Session-level helpers (`lock_for_update`, `set_status`, `set_odometer`)
are only valid inside the unit of work that holds the row lock. The
registry's own methods each open a unit.
"""
import uuid
from typing import Any, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_rental.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from fleet_rental.core.state_machine import ADMIN_CAR_EVENTS, CarEvent, CarStatus, car_machine
from fleet_rental.database.models import Car, Customer
from fleet_rental.database.unit_of_work import TransactionalUnit
from fleet_rental.schemas import CarRecord, CustomerRecord, TenantContext

logger = structlog.get_logger(__name__)

_EDITABLE_ATTRIBUTES = ("make", "model", "year", "license_plate", "daily_rate_cents", "image_url")


async def lock_for_update(session: AsyncSession, car_id: uuid.UUID) -> Optional[Car]:
    """
    Read a car with an exclusive row lock held until the unit ends.

    Concurrent transactions asking for the same lock block until this one
    commits or rolls back.
    """
    result = await session.execute(
        select(Car).where(Car.id == car_id).with_for_update()
    )
    return result.scalar_one_or_none()


def set_status(car: Car, event: CarEvent) -> CarStatus:
    """
    Apply a car event through the transition table.

    Raises:
        InvalidTransitionError: If the event is not allowed from the current status
    """
    new_status = car_machine.next_state(CarStatus(car.status), event)
    car.status = new_status.value
    return new_status


def set_odometer(car: Car, reading: int) -> None:
    if reading < 0:
        raise ValidationError("Odometer reading must be non-negative", field="odometer")
    car.odometer = reading


def _validate_car_attributes(attrs: dict) -> None:
    rate = attrs.get("daily_rate_cents")
    if rate is not None and rate <= 0:
        raise ValidationError("Daily rate must be positive", field="daily_rate_cents")
    year = attrs.get("year")
    if year is not None and not 1900 <= year <= 2100:
        raise ValidationError(f"Invalid year: {year}", field="year")
    for field in ("make", "model", "license_plate"):
        if field in attrs and attrs[field] is not None and not str(attrs[field]).strip():
            raise ValidationError(f"{field} must not be empty", field=field)


class AssetRegistry:
    """Owns cars and customers of every tenant partition."""

    def __init__(self, unit: TransactionalUnit):
        self.unit = unit

    async def register_car(
        self,
        tenant: TenantContext,
        make: str,
        model: str,
        year: int,
        license_plate: str,
        daily_rate_cents: int,
        odometer: int = 0,
        image_url: Optional[str] = None,
    ) -> CarRecord:
        """
        Add a car to the tenant's fleet. New cars are available.

        Raises:
            ValidationError: Bad attributes
            ConflictError: License plate already registered
        """
        _validate_car_attributes(
            {
                "make": make,
                "model": model,
                "year": year,
                "license_plate": license_plate,
                "daily_rate_cents": daily_rate_cents,
            }
        )
        if odometer < 0:
            raise ValidationError("Odometer reading must be non-negative", field="odometer")

        async def work(session: AsyncSession) -> CarRecord:
            car = Car(
                make=make,
                model=model,
                year=year,
                license_plate=license_plate,
                daily_rate_cents=daily_rate_cents,
                odometer=odometer,
                image_url=image_url,
                status=CarStatus.AVAILABLE.value,
            )
            session.add(car)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"License plate {license_plate} already registered",
                    license_plate=license_plate,
                ) from e
            return CarRecord.model_validate(car)

        record = await self.unit.run(tenant, work)
        logger.info(
            "car_registered",
            tenant_id=tenant.tenant_id,
            car_id=str(record.id),
            license_plate=license_plate,
        )
        return record

    async def get_car(self, tenant: TenantContext, car_id: uuid.UUID) -> CarRecord:
        """
        Fetch one car.

        Raises:
            NotFoundError: If the car is not in this tenant's partition
        """

        async def work(session: AsyncSession) -> CarRecord:
            car = await session.get(Car, car_id)
            if car is None:
                raise NotFoundError("Car", car_id)
            return CarRecord.model_validate(car)

        return await self.unit.run(tenant, work)

    async def list_cars(
        self, tenant: TenantContext, status: Optional[CarStatus] = None
    ) -> List[CarRecord]:
        """List the tenant's cars, optionally filtered by status."""

        async def work(session: AsyncSession) -> List[CarRecord]:
            query = select(Car).order_by(Car.created_at, Car.license_plate)
            if status is not None:
                query = query.where(Car.status == CarStatus(status).value)
            result = await session.execute(query)
            return [CarRecord.model_validate(car) for car in result.scalars()]

        return await self.unit.run(tenant, work)

    async def update_car(
        self,
        tenant: TenantContext,
        car_id: uuid.UUID,
        status: Optional[str] = None,
        **attributes: Any,
    ) -> CarRecord:
        """
        Administrative update of car attributes and non-rental status.

        A status change is checked against the transition table. Moving a
        car out of or into `rented` is rejected: only the booking engine's
        return and cancellation flows release a rented car.

        Args:
            tenant: Resolved tenant
            car_id: Car to update
            status: Requested status (available, inspecting, maintenance)
            **attributes: make, model, year, license_plate, daily_rate_cents, image_url

        Returns:
            CarRecord: Updated car

        Raises:
            InvalidTransitionError: Status change not allowed, row unchanged
            ValidationError: Unknown or bad attributes
            NotFoundError: Car absent
        """
        unknown = set(attributes) - set(_EDITABLE_ATTRIBUTES)
        if unknown:
            raise ValidationError(f"Unknown car attributes: {sorted(unknown)}")
        _validate_car_attributes(attributes)

        target: Optional[CarStatus] = None
        if status is not None:
            try:
                target = CarStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown car status: {status!r}", field="status") from None

        async def work(session: AsyncSession) -> CarRecord:
            car = await lock_for_update(session, car_id)
            if car is None:
                raise NotFoundError("Car", car_id)

            if target is not None:
                event = ADMIN_CAR_EVENTS.get(target)
                if event is None:
                    raise InvalidTransitionError(
                        f"car: status '{target.value}' is set by bookings only",
                        current=car.status,
                        event=target.value,
                    )
                set_status(car, event)

            for name, value in attributes.items():
                setattr(car, name, value)

            try:
                await session.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"License plate {attributes.get('license_plate')} already registered"
                ) from e
            return CarRecord.model_validate(car)

        try:
            record = await self.unit.run(tenant, work)
        except InvalidTransitionError as e:
            logger.warning(
                "car_transition_rejected",
                tenant_id=tenant.tenant_id,
                car_id=str(car_id),
                current=e.current,
                requested=e.event,
            )
            raise

        logger.info(
            "car_updated",
            tenant_id=tenant.tenant_id,
            car_id=str(car_id),
            status=record.status,
            attributes=sorted(attributes),
        )
        return record

    async def register_customer(
        self, tenant: TenantContext, email: str, first_name: str, last_name: str
    ) -> CustomerRecord:
        """
        Add a customer to the tenant.

        Raises:
            ValidationError: Bad email or names
            ConflictError: Email already registered
        """
        if not email or "@" not in email:
            raise ValidationError(f"Invalid email: {email!r}", field="email")
        if not first_name or not last_name:
            raise ValidationError("First and last name are required", field="name")

        async def work(session: AsyncSession) -> CustomerRecord:
            customer = Customer(email=email.lower(), first_name=first_name, last_name=last_name)
            session.add(customer)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConflictError(f"Customer {email} already registered") from e
            return CustomerRecord.model_validate(customer)

        record = await self.unit.run(tenant, work)
        logger.info("customer_registered", tenant_id=tenant.tenant_id, customer_id=str(record.id))
        return record
