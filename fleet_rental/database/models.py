"""SQLAlchemy database models for the multi-tenant rental core."""
import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Placeholder schema for every tenant-scoped table. The transactional unit
# translates it to the resolved partition per connection; a statement issued
# without a partition targets a schema that does not exist.
TENANT_SCHEMA = "tenant"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Tenant(Base):
    """
    Tenant directory.

    Lives outside every partition and maps an external identity (tenant id
    or subdomain) to the partition holding that tenant's rows.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subdomain: Mapped[str] = mapped_column(String(63), unique=True, nullable=False)
    schema_name: Mapped[str] = mapped_column(String(63), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of Tenant."""
        return f"<Tenant(id={self.id}, subdomain={self.subdomain}, schema={self.schema_name})>"


class Car(Base):
    """
    Rental fleet.

    Status is owned by the booking engine; the admin path may only move a
    car between the non-rented statuses.
    """

    __tablename__ = "cars"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    make: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    license_plate: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    daily_rate_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    odometer: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="available")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("daily_rate_cents > 0", name="positive_rate"),
        CheckConstraint("odometer >= 0", name="non_negative_odometer"),
        CheckConstraint(
            "status IN ('available', 'rented', 'inspecting', 'maintenance')",
            name="valid_car_status",
        ),
        Index("idx_cars_status", "status"),
        {"schema": TENANT_SCHEMA},
    )

    def __repr__(self) -> str:
        """String representation of Car."""
        return f"<Car(id={self.id}, plate={self.license_plate}, status={self.status})>"


class Customer(Base):
    """Renters of a tenant."""

    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = ({"schema": TENANT_SCHEMA},)


class Booking(Base):
    """
    Reservations.

    Created `pending` in the same transaction that moves the car to
    `rented`. `completed` and `cancelled` are terminal.
    """

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    car_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey(f"{TENANT_SCHEMA}.cars.id"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey(f"{TENANT_SCHEMA}.customers.id"), nullable=False, index=True
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    final_odometer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    damage_cost_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    total_amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="end_after_start"),
        CheckConstraint(
            "damage_cost_cents IS NULL OR damage_cost_cents >= 0",
            name="non_negative_damage",
        ),
        CheckConstraint(
            "status IN ('pending', 'active', 'completed', 'cancelled')",
            name="valid_booking_status",
        ),
        Index("idx_bookings_car_status", "car_id", "status"),
        {"schema": TENANT_SCHEMA},
    )

    def __repr__(self) -> str:
        """String representation of Booking."""
        return f"<Booking(id={self.id}, car_id={self.car_id}, status={self.status})>"


class Payment(Base):
    """
    Two-phase payment bound 1:1 to a booking.

    Holds the processor's PaymentIntent id. Moves to `authorized` on the
    processor's confirmation event and to `captured` exactly once.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey(f"{TENANT_SCHEMA}.bookings.id"), unique=True, nullable=False
    )
    stripe_intent_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending_auth")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending_auth', 'authorized', 'captured', 'voided')",
            name="valid_payment_status",
        ),
        {"schema": TENANT_SCHEMA},
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, booking_id={self.booking_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class Webhook(Base):
    """
    Outbound webhook registrations of a tenant.

    Each delivery is signed with the registration's own secret.
    """

    __tablename__ = "webhooks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    events: Mapped[List[str]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False
    )
    secret_key: Mapped[str] = mapped_column(String(64), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = ({"schema": TENANT_SCHEMA},)

    def __repr__(self) -> str:
        """String representation of Webhook."""
        return f"<Webhook(id={self.id}, url={self.url}, active={self.active})>"


# Tables created inside every partition at provisioning time
TENANT_TABLES = [
    Car.__table__,
    Customer.__table__,
    Booking.__table__,
    Payment.__table__,
    Webhook.__table__,
]

# Tables in the shared default schema
DIRECTORY_TABLES = [Tenant.__table__]
