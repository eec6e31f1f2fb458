"""
Pydantic value objects returned across the core's boundary.

Records are snapshots built from ORM rows inside a unit of work, so callers
never hold a live row outside its transaction.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class TenantContext(BaseModel):
    """Resolved tenant: identity plus the partition its rows live in."""

    tenant_id: str = Field(..., description="Opaque tenant identity")
    subdomain: str = Field(..., description="Tenant subdomain")
    schema_name: str = Field(..., description="Validated partition name")

    model_config = ConfigDict(frozen=True)


class CarRecord(BaseModel):
    """Snapshot of a car."""

    id: UUID
    make: str
    model: str
    year: int
    license_plate: str
    daily_rate_cents: int
    odometer: int
    image_url: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CustomerRecord(BaseModel):
    """Snapshot of a customer."""

    id: UUID
    email: str
    first_name: str
    last_name: str

    model_config = ConfigDict(from_attributes=True)


class BookingReceipt(BaseModel):
    """Result of creating or cancelling a booking."""

    booking_id: UUID = Field(..., description="Booking ID")
    car_id: UUID = Field(..., description="Reserved car")
    customer_id: UUID = Field(..., description="Renting customer")
    start_time: datetime
    end_time: datetime
    status: str = Field(..., description="Booking status")


class SettlementReceipt(BaseModel):
    """Result of returning a car."""

    booking_id: UUID
    billed_days: int = Field(..., ge=1)
    rental_cost_cents: int = Field(..., ge=0)
    damage_cost_cents: int = Field(..., ge=0)
    final_amount_cents: int = Field(..., ge=0)
    car_status: str = Field(..., description="available when undamaged, else maintenance")
    payment_status: str


class AuthorizationHandle(BaseModel):
    """
    Client-usable authorization handle.

    Carries the PaymentIntent client secret for the payment UI. Never the
    secret API key.
    """

    booking_id: UUID
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount_cents: int
    status: str


class WebhookAck(BaseModel):
    """Acknowledgement of a processor event."""

    status: str = Field(..., description="applied or ignored")
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    payment_status: Optional[str] = None


class WebhookRegistration(BaseModel):
    """Outbound webhook registration."""

    id: UUID
    url: str
    events: List[str]
    secret_key: str
    active: bool

    model_config = ConfigDict(from_attributes=True)


class Notification(BaseModel):
    """A state change queued for outbound delivery."""

    tenant: TenantContext
    event_type: str
    data: Dict[str, Any]
    timestamp: datetime
