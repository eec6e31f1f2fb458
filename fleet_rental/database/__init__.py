"""Database package for the rental core."""
from .connection import create_engine_from_settings, init_db
from .models import (
    TENANT_SCHEMA,
    Base,
    Booking,
    Car,
    Customer,
    Payment,
    Tenant,
    Webhook,
)

__all__ = [
    "TENANT_SCHEMA",
    "Base",
    "Booking",
    "Car",
    "Customer",
    "Payment",
    "Tenant",
    "Webhook",
    "create_engine_from_settings",
    "init_db",
]
