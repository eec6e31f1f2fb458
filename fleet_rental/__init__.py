"""Multi-tenant car rental core: bookings, two-phase payments and tenant isolation."""

__version__ = "1.0.0"
