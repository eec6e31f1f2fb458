"""Core rental logic: tenancy, assets, bookings and payments."""
