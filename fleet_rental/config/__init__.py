"""Configuration package for fleet rental."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
