"""Configuration package for the M-PESA gateway."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
