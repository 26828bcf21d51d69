"""Configuration package for payper."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
