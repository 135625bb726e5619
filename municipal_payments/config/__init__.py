"""Configuration package for the municipal payments service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
