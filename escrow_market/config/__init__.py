"""Configuration package for the escrow market."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
