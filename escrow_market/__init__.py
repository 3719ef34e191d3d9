"""Escrow marketplace for digital credentials."""

__version__ = "1.0.0"
