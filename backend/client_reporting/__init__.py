"""Signed report links and guarded report delivery for agencies."""

__version__ = "1.0.0"
