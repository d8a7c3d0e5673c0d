"""Encrypted health-record cache and sync layer."""

__version__ = "0.1.0"
