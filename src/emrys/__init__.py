"""Idempotent, phased bootstrap for a dedicated assistant host."""

__version__ = "0.1.0"
