"""Idempotent event- and work-processing core."""

__version__ = "0.1.0"
