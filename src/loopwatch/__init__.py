"""Supervision layer for externally executed feature loops."""

__version__ = "0.1.0"
