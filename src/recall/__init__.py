"""Recall - encrypted team memory for AI coding sessions."""

__version__ = "0.3.0"
