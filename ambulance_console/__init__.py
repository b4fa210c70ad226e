"""Operator console for an ambulance dispatch service."""

__version__ = "1.0.0"
