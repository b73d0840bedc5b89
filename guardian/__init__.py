"""Stripe Guardian: keeps user premium state in sync with Stripe."""

__version__ = "1.0.0"
