"""Reflectra: browsing-session reconciliation and wellness categorization."""

__version__ = "0.1.0"
