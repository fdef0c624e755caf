"""Behavioral pattern detection and proactive reminder engine."""

__version__ = "0.1.0"
