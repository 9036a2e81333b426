"""Nudge decision engine: memory-backed confidence scoring and suppression."""

__version__ = "0.1.0"
