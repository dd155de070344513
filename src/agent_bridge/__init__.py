"""Batch bridge for interactive CLI AI agents."""

__version__ = "0.1.0"
