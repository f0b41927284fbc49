"""Autonomous trading decision-and-execution pipeline."""

__version__ = "0.1.0"
