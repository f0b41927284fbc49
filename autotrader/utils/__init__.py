"""Shared utilities: logging, settings loading and market-time helpers."""
