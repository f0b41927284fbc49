"""Risk alert dispatch."""

from .alerter import Alerter

__all__ = ["Alerter"]
