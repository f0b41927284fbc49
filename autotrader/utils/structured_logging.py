"""Machine-readable pipeline events (decisions, fills, regime changes, alerts)."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import uuid

from .logger import logger

LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass
class PipelineEvent:
    component: str
    event_type: str
    message: str = ""
    severity: str = "info"
    symbol: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        record = asdict(self)
        record["severity"] = self.severity.upper()
        record["timestamp"] = self.timestamp.isoformat()
        return record


def log_structured_event(
    component: str,
    event_type: str,
    message: str = "",
    payload: Optional[Dict[str, Any]] = None,
    severity: str = "info",
    correlation_id: Optional[str] = None,
) -> PipelineEvent:
    """Log one pipeline event with its payload bound as loguru extras.

    The symbol is lifted out of the payload so sinks can filter on it; the
    correlation id falls back to the payload's ``order_id`` and then
    to a fresh short id, which ties a decision to the orders it produced.
    """
    payload = dict(payload or {})
    level = severity.lower() if severity.lower() in LEVELS else "info"
    correlation_id = correlation_id or payload.get("order_id") or uuid.uuid4().hex[:12]

    event = PipelineEvent(
        component=component,
        event_type=event_type,
        message=message or event_type,
        severity=level,
        symbol=payload.get("symbol"),
        payload=payload,
        correlation_id=correlation_id,
    )
    logger.bind(
        component=component,
        event_type=event_type,
        symbol=event.symbol,
        correlation_id=correlation_id,
    ).log(level.upper(), event.message, event=event.to_dict())
    return event


__all__ = ["PipelineEvent", "log_structured_event", "LEVELS"]
