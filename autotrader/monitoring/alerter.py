"""Alert dispatch for risk events."""
from __future__ import annotations

from typing import Optional

import requests

from ..risk.manager import AlertSeverity, RiskAlert
from ..utils.logger import logger
from ..utils.structured_logging import log_structured_event

_SLACK_COLORS = {
    AlertSeverity.INFO: "#36a64f",
    AlertSeverity.WARNING: "#ffcc00",
    AlertSeverity.CRITICAL: "#ff0000",
}


class Alerter:
    """Logs every risk alert and forwards it to Slack when a webhook is configured."""

    def __init__(self, slack_webhook: Optional[str] = None, timeout: float = 5.0):
        self.slack_webhook = slack_webhook
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "Alerter":
        return cls(settings.logging.slack_webhook_url)

    def dispatch(self, alert: RiskAlert) -> None:
        severity = {
            AlertSeverity.INFO: "info",
            AlertSeverity.WARNING: "warning",
            AlertSeverity.CRITICAL: "error",
        }[alert.severity]
        log_structured_event(
            "risk_monitor",
            f"alert.{alert.kind}",
            alert.message,
            {
                "severity": alert.severity.value,
                "action": alert.action.value,
                "score": alert.score,
                "symbol": alert.symbol,
            },
            severity=severity,
        )
        self._send_slack(alert)

    def _send_slack(self, alert: RiskAlert) -> None:
        if not self.slack_webhook:
            return
        title = f"{alert.severity.value}: {alert.kind}" + (f" ({alert.symbol})" if alert.symbol else "")
        payload = {
            "attachments": [
                {
                    "color": _SLACK_COLORS[alert.severity],
                    "title": title,
                    "text": f"{alert.message}\nAction: {alert.action.value}",
                    "footer": "autotrader",
                }
            ]
        }
        try:
            response = requests.post(self.slack_webhook, json=payload, timeout=self.timeout)
            if response.status_code != 200:
                logger.error(f"Failed to send Slack alert: {response.text}")
        except requests.RequestException as exc:
            logger.error(f"Error sending Slack alert: {exc}")
