"""
Fleet Coordinator — Alert Client
Best-effort JSON webhook for conditions an operator must act on
(upstream exhaustion, workers going stale). Without a webhook URL the
alert is only logged.
"""

import logging
from datetime import datetime, timezone

import requests

from fleetcoord.config import ALERT_TIMEOUT, ALERT_WEBHOOK_URL, COORDINATOR_NAME

logger = logging.getLogger(__name__)


class AlertClient:
    """Posts alerts to an HTTP webhook."""

    def __init__(self, webhook_url=None, timeout=ALERT_TIMEOUT, session=None):
        self.webhook_url = (webhook_url if webhook_url is not None else ALERT_WEBHOOK_URL).strip()
        self.timeout = timeout
        self._session = session or requests.Session()

    def post_alert(self, title, severity, description="", data=None):
        """Send one alert. Returns True if the webhook accepted it."""
        payload = {
            "source": COORDINATOR_NAME,
            "title": title,
            "severity": severity,
            "description": description,
            "data": data or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if not self.webhook_url:
            logger.warning(f"[ALERT] {severity} {title}: {description}")
            return False
        try:
            resp = self._session.post(self.webhook_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            logger.info(f"[ALERT] Posted {severity} alert: {title}")
            return True
        except requests.RequestException as e:
            logger.error(f"[ALERT] Webhook post failed for '{title}': {e}")
            return False

    def report_exhausted(self, error):
        """Every upstream failed; automatic failover is paused."""
        return self.post_alert(
            title="Upstreams Exhausted",
            severity="CRITICAL",
            description=(
                f"{error} Automatic failover is paused until a success signal "
                f"or an operator rotation."
            ),
            data={"attempted": list(error.attempted)},
        )

    def report_stale(self, count, total):
        return self.post_alert(
            title="Workers Gone Stale",
            severity="MEDIUM",
            description=f"{count} of {total} workers stopped reporting and were marked offline.",
            data={"stale": count, "total": total},
        )
