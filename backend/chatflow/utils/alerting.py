# /chatflow/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from chatflow.config.settings import settings

# This utility reports operator-facing events (authoring warnings, aborted
# steps, transport outages) to an external webhook.

logger = logging.getLogger(__name__)


class AlertingService:
    def __init__(self, webhook_url: Optional[str]):
        self.webhook_url = webhook_url
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None

    async def _post(self, severity: str, error: str, context: Dict[str, Any]):
        if not self.client:
            return
        try:
            alert_data = {
                "severity": severity, "service": "chatflow-interpreter",
                "error": error, "context": context,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "environment": settings.environment
            }
            await self.client.post(self.webhook_url, json=alert_data)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send {severity} alert: {e}")

    async def send_critical_alert(self, error: str, context: Dict[str, Any]):
        await self._post("critical", error, context)

    async def send_operator_warning(self, error: str, context: Dict[str, Any]):
        await self._post("warning", error, context)

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


# Globally accessible instance
alerting_service = AlertingService(settings.alerting_webhook_url)
