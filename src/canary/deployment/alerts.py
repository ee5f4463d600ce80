"""Escalation of rollbacks that could not be confirmed."""
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from src.canary.core.config import settings
from src.canary.monitoring.metrics import ROLLBACK_ESCALATIONS


class AlertNotifier:
    """Posts escalations to a webhook, or logs them when none is configured."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0):
        self.webhook_url = webhook_url if webhook_url is not None else settings.ALERT_WEBHOOK_URL
        self.timeout = timeout

    async def escalate(self, summary: str, details: Dict[str, Any]) -> bool:
        """Raise an external alert. Returns True when the alert was delivered."""
        ROLLBACK_ESCALATIONS.inc()
        logger.bind(details=details).critical(f"🚨 ESCALATION: {summary}")

        if not self.webhook_url:
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json={"summary": summary, "details": details})
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver escalation to webhook: {e}")
            return False
        return True
