"""Fire-and-forget escalation alerts to a chat webhook."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import requests

from agency_sms.config import settings
from agency_sms.runtime import get_logger

logger = get_logger(__name__)


class AlertNotifier:
    def __init__(self, webhook_url: Optional[str], *, timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="alerts")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url and self.webhook_url.startswith(("http://", "https://")))

    def _post(self, text: str) -> bool:
        try:
            resp = requests.post(self.webhook_url, json={"text": text}, timeout=self.timeout)
            resp.raise_for_status()
            return True
        except requests.exceptions.RequestException as exc:
            logger.warning("❌ Webhook alert failed: %s", exc)
            return False

    def notify(self, text: str) -> Optional[Future]:
        """Queue the alert; the returned future resolves to delivery success."""
        logger.warning("🚨 ALERT: %s", text)
        if not self.enabled:
            return None
        return self._pool.submit(self._post, text)


def build_notifier() -> AlertNotifier:
    s = settings()
    return AlertNotifier(s.ALERT_WEBHOOK_URL, timeout=s.ALERT_TIMEOUT_SEC)
