"""Alert routing for quests that need operator attention."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class AlertPayload:
    """Structured payload for alert notifications."""

    event: str
    message: str
    severity: str
    source: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: float = field(default_factory=time.time)


class AlertRouter:
    """Routes alert notifications to configured webhooks."""

    def __init__(
        self,
        webhook_urls: Optional[List[str]] = None,
        *,
        timeout: float = 5.0,
        muted_events: Optional[Set[str]] = None,
    ) -> None:
        self._webhook_urls = [value for value in (webhook_urls or []) if value]
        self._timeout = timeout
        self._muted_events = muted_events or set()
        self._lock = threading.Lock()

    @property
    def webhook_urls(self) -> List[str]:
        return list(self._webhook_urls)

    def notify(
        self,
        *,
        event: str,
        message: str,
        severity: str = "warning",
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an alert payload to every configured webhook."""

        if event in self._muted_events:
            logger.debug("Alert event '%s' is muted; skipping notification", event)
            return False

        payload = AlertPayload(
            event=event,
            message=message,
            severity=severity,
            source=source,
            metadata=metadata,
        )

        sent = False
        for webhook in self._webhook_urls:
            sent = self._post_webhook(payload, webhook) or sent

        if not sent:
            logger.warning(
                "Alert emitted without external routing: %s | %s", event, message
            )
        return sent

    def _post_webhook(self, payload: AlertPayload, webhook_url: str) -> bool:
        body = {
            "event": payload.event,
            "severity": payload.severity,
            "message": payload.message,
            "source": payload.source,
            "metadata": payload.metadata or {},
            "timestamp": payload.timestamp,
        }

        # Slack and Discord read "text" and "content" respectively.
        text_message = f"[{payload.severity.upper()}] {payload.message}"
        body["text"] = text_message
        body["content"] = text_message
        body["username"] = "xRPG Alerts"

        request = urllib.request.Request(
            webhook_url,
            data=json.dumps(body, default=str).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

        try:
            with self._lock:
                with urllib.request.urlopen(request, timeout=self._timeout) as response:
                    logger.debug(
                        "Alert webhook response %s for event %s",
                        response.status,
                        payload.event,
                    )
            return True
        except Exception:  # pragma: no cover - network errors are logged for ops visibility.
            logger.exception(
                "Failed to deliver alert webhook for event %s", payload.event
            )
            return False


_alert_router: Optional[AlertRouter] = None


def get_alert_router() -> AlertRouter:
    """Return the lazily instantiated alert router."""

    global _alert_router
    if _alert_router is None:
        webhook_urls = [
            value.strip()
            for value in os.getenv("XRPG_ALERT_WEBHOOK_URLS", "").split(",")
            if value.strip()
        ]
        timeout = float(os.getenv("XRPG_ALERT_TIMEOUT", "5") or 5)
        muted = {
            value.strip()
            for value in os.getenv("XRPG_ALERT_MUTED_EVENTS", "").split(",")
            if value.strip()
        }
        _alert_router = AlertRouter(
            webhook_urls=webhook_urls,
            timeout=timeout,
            muted_events=muted,
        )
    return _alert_router


def set_alert_router(router: Optional[AlertRouter]) -> None:
    """Override the global alert router (primarily for testing)."""

    global _alert_router
    _alert_router = router


__all__ = ["AlertRouter", "AlertPayload", "get_alert_router", "set_alert_router"]
