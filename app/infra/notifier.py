"""
Operator and tenant notifications.

When a webhook URL is configured, payloads are POSTed with an HMAC-SHA256
signature in ``X-Webhook-Signature``. Without one, the event row that carries
the notification metadata is itself what the portal surfaces ("in_app").
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

import httpx

from app.config import settings
from app.exceptions import InfraUnavailable
from app.infra.base import with_timeout
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

ADAPTER = "notifier"

CHANNEL_WEBHOOK = "webhook"
CHANNEL_IN_APP = "in_app"


class WebhookNotifier:
    def __init__(self, url: str | None, secret: str = ""):
        self.url = url
        self.secret = secret
        self._client = httpx.AsyncClient(timeout=settings.infra_timeout_seconds)

    def _create_signature(self, payload: str) -> str:
        """Create HMAC-SHA256 signature for webhook payload."""
        return hmac.new(self.secret.encode(), payload.encode(), hashlib.sha256).hexdigest()

    async def send(self, kind: str, payload: dict) -> str:
        """Deliver one notification and return the channel used."""
        if not self.url:
            logger.info("Notification %s recorded in-app", kind, extra={"tenant_id": payload.get("tenant_id")})
            return CHANNEL_IN_APP

        body = json.dumps(
            {"event": kind, "timestamp": utcnow().isoformat(), "data": payload},
            default=str,
        )
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": kind,
            "X-Webhook-Signature": self._create_signature(body),
            "X-Webhook-Timestamp": str(int(time.time())),
        }
        try:
            response = await with_timeout(ADAPTER, "send", self._client.post(self.url, content=body, headers=headers))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Notification %s delivery failed: %s", kind, e)
            raise InfraUnavailable(ADAPTER, f"Notification delivery failed: {e}") from e
        return CHANNEL_WEBHOOK

    async def aclose(self) -> None:
        await self._client.aclose()
