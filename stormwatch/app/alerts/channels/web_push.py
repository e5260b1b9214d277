"""
web_push.py — Push notification channel.

Delivery mechanism:
    • JSON POST to a push relay (FCM-style legacy HTTP endpoint)
    • Payload: notification title/body plus alert data for the app
    • Recipient is the rep's device push token

Zero marginal cost, so no rate-limit gate applies.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx

from stormwatch.app.alerts.channels.base import AlertMessage, GatewayReceipt
from stormwatch.app.alerts.models import Channel, ChannelResult, SendStatus, Severity
from stormwatch.app.core.config import Settings, settings
from stormwatch.app.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


def build_push_payload(alert_id: str, message: AlertMessage) -> Dict[str, Any]:
    hazard = message.event_type.value.capitalize()
    return {
        "notification": {
            "title": f"{hazard} near {message.customer_name or message.address}",
            "body": f"{message.hazard_detail()} · {message.address}",
            "tag": alert_id,
        },
        "data": {
            "alert_id": alert_id,
            "property_id": message.property_id,
            "severity": message.severity.label,
            "event_type": message.event_type.value,
            "storm_date": message.storm_date.isoformat(),
            "url": f"/impact/alerts/{alert_id}",
        },
        "priority": "high" if message.severity >= Severity.SEVERE else "normal",
    }


class SimulatedPushGateway:
    name = "simulation"

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def is_configured(self) -> bool:
        return True

    def status(self) -> Dict[str, Any]:
        return {"provider": self.name, "configured": True, "messages_sent": len(self.sent)}

    async def send_push(self, token: str, payload: Dict[str, Any]) -> GatewayReceipt:
        message_id = f"sim-push-{uuid.uuid4().hex[:16]}"
        self.sent.append({"token": token, "payload": payload, "message_id": message_id})
        logger.info("[PUSH] → %s...: %s", token[:12], payload["notification"]["title"])
        return GatewayReceipt(provider=self.name, message_id=message_id)

    async def close(self) -> None:
        return None


class WebhookPushGateway:
    """Posts to a push relay; expects {"message_id": ...} or FCM {"results": [...]}."""

    name = "webhook"

    def __init__(
        self,
        service_url: Optional[str],
        server_key: Optional[str] = None,
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.service_url = service_url
        self.server_key = server_key
        self.timeout_seconds = timeout_seconds
        self._http_client = client

    def is_configured(self) -> bool:
        return bool(self.service_url)

    def status(self) -> Dict[str, Any]:
        return {"provider": self.name, "configured": self.is_configured(), "url": self.service_url}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send_push(self, token: str, payload: Dict[str, Any]) -> GatewayReceipt:
        if not self.is_configured():
            raise ExternalServiceError(self.name, "push service URL not configured")

        headers = {"Authorization": f"key={self.server_key}"} if self.server_key else {}
        try:
            client = await self._get_client()
            response = await client.post(
                self.service_url, json={"to": token, **payload}, headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                self.name, f"HTTP {e.response.status_code}", status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalServiceError(self.name, f"{type(e).__name__}: {e}") from e

        message_id = data.get("message_id")
        if not message_id and data.get("results"):
            result = data["results"][0]
            if "error" in result:
                raise ExternalServiceError(self.name, str(result["error"]))
            message_id = result.get("message_id")
        return GatewayReceipt(provider=self.name, message_id=str(message_id or ""), raw=data)


def build_push_gateway(config: Settings = settings):
    if config.PUSH_PROVIDER == "webhook":
        return WebhookPushGateway(
            config.PUSH_SERVICE_URL,
            config.PUSH_SERVER_KEY,
            timeout_seconds=config.PUSH_TIMEOUT_SECONDS,
        )
    return SimulatedPushGateway()


class PushChannel:

    channel = Channel.PUSH

    def __init__(self, gateway):
        self.gateway = gateway

    async def send(self, alert_id: str, recipient: Optional[str], message: AlertMessage) -> ChannelResult:
        if not recipient:
            logger.warning("[PUSH] Alert %s: no push token on file", alert_id)
            return ChannelResult(
                alert_id, Channel.PUSH, SendStatus.INVALID, error="No push token on file",
            )

        try:
            receipt = await self.gateway.send_push(recipient, build_push_payload(alert_id, message))
        except ExternalServiceError as exc:
            logger.warning("[PUSH] Alert %s failed: %s", alert_id, exc.message)
            return ChannelResult(alert_id, Channel.PUSH, SendStatus.FAILED, error=exc.message)

        logger.info(
            "[PUSH] Alert %s delivered (%s)", alert_id, receipt.message_id,
            extra={"alert_id": alert_id, "channel": "push"},
        )
        return ChannelResult(
            alert_id, Channel.PUSH, SendStatus.SENT, provider_message_id=receipt.message_id or None,
        )
