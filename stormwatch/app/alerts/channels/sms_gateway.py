"""
sms_gateway.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • HTTP API to the SMS gateway (Twilio Programmable Messaging)
    • One message per alert, sent to the owning rep's phone
    • Every attempt written to the sms_notifications log

═══════════════════════════════════════════════════════════════════════════
SEND PIPELINE
═══════════════════════════════════════════════════════════════════════════

    recipient ──► normalize_phone ──► rate limiter ──► reserve slot ──► gateway
                      │                    │                │              │
                      ▼                    ▼                ▼              ▼
                   INVALID              SKIPPED          SKIPPED      SENT / FAILED

    Twilio:   POST {base}/Accounts/{sid}/Messages.json   (form: To, From, Body)
    Default:  simulation gateway for development.

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATE
═══════════════════════════════════════════════════════════════════════════

    🌩️ STORM ALERT
    Hail detected near 123 Main St, Dallas, TX
    Size: 1.75" | Distance: 2.0 mi | Date: 2024-05-14
    View details in app
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

import httpx

from stormwatch.app.alerts.channels.base import AlertMessage, GatewayReceipt
from stormwatch.app.alerts.models import Channel, ChannelResult, EventType, SendStatus
from stormwatch.app.alerts.rate_limiter import RateLimiter
from stormwatch.app.core.config import Settings, settings
from stormwatch.app.core.errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")

# E.164 allows at most 15 digits after the '+'
_E164_MIN_DIGITS = 8
_E164_MAX_DIGITS = 15


# ═══════════════════════════════════════════════════════════════════════════
# Formatting
# ═══════════════════════════════════════════════════════════════════════════

def normalize_phone(raw: Optional[str], default_country_code: str = "1") -> str:
    """
    Canonicalize a phone number to E.164.

    Rules:
        "+44 20 7946 0958"  → "+442079460958"   (explicit country code kept)
        "(214) 555-0100"    → "+12145550100"    (10 digits → default country)
        "1-214-555-0100"    → "+12145550100"    (11 digits with country prefix)

    Raises ValidationError for anything else.
    """
    if not raw or not raw.strip():
        raise ValidationError("Phone number is required", field="phone_number")

    text = raw.strip()
    digits = _NON_DIGITS.sub("", text)

    if text.startswith("+"):
        if _E164_MIN_DIGITS <= len(digits) <= _E164_MAX_DIGITS:
            return f"+{digits}"
    elif len(digits) == 10:
        return f"+{default_country_code}{digits}"
    elif len(digits) == 10 + len(default_country_code) and digits.startswith(default_country_code):
        return f"+{digits}"

    raise ValidationError(
        f"Invalid phone number format: {raw}",
        field="phone_number",
    )


def format_storm_alert(message: AlertMessage) -> str:
    """Render the SMS body for one impact alert."""
    if message.event_type == EventType.HAIL:
        headline = "Hail"
        detail = f'Size: {message.hail_size_inches:.2f}"' if message.hail_size_inches is not None else "Size: n/a"
    elif message.event_type == EventType.WIND:
        headline = "High wind"
        detail = f"Speed: {message.wind_speed_mph:.0f} mph" if message.wind_speed_mph is not None else "Speed: n/a"
    else:
        headline = "Tornado"
        detail = "Tornado activity"

    return (
        "🌩️ STORM ALERT\n"
        f"{headline} detected near {message.address}\n"
        f"{detail} | Distance: {message.distance_miles:.1f} mi | "
        f"Date: {message.storm_date.isoformat()}\n"
        "View details in app"
    )


# ═══════════════════════════════════════════════════════════════════════════
# Gateways
# ═══════════════════════════════════════════════════════════════════════════

class SimulatedSmsGateway:
    """Logs and records messages instead of sending them."""

    name = "simulation"

    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    def is_configured(self) -> bool:
        return True

    def status(self) -> Dict[str, Any]:
        return {"provider": self.name, "configured": True, "messages_sent": len(self.sent)}

    async def send_sms(self, to: str, body: str) -> GatewayReceipt:
        message_id = f"SIM{uuid.uuid4().hex[:24]}"
        self.sent.append({"to": to, "body": body, "message_id": message_id})
        logger.info("[SMS] → %s: %d chars (%s)", to, len(body), message_id)
        return GatewayReceipt(provider=self.name, message_id=message_id)

    async def close(self) -> None:
        return None


class TwilioSmsGateway:
    """
    Twilio Programmable Messaging over httpx.

    One request per message, no retry: a failed send is recorded on the
    alert and re-sent only on explicit request.
    """

    name = "twilio"

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        *,
        base_url: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = client

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def status(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "configured": self.is_configured(),
            "from_number": self.from_number,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send_sms(self, to: str, body: str) -> GatewayReceipt:
        if not self.is_configured():
            raise ExternalServiceError(self.name, "gateway not configured")

        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            client = await self._get_client()
            response = await client.post(
                url,
                data={"To": to, "From": self.from_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                self.name,
                f"HTTP {e.response.status_code}: {_twilio_error_message(e.response)}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.name, f"{type(e).__name__}: {e}") from e

        data = response.json()
        message_id = data.get("sid")
        if not message_id:
            raise ExternalServiceError(self.name, "response carried no message sid")
        return GatewayReceipt(provider=self.name, message_id=message_id, raw=data)


def _twilio_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    message = payload.get("message") or response.reason_phrase
    code = payload.get("code")
    return f"{message} (code {code})" if code else message


def build_sms_gateway(config: Settings = settings):
    """Gateway for the configured SMS_PROVIDER."""
    if config.SMS_PROVIDER == "twilio":
        return TwilioSmsGateway(
            config.TWILIO_ACCOUNT_SID,
            config.TWILIO_AUTH_TOKEN,
            config.TWILIO_PHONE_NUMBER,
            base_url=config.TWILIO_API_BASE_URL,
            timeout_seconds=config.SMS_TIMEOUT_SECONDS,
        )
    return SimulatedSmsGateway()


# ═══════════════════════════════════════════════════════════════════════════
# Sender
# ═══════════════════════════════════════════════════════════════════════════

class SmsChannel:
    """SMS sender: validate → rate-limit → reserve → gateway → log."""

    channel = Channel.SMS

    def __init__(
        self,
        gateway,
        rate_limiter: RateLimiter,
        *,
        default_country_code: Optional[str] = None,
    ):
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.default_country_code = default_country_code or settings.SMS_DEFAULT_COUNTRY_CODE

    async def send(self, alert_id: str, recipient: Optional[str], message: AlertMessage) -> ChannelResult:
        try:
            phone = normalize_phone(recipient, self.default_country_code)
        except ValidationError as exc:
            logger.warning(
                "[SMS] Alert %s: %s", alert_id, exc.message,
                extra={"alert_id": alert_id, "channel": "sms"},
            )
            return ChannelResult(alert_id, Channel.SMS, SendStatus.INVALID, error=exc.message)

        if await self.rate_limiter.is_rate_limited(phone, message.property_id):
            return self._skipped(alert_id, phone, message)

        body = format_storm_alert(message)
        slot = await self.rate_limiter.acquire(
            phone, message.property_id,
            alert_id=alert_id, rep_id=message.rep_id, body=body,
        )
        if not slot.allowed:
            return self._skipped(alert_id, phone, message)

        log_fields = dict(
            phone_number=phone,
            property_id=message.property_id,
            alert_id=alert_id,
            rep_id=message.rep_id,
            body=body,
        )
        try:
            receipt = await self.gateway.send_sms(phone, body)
        except ExternalServiceError as exc:
            logger.warning(
                "[SMS] Alert %s → %s failed: %s", alert_id, phone, exc.message,
                extra={"alert_id": alert_id, "channel": "sms"},
            )
            await self.rate_limiter.record_send(slot, error=exc.message, **log_fields)
            return ChannelResult(alert_id, Channel.SMS, SendStatus.FAILED, error=exc.message)
        except Exception as exc:
            logger.exception("[SMS] Alert %s → %s gateway error", alert_id, phone)
            error = f"{type(exc).__name__}: {exc}"
            await self.rate_limiter.record_send(slot, error=error, **log_fields)
            return ChannelResult(alert_id, Channel.SMS, SendStatus.FAILED, error=error)

        try:
            await self.rate_limiter.record_send(slot, message_id=receipt.message_id, **log_fields)
        except Exception as exc:
            # delivered; the 'sending' row still holds the slot for the window
            logger.error(
                "[SMS] Alert %s → %s delivered (%s) but the send log was not updated: %s",
                alert_id, phone, receipt.message_id, exc,
                extra={"alert_id": alert_id, "channel": "sms"},
            )
        logger.info(
            "[SMS] Alert %s → %s sent (%s)", alert_id, phone, receipt.message_id,
            extra={"alert_id": alert_id, "channel": "sms"},
        )
        return ChannelResult(
            alert_id, Channel.SMS, SendStatus.SENT, provider_message_id=receipt.message_id,
        )

    def _skipped(self, alert_id: str, phone: str, message: AlertMessage) -> ChannelResult:
        logger.info(
            "[SMS] Alert %s → %s skipped: rate limited for property %s",
            alert_id, phone, message.property_id,
            extra={"alert_id": alert_id, "property_id": message.property_id, "channel": "sms"},
        )
        return ChannelResult(alert_id, Channel.SMS, SendStatus.SKIPPED, error="rate limited")


async def send_test_sms(gateway, phone_number: str, *, default_country_code: str = "1") -> Dict[str, Any]:
    """Send a fixed test message to check gateway configuration."""
    try:
        phone = normalize_phone(phone_number, default_country_code)
    except ValidationError as exc:
        return {"success": False, "error": exc.message}
    try:
        receipt = await gateway.send_sms(
            phone, "StormWatch test message. SMS alerts are configured correctly.",
        )
    except ExternalServiceError as exc:
        logger.warning("[SMS] Test message to %s failed: %s", phone, exc.message)
        return {"success": False, "phone_number": phone, "error": exc.message}
    return {"success": True, "phone_number": phone, "message_id": receipt.message_id}
