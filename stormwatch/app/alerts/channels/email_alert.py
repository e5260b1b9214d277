"""
email_alert.py — Email alert delivery channel.

Delivery mechanism:
    • SMTP (STARTTLS) with a plain-text + HTML multipart message
    • Runs the blocking smtplib session in a worker thread
    • No rate-limit gate; email carries no per-message carrier cost

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: 🚨 [SEVERE] Storm impact: Hail near 123 Main St
    Body:
        ┌─────────────────────────────────────────┐
        │  STORM IMPACT — HAIL                     │
        │  Severity: SEVERE                        │
        ├─────────────────────────────────────────┤
        │  Customer / address                      │
        │  Hail 1.75" at 2.0 mi on 2024-05-14      │
        │  [View alert]                            │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import logging
import re
import smtplib
import uuid
from email.message import EmailMessage
from email.utils import make_msgid
from html import escape
from typing import Any, Dict, List, Optional

from stormwatch.app.alerts.channels.base import AlertMessage, GatewayReceipt
from stormwatch.app.alerts.models import Channel, ChannelResult, SendStatus
from stormwatch.app.core.config import Settings, settings
from stormwatch.app.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Severity → emoji for the subject line
_SEVERITY_ICONS = {
    1: "ℹ️",   # MINOR
    2: "⚠️",   # MODERATE
    3: "🚨",   # SEVERE
    4: "🆘",   # CRITICAL
}

_SEVERITY_COLOURS = {
    1: "#4CAF50",
    2: "#FF9800",
    3: "#F44336",
    4: "#B71C1C",
}


def build_subject(message: AlertMessage) -> str:
    icon = _SEVERITY_ICONS.get(int(message.severity), "⚠️")
    hazard = message.event_type.value.capitalize()
    return f"{icon} [{message.severity.name}] Storm impact: {hazard} near {message.address}"


def build_plain_body(message: AlertMessage) -> str:
    return (
        f"STORM IMPACT — {message.event_type.value.upper()}\n"
        f"Severity: {message.severity.name}\n\n"
        f"Customer: {message.customer_name}\n"
        f"Address: {message.address}\n"
        f"{message.hazard_detail()} on {message.storm_date.isoformat()}\n\n"
        "Open the app to review and follow up.\n"
    )


def build_html_body(message: AlertMessage) -> str:
    colour = _SEVERITY_COLOURS.get(int(message.severity), "#FF9800")
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">STORM IMPACT — {message.event_type.value.upper()}</h2>
        <p style="margin:4px 0 0;">Severity: {message.severity.name}</p>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <h3>{escape(message.customer_name)}</h3>
        <p>{escape(message.address)}</p>
        <p><strong>{escape(message.hazard_detail())}</strong> on {message.storm_date.isoformat()}</p>
      </div>
    </div>
    """


# ═══════════════════════════════════════════════════════════════════════════
# Gateways
# ═══════════════════════════════════════════════════════════════════════════

class SimulatedEmailGateway:
    name = "simulation"

    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    def is_configured(self) -> bool:
        return True

    def status(self) -> Dict[str, Any]:
        return {"provider": self.name, "configured": True, "messages_sent": len(self.sent)}

    async def send_email(self, to: str, subject: str, text: str, html: str) -> GatewayReceipt:
        message_id = f"<sim-{uuid.uuid4().hex[:16]}@stormwatch.local>"
        self.sent.append({"to": to, "subject": subject, "message_id": message_id})
        logger.info("[EMAIL] → %s: Subject='%s'", to, subject)
        return GatewayReceipt(provider=self.name, message_id=message_id)

    async def close(self) -> None:
        return None


class SmtpEmailGateway:
    """Plain SMTP with STARTTLS, one connection per message."""

    name = "smtp"

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_address: str = "alerts@stormwatch.local",
        timeout_seconds: float = 20.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.timeout_seconds = timeout_seconds

    def is_configured(self) -> bool:
        return bool(self.host)

    def status(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "configured": self.is_configured(),
            "host": self.host,
            "from_address": self.from_address,
        }

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
            server.starttls()
            if self.username:
                server.login(self.username, self.password or "")
            server.send_message(msg)

    async def send_email(self, to: str, subject: str, text: str, html: str) -> GatewayReceipt:
        if not self.is_configured():
            raise ExternalServiceError(self.name, "SMTP host not configured")

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to
        msg["Message-ID"] = make_msgid(domain=self.from_address.split("@")[-1])
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ExternalServiceError(self.name, f"{type(e).__name__}: {e}") from e
        return GatewayReceipt(provider=self.name, message_id=msg["Message-ID"])

    async def close(self) -> None:
        return None


def build_email_gateway(config: Settings = settings):
    if config.EMAIL_PROVIDER == "smtp":
        return SmtpEmailGateway(
            config.SMTP_HOST,
            config.SMTP_PORT,
            username=config.SMTP_USER,
            password=config.SMTP_PASSWORD,
            from_address=config.EMAIL_FROM_ADDRESS,
        )
    return SimulatedEmailGateway()


# ═══════════════════════════════════════════════════════════════════════════
# Sender
# ═══════════════════════════════════════════════════════════════════════════

class EmailChannel:

    channel = Channel.EMAIL

    def __init__(self, gateway):
        self.gateway = gateway

    async def send(self, alert_id: str, recipient: Optional[str], message: AlertMessage) -> ChannelResult:
        address = (recipient or "").strip()
        if not _EMAIL_PATTERN.match(address):
            error = f"Invalid email address: {recipient}" if recipient else "No email address on file"
            logger.warning("[EMAIL] Alert %s: %s", alert_id, error, extra={"alert_id": alert_id, "channel": "email"})
            return ChannelResult(alert_id, Channel.EMAIL, SendStatus.INVALID, error=error)

        try:
            receipt = await self.gateway.send_email(
                address,
                build_subject(message),
                build_plain_body(message),
                build_html_body(message),
            )
        except ExternalServiceError as exc:
            logger.warning("[EMAIL] Alert %s → %s failed: %s", alert_id, address, exc.message)
            return ChannelResult(alert_id, Channel.EMAIL, SendStatus.FAILED, error=exc.message)

        logger.info(
            "[EMAIL] Alert %s → %s sent", alert_id, address,
            extra={"alert_id": alert_id, "channel": "email"},
        )
        return ChannelResult(
            alert_id, Channel.EMAIL, SendStatus.SENT, provider_message_id=receipt.message_id,
        )
