"""
service.py — Explicit wiring of the impact pipeline.

Nothing here is a module-level singleton: the host (FastAPI lifespan,
a scheduler job, a test) builds one ImpactServices from a session
factory and hands it around.

    store ─┬─ ledger ─┬─ dispatcher ── orchestrator
           └─ limiter ┘      │
                          senders ── gateways
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stormwatch.app.alerts.channels.email_alert import EmailChannel, build_email_gateway
from stormwatch.app.alerts.channels.sms_gateway import SmsChannel, build_sms_gateway
from stormwatch.app.alerts.channels.web_push import PushChannel, build_push_gateway
from stormwatch.app.alerts.dispatcher import ChannelDispatcher
from stormwatch.app.alerts.ledger import AlertLedger
from stormwatch.app.alerts.models import Channel
from stormwatch.app.alerts.monitoring import MonitoringOrchestrator
from stormwatch.app.alerts.orm import utcnow
from stormwatch.app.alerts.rate_limiter import RateLimiter
from stormwatch.app.alerts.store import ImpactStore
from stormwatch.app.core.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass
class ImpactServices:
    store: ImpactStore
    ledger: AlertLedger
    rate_limiter: RateLimiter
    dispatcher: ChannelDispatcher
    orchestrator: MonitoringOrchestrator
    sms_gateway: Any
    email_gateway: Any
    push_gateway: Any

    def gateway_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            "sms": self.sms_gateway.status(),
            "email": self.email_gateway.status(),
            "push": self.push_gateway.status(),
        }

    async def close(self) -> None:
        for gateway in (self.sms_gateway, self.email_gateway, self.push_gateway):
            await gateway.close()


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    config: Settings = settings,
    sms_gateway=None,
    email_gateway=None,
    push_gateway=None,
    clock: Callable[[], datetime] = utcnow,
    send_interval: Optional[float] = None,
) -> ImpactServices:
    """Build the pipeline; gateways default to the configured providers."""
    sms_gateway = sms_gateway or build_sms_gateway(config)
    email_gateway = email_gateway or build_email_gateway(config)
    push_gateway = push_gateway or build_push_gateway(config)

    store = ImpactStore(session_factory, clock=clock)
    ledger = AlertLedger(store)
    rate_limiter = RateLimiter(store, window_minutes=config.SMS_RATE_LIMIT_WINDOW_MINUTES)
    dispatcher = ChannelDispatcher(store, ledger, {
        Channel.SMS: SmsChannel(
            sms_gateway, rate_limiter,
            default_country_code=config.SMS_DEFAULT_COUNTRY_CODE,
        ),
        Channel.EMAIL: EmailChannel(email_gateway),
        Channel.PUSH: PushChannel(push_gateway),
    })
    orchestrator = MonitoringOrchestrator(
        store, ledger, dispatcher,
        send_interval=config.SMS_SEND_INTERVAL_SECONDS if send_interval is None else send_interval,
    )

    logger.info(
        "Impact pipeline ready (sms=%s, email=%s, push=%s)",
        sms_gateway.name, email_gateway.name, push_gateway.name,
    )
    return ImpactServices(
        store=store,
        ledger=ledger,
        rate_limiter=rate_limiter,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        sms_gateway=sms_gateway,
        email_gateway=email_gateway,
        push_gateway=push_gateway,
    )
