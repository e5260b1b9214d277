"""
Shared fixtures for the impact pipeline tests.

Async code is driven with asyncio.run over an in-memory SQLite store;
each scenario opens and disposes its own engine inside one event loop.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import pytest

from stormwatch.app.alerts.channels.base import GatewayReceipt
from stormwatch.app.alerts.channels.email_alert import SimulatedEmailGateway
from stormwatch.app.alerts.channels.web_push import SimulatedPushGateway
from stormwatch.app.alerts.service import build_services
from stormwatch.app.core.database import build_engine, build_session_factory, init_models
from stormwatch.app.core.errors import ExternalServiceError


class FakeClock:
    """Deterministic UTC clock; advance() moves it forward."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 5, 14, 18, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeSmsGateway:
    """Records sends; numbers in fail_numbers raise like a gateway 5xx."""

    name = "fake"

    def __init__(self):
        self.sent: List[Dict[str, str]] = []
        self.fail_numbers: Set[str] = set()

    def is_configured(self) -> bool:
        return True

    def status(self) -> Dict[str, object]:
        return {"provider": self.name, "configured": True}

    async def send_sms(self, to: str, body: str) -> GatewayReceipt:
        if to in self.fail_numbers:
            raise ExternalServiceError(self.name, "HTTP 503: Service Unavailable")
        message_id = f"SM{len(self.sent) + 1:030d}"
        self.sent.append({"to": to, "body": body, "message_id": message_id})
        return GatewayReceipt(provider=self.name, message_id=message_id)

    async def close(self) -> None:
        return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sms_gateway() -> FakeSmsGateway:
    return FakeSmsGateway()


@pytest.fixture
def open_services(clock, sms_gateway):
    """
    Async context manager factory yielding ImpactServices on a fresh
    in-memory database. Send interval is zero unless overridden.
    """

    @asynccontextmanager
    async def _open(**overrides):
        engine = build_engine("sqlite+aiosqlite://")
        await init_models(engine)
        options = dict(
            sms_gateway=sms_gateway,
            email_gateway=SimulatedEmailGateway(),
            push_gateway=SimulatedPushGateway(),
            clock=clock,
            send_interval=0.0,
        )
        options.update(overrides)
        services = build_services(build_session_factory(engine), **options)
        try:
            yield services
        finally:
            await engine.dispose()

    return _open
