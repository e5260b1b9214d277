"""
test_dispatcher.py — Routing alerts to channels and recording outcomes.
"""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from stormwatch.app.alerts.models import (
    Channel,
    EventType,
    ImpactedProperty,
    SendStatus,
    Severity,
    StormEvent,
)
from stormwatch.app.core.errors import StoreUnavailableError, ValidationError


async def _make_alert(svc, **property_overrides):
    fields = dict(
        rep_id="rep-1",
        customer_name="Dana Whitfield",
        address="123 Main St, Dallas, TX",
        latitude=32.8057,
        longitude=-96.7970,
    )
    fields.update(property_overrides)
    prop = await svc.store.add_property(**fields)
    event = StormEvent(
        latitude=32.7767,
        longitude=-96.7970,
        event_type=EventType.HAIL,
        storm_date=date(2024, 5, 14),
        hail_size_inches=1.75,
        source_event_id="NOAA-5521",
    )
    hit = ImpactedProperty(
        property_id=prop.id,
        rep_id=prop.rep_id,
        distance_miles=2.0,
        customer_name=prop.customer_name,
        address=prop.address,
    )
    alert, _ = await svc.ledger.create_alert(hit, event, Severity.SEVERE)
    return alert


class TestDispatch:

    def test_sms_delivery_recorded_on_alert(self, open_services, sms_gateway):
        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", phone_number="(214) 555-0100")
                alert = await _make_alert(svc)
                result = await svc.dispatcher.dispatch(alert, Channel.SMS)
                return result, await svc.ledger.get_alert(alert.id)

        result, alert = asyncio.run(scenario())
        assert result.status == SendStatus.SENT
        assert alert.status == "sent"
        assert alert.sms_sent is True
        assert alert.sms_message_sid == sms_gateway.sent[0]["message_id"]
        assert "Hail detected near 123 Main St" in sms_gateway.sent[0]["body"]

    def test_sms_delivery_recorded_when_send_log_fails(self, open_services, sms_gateway):
        async def broken_log_sms(**kwargs):
            raise RuntimeError("constraint violation on sms_notifications")

        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", phone_number="(214) 555-0100")
                alert = await _make_alert(svc)
                svc.store.log_sms = broken_log_sms
                result = await svc.dispatcher.dispatch(alert, Channel.SMS)
                return result, await svc.ledger.get_alert(alert.id)

        result, alert = asyncio.run(scenario())
        assert result.status == SendStatus.SENT
        assert alert.status == "sent"
        assert alert.sms_sent is True
        assert alert.sms_error is None

    def test_missing_rep_contact_is_invalid(self, open_services, sms_gateway):
        async def scenario():
            async with open_services() as svc:
                alert = await _make_alert(svc)
                result = await svc.dispatcher.dispatch(alert, Channel.SMS)
                return result, await svc.ledger.get_alert(alert.id)

        result, alert = asyncio.run(scenario())
        assert result.status == SendStatus.INVALID
        assert result.error == "No sms recipient on file for rep rep-1"
        assert alert.status == "pending"
        assert alert.sms_error == result.error
        assert sms_gateway.sent == []

    def test_sms_disabled_returns_none(self, open_services, sms_gateway):
        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact(
                    "rep-1", phone_number="(214) 555-0100", sms_alerts_enabled=False,
                )
                alert = await _make_alert(svc)
                result = await svc.dispatcher.dispatch(alert, Channel.SMS)
                return result, await svc.ledger.get_alert(alert.id)

        result, alert = asyncio.run(scenario())
        assert result is None
        assert alert.sms_error is None
        assert sms_gateway.sent == []

    def test_email_channel(self, open_services):
        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", email="rep@example.com")
                alert = await _make_alert(svc)
                result = await svc.dispatcher.dispatch(alert, Channel.EMAIL)
                return result, await svc.ledger.get_alert(alert.id), svc.email_gateway.sent

        result, alert, sent = asyncio.run(scenario())
        assert result.status == SendStatus.SENT
        assert alert.email_sent is True
        assert sent[0]["to"] == "rep@example.com"

    def test_gateway_failure_recorded(self, open_services, sms_gateway):
        sms_gateway.fail_numbers.add("+12145550100")

        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", phone_number="2145550100")
                alert = await _make_alert(svc)
                result = await svc.dispatcher.dispatch(alert, Channel.SMS)
                return result, await svc.ledger.get_alert(alert.id)

        result, alert = asyncio.run(scenario())
        assert result.status == SendStatus.FAILED
        assert alert.status == "pending"
        assert alert.sms_sent is False
        assert "HTTP 503" in alert.sms_error

    def test_sender_crash_becomes_failed(self, open_services):
        class Crashing:
            async def send(self, alert_id, recipient, message):
                raise KeyError("template")

        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", push_token="tok-1")
                svc.dispatcher.senders[Channel.PUSH] = Crashing()
                alert = await _make_alert(svc)
                return await svc.dispatcher.dispatch(alert, Channel.PUSH)

        result = asyncio.run(scenario())
        assert result.status == SendStatus.FAILED
        assert result.error.startswith("KeyError")

    def test_store_outage_propagates(self, open_services):
        class StoreDown:
            async def send(self, alert_id, recipient, message):
                raise StoreUnavailableError("reserve_sms_slot", "connection refused")

        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", phone_number="2145550100")
                svc.dispatcher.senders[Channel.SMS] = StoreDown()
                alert = await _make_alert(svc)
                await svc.dispatcher.dispatch(alert, Channel.SMS)

        with pytest.raises(StoreUnavailableError):
            asyncio.run(scenario())


class TestResend:

    def test_defaults_to_preferred_channel(self, open_services, sms_gateway):
        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", phone_number="2145550100")
                alert = await _make_alert(svc)
                return await svc.dispatcher.resend(alert.id)

        result = asyncio.run(scenario())
        assert result.channel == Channel.SMS
        assert result.status == SendStatus.SENT
        assert len(sms_gateway.sent) == 1

    def test_resend_within_window_is_rate_limited(self, open_services, sms_gateway):
        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", phone_number="2145550100")
                alert = await _make_alert(svc)
                await svc.dispatcher.dispatch(alert, Channel.SMS)
                return await svc.dispatcher.resend(alert.id, Channel.SMS)

        result = asyncio.run(scenario())
        assert result.status == SendStatus.SKIPPED
        assert len(sms_gateway.sent) == 1

    def test_explicit_channel_overrides_preference(self, open_services):
        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact("rep-1", push_token="tok-1")
                alert = await _make_alert(svc)
                return await svc.dispatcher.resend(alert.id, Channel.PUSH)

        assert asyncio.run(scenario()).status == SendStatus.SENT

    def test_no_usable_preference(self, open_services):
        async def scenario():
            async with open_services() as svc:
                alert = await _make_alert(svc, preferred_contact_method="fax")
                await svc.dispatcher.resend(alert.id)

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def test_sms_disabled(self, open_services):
        async def scenario():
            async with open_services() as svc:
                await svc.store.upsert_rep_contact(
                    "rep-1", phone_number="2145550100", sms_alerts_enabled=False,
                )
                alert = await _make_alert(svc)
                await svc.dispatcher.resend(alert.id, Channel.SMS)

        with pytest.raises(ValidationError, match="disabled"):
            asyncio.run(scenario())
