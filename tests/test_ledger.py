"""
test_ledger.py — ImpactAlert creation and lifecycle.

Covers:
    • Idempotent creation (Scenario B) with and without a source id
    • Delivery bookkeeping (pending → sent only)
    • Rep status updates, convert, dismiss
    • Pending alerts and impact stats reads
"""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from stormwatch.app.alerts.models import (
    AlertStatus,
    Channel,
    EventType,
    ImpactedProperty,
    Severity,
    StormEvent,
)
from stormwatch.app.core.errors import NotFoundError, ValidationError


def _make_event(**overrides) -> StormEvent:
    fields = dict(
        latitude=32.7767,
        longitude=-96.7970,
        event_type=EventType.HAIL,
        storm_date=date(2024, 5, 14),
        hail_size_inches=1.75,
        source_event_id="NOAA-5521",
    )
    fields.update(overrides)
    return StormEvent(**fields)


async def _seed_property(store, **overrides):
    fields = dict(
        rep_id="rep-1",
        customer_name="Dana Whitfield",
        address="123 Main St, Dallas, TX",
        latitude=32.8057,
        longitude=-96.7970,
        lifetime_value=12500.0,
    )
    fields.update(overrides)
    return await store.add_property(**fields)


def _hit(prop, distance: float = 2.0) -> ImpactedProperty:
    return ImpactedProperty(
        property_id=prop.id,
        rep_id=prop.rep_id,
        distance_miles=distance,
        customer_name=prop.customer_name,
        address=prop.address,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateAlert:

    def test_creates_pending_alert_with_facts(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, created = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                return alert, created

        alert, created = asyncio.run(scenario())
        assert created is True
        assert alert.status == "pending"
        assert alert.alert_type == "hail"
        assert alert.alert_severity == "severe"
        assert alert.storm_event_id == "NOAA-5521"
        assert alert.hail_size_inches == 1.75
        assert alert.sms_sent is False

    def test_scenario_b_same_source_id_is_idempotent(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                first, created_first = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                second, created_second = await svc.ledger.create_alert(
                    _hit(prop, distance=2.5), _make_event(), Severity.MODERATE,
                )
                count = await svc.store.count_alerts(customer_property_id=prop.id)
                return first, created_first, second, created_second, count

        first, created_first, second, created_second, count = asyncio.run(scenario())
        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert second.alert_severity == "severe"
        assert second.storm_distance_miles == 2.0
        assert count == 1

    def test_event_without_source_id_deduplicates_by_fingerprint(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                event = _make_event(source_event_id=None)
                await svc.ledger.create_alert(_hit(prop), event, Severity.SEVERE)
                await svc.ledger.create_alert(_hit(prop), _make_event(source_event_id=None), Severity.SEVERE)
                return await svc.store.count_alerts(customer_property_id=prop.id)

        assert asyncio.run(scenario()) == 1

    def test_distinct_events_create_distinct_alerts(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                await svc.ledger.create_alert(
                    _hit(prop), _make_event(source_event_id="NOAA-5522"), Severity.SEVERE,
                )
                return await svc.store.count_alerts(customer_property_id=prop.id)

        assert asyncio.run(scenario()) == 2

    def test_concurrent_creates_yield_one_row(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                results = await asyncio.gather(*[
                    svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                    for _ in range(5)
                ])
                count = await svc.store.count_alerts(customer_property_id=prop.id)
                return results, count

        results, count = asyncio.run(scenario())
        assert count == 1
        assert [created for _, created in results].count(True) == 1
        assert len({alert.id for alert, _ in results}) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Delivery bookkeeping
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryRecording:

    def test_delivery_moves_pending_to_sent(self, open_services, clock):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                await svc.ledger.record_delivery(alert.id, Channel.SMS, "SM123")
                return await svc.ledger.get_alert(alert.id)

        alert = asyncio.run(scenario())
        assert alert.status == "sent"
        assert alert.sms_sent is True
        assert alert.sms_message_sid == "SM123"
        assert alert.sms_sent_at is not None

    def test_delivery_does_not_rewind_rep_status(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                await svc.ledger.mark_viewed(alert.id)
                await svc.ledger.record_delivery(alert.id, Channel.EMAIL, "<m1@x>")
                return await svc.ledger.get_alert(alert.id)

        alert = asyncio.run(scenario())
        assert alert.status == "viewed"
        assert alert.email_sent is True
        assert alert.email_message_id == "<m1@x>"

    def test_failure_keeps_alert_pending_with_reason(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                await svc.ledger.record_failure(alert.id, Channel.SMS, "Invalid phone number format: 555")
                return await svc.ledger.get_alert(alert.id)

        alert = asyncio.run(scenario())
        assert alert.status == "pending"
        assert alert.sms_sent is False
        assert alert.sms_error == "Invalid phone number format: 555"


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Rep-driven transitions
# ═══════════════════════════════════════════════════════════════════════════

class TestStatusUpdates:

    def test_contacted_sets_timestamp_and_outcome(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                return await svc.ledger.update_status(
                    alert.id, "contacted", contact_notes="Left voicemail", contact_method="phone",
                )

        alert = asyncio.run(scenario())
        assert alert.status == "contacted"
        assert alert.outcome == "contacted"
        assert alert.contacted_at is not None
        assert alert.contact_notes == "Left voicemail"

    def test_order_is_not_enforced(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                await svc.ledger.update_status(alert.id, AlertStatus.NOT_PURSUED)
                return await svc.ledger.update_status(alert.id, AlertStatus.VIEWED)

        alert = asyncio.run(scenario())
        assert alert.status == "viewed"
        assert alert.outcome == "not_pursued"
        assert alert.viewed_at is not None

    def test_converted_requires_convert(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                await svc.ledger.update_status(alert.id, "converted")

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def test_unknown_status_rejected(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                await svc.ledger.update_status(alert.id, "archived")

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def test_unknown_alert(self, open_services):
        async def scenario():
            async with open_services() as svc:
                await svc.ledger.dismiss("does-not-exist")

        with pytest.raises(NotFoundError):
            asyncio.run(scenario())

    def test_convert_writes_job_and_date(self, open_services, clock):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                alert, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                return await svc.ledger.convert(alert.id, "JOB-1001")

        alert = asyncio.run(scenario())
        assert alert.status == "converted"
        assert alert.outcome == "converted"
        assert alert.converted_job_id == "JOB-1001"
        assert alert.conversion_date == clock().date()
        assert alert.contacted_at is not None

    def test_convert_without_job_id(self, open_services):
        async def scenario():
            async with open_services() as svc:
                await svc.ledger.convert("anything", "")

        with pytest.raises(ValidationError):
            asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Reads
# ═══════════════════════════════════════════════════════════════════════════

class TestReads:

    def test_pending_alerts_only_open_states(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                other = await _seed_property(svc.store, rep_id="rep-2")
                keep, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                done, _ = await svc.ledger.create_alert(
                    _hit(prop), _make_event(source_event_id="E2"), Severity.SEVERE,
                )
                await svc.ledger.dismiss(done.id)
                await svc.ledger.create_alert(_hit(other), _make_event(), Severity.SEVERE)
                return keep.id, await svc.ledger.pending_alerts("rep-1")

        keep_id, pending = asyncio.run(scenario())
        assert [row["alert"]["id"] for row in pending] == [keep_id]
        assert pending[0]["property"]["address"] == "123 Main St, Dallas, TX"

    def test_impact_stats(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed_property(svc.store)
                await _seed_property(svc.store, lifetime_value=None)
                a1, _ = await svc.ledger.create_alert(_hit(prop), _make_event(), Severity.SEVERE)
                await svc.ledger.create_alert(_hit(prop), _make_event(source_event_id="E2"), Severity.MINOR)
                await svc.ledger.convert(a1.id, "JOB-7")
                return await svc.ledger.impact_stats("rep-1", 30)

        stats = asyncio.run(scenario())
        assert stats["total_properties"] == 2
        assert stats["total_alerts"] == 2
        assert stats["alerts_pending"] == 1
        assert stats["alerts_converted"] == 1
        assert stats["conversion_rate"] == 50.0
        assert stats["total_conversion_value"] == 12500.0
        assert stats["days_back"] == 30

    def test_impact_stats_empty(self, open_services):
        async def scenario():
            async with open_services() as svc:
                return await svc.ledger.impact_stats("nobody")

        stats = asyncio.run(scenario())
        assert stats["total_alerts"] == 0
        assert stats["conversion_rate"] == 0.0
        assert stats["days_back"] == 90
