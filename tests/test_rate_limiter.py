"""
test_rate_limiter.py — One SMS per (phone, property) per rolling window.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from stormwatch.app.alerts.rate_limiter import RateLimiter, SendSlot
from stormwatch.app.core.errors import StoreUnavailableError

PHONE = "+12145550100"


async def _seed(store, **overrides):
    fields = dict(
        rep_id="rep-1",
        customer_name="Dana Whitfield",
        address="123 Main St, Dallas, TX",
        latitude=32.8057,
        longitude=-96.7970,
    )
    fields.update(overrides)
    return await store.add_property(**fields)


async def _send(limiter: RateLimiter, property_id: str, *, phone: str = PHONE, ok: bool = True) -> SendSlot:
    slot = await limiter.acquire(phone, property_id, rep_id="rep-1", body="STORM ALERT")
    if slot.allowed:
        await limiter.record_send(
            slot,
            phone_number=phone,
            property_id=property_id,
            alert_id=None,
            rep_id="rep-1",
            body="STORM ALERT",
            message_id="SM1" if ok else None,
            error=None if ok else "HTTP 503",
        )
    return slot


class _BrokenStore:
    def now(self):
        return datetime(2024, 5, 14, tzinfo=timezone.utc)

    async def count_recent_sms(self, *args, **kwargs):
        raise StoreUnavailableError("count_recent_sms", "connection refused")

    async def reserve_sms_slot(self, **kwargs):
        raise StoreUnavailableError("reserve_sms_slot", "connection refused")


class TestIsRateLimited:

    def test_fresh_pair_not_limited(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed(svc.store)
                return await svc.rate_limiter.is_rate_limited(PHONE, prop.id)

        assert asyncio.run(scenario()) is False

    def test_limited_after_successful_send(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed(svc.store)
                await _send(svc.rate_limiter, prop.id)
                return await svc.rate_limiter.is_rate_limited(PHONE, prop.id)

        assert asyncio.run(scenario()) is True

    def test_scope_is_phone_and_property(self, open_services):
        async def scenario():
            async with open_services() as svc:
                first = await _seed(svc.store)
                second = await _seed(svc.store, address="9 Elm St")
                await _send(svc.rate_limiter, first.id)
                return (
                    await svc.rate_limiter.is_rate_limited(PHONE, second.id),
                    await svc.rate_limiter.is_rate_limited("+12145550199", first.id),
                )

        other_property, other_phone = asyncio.run(scenario())
        assert other_property is False
        assert other_phone is False

    def test_window_expires(self, open_services, clock):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed(svc.store)
                await _send(svc.rate_limiter, prop.id)
                clock.advance(minutes=59)
                inside = await svc.rate_limiter.is_rate_limited(PHONE, prop.id)
                clock.advance(minutes=2)
                outside = await svc.rate_limiter.is_rate_limited(PHONE, prop.id)
                return inside, outside

        inside, outside = asyncio.run(scenario())
        assert inside is True
        assert outside is False

    def test_failed_send_does_not_count(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed(svc.store)
                await _send(svc.rate_limiter, prop.id, ok=False)
                return await svc.rate_limiter.is_rate_limited(PHONE, prop.id)

        assert asyncio.run(scenario()) is False

    def test_fails_open_when_store_down(self):
        limiter = RateLimiter(_BrokenStore(), window_minutes=60)
        assert asyncio.run(limiter.is_rate_limited(PHONE, "prop-1")) is False


class TestAcquire:

    def test_second_claim_in_window_refused(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed(svc.store)
                first = await svc.rate_limiter.acquire(PHONE, prop.id)
                second = await svc.rate_limiter.acquire(PHONE, prop.id)
                return first, second

        first, second = asyncio.run(scenario())
        assert first.allowed is True
        assert first.reservation_id is not None
        assert second.allowed is False

    def test_slot_reopens_after_failed_send(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed(svc.store)
                await _send(svc.rate_limiter, prop.id, ok=False)
                return await svc.rate_limiter.acquire(PHONE, prop.id)

        assert asyncio.run(scenario()).allowed is True

    def test_at_most_one_success_per_window(self, open_services, clock):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed(svc.store)
                outcomes = []
                for _ in range(5):
                    outcomes.append((await _send(svc.rate_limiter, prop.id)).allowed)
                    clock.advance(minutes=25)
                return outcomes

        # attempts at 0, 25, 50, 75, 100 min against a 60 min window
        assert asyncio.run(scenario()) == [True, False, False, True, False]

    def test_fails_open_without_reservation(self):
        limiter = RateLimiter(_BrokenStore(), window_minutes=60)
        slot = asyncio.run(limiter.acquire(PHONE, "prop-1"))
        assert slot.allowed is True
        assert slot.reservation_id is None


class TestConcurrentCallers:

    def test_one_of_many_concurrent_claims_wins(self, open_services):
        async def scenario():
            async with open_services() as svc:
                prop = await _seed(svc.store)
                slots = await asyncio.gather(*[
                    svc.rate_limiter.acquire(PHONE, prop.id, rep_id="rep-1", body="STORM ALERT")
                    for _ in range(5)
                ])
                in_flight = await svc.store.count_recent_sms(
                    PHONE, prop.id, svc.store.now() - svc.rate_limiter.window,
                    statuses=("sending",),
                )
                return slots, in_flight

        slots, in_flight = asyncio.run(scenario())
        assert [slot.allowed for slot in slots].count(True) == 1
        assert in_flight == 1

    def test_concurrent_claims_for_different_properties_all_win(self, open_services):
        async def scenario():
            async with open_services() as svc:
                props = [await _seed(svc.store, address=f"{n} Main St") for n in range(3)]
                return await asyncio.gather(*[
                    svc.rate_limiter.acquire(PHONE, prop.id) for prop in props
                ])

        assert all(slot.allowed for slot in asyncio.run(scenario()))
