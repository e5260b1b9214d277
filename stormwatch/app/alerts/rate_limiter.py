"""
rate_limiter.py — At most one SMS per (phone, property) per rolling window.

Scope is the exact pair: one phone may get one message per property per
window, so a rep watching two properties still hears about both, while
two near-simultaneous events at one property produce one text.

This is independent of alert de-duplication. The ledger stops duplicate
alert rows; the limiter stops duplicate messages across distinct alerts.

Failure policy: fail open. A limiter that cannot reach its log answers
"not limited" and logs the error, since a blocked alert is silently lost
while an extra text is merely annoying.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from stormwatch.app.alerts.store import ImpactStore
from stormwatch.app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendSlot:
    """Result of claiming a send slot."""
    allowed: bool
    reservation_id: Optional[str] = None


class RateLimiter:

    def __init__(self, store: ImpactStore, *, window_minutes: Optional[int] = None):
        self.store = store
        minutes = window_minutes if window_minutes is not None else settings.SMS_RATE_LIMIT_WINDOW_MINUTES
        self.window = timedelta(minutes=minutes)

    async def is_rate_limited(self, phone_number: str, property_id: str) -> bool:
        """True if a successful send to this phone for this property is inside the window."""
        since = self.store.now() - self.window
        try:
            recent = await self.store.count_recent_sms(phone_number, property_id, since)
        except Exception as exc:
            logger.error(
                "Rate limit check failed for %s / property %s, allowing send: %s",
                phone_number, property_id, exc,
                extra={"property_id": property_id},
            )
            return False
        return recent > 0

    async def acquire(
        self,
        phone_number: str,
        property_id: str,
        *,
        alert_id: Optional[str] = None,
        rep_id: Optional[str] = None,
        body: str = "",
    ) -> SendSlot:
        """
        Atomically claim the pair's slot before calling the gateway.

        A concurrent sender that got there first makes this return
        allowed=False. Store errors fail open with no reservation.
        """
        try:
            reservation_id = await self.store.reserve_sms_slot(
                phone_number=phone_number,
                property_id=property_id,
                alert_id=alert_id,
                rep_id=rep_id,
                body=body,
                window=self.window,
            )
        except Exception as exc:
            logger.error(
                "Rate limit reservation failed for %s / property %s, allowing send: %s",
                phone_number, property_id, exc,
                extra={"property_id": property_id},
            )
            return SendSlot(allowed=True)
        if reservation_id is None:
            return SendSlot(allowed=False)
        return SendSlot(allowed=True, reservation_id=reservation_id)

    async def record_send(
        self,
        slot: SendSlot,
        *,
        phone_number: str,
        property_id: str,
        alert_id: Optional[str],
        rep_id: Optional[str],
        body: str,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Close the reservation as sent or failed; failed sends free the slot."""
        await self.store.log_sms(
            notification_id=slot.reservation_id,
            phone_number=phone_number,
            property_id=property_id,
            alert_id=alert_id,
            rep_id=rep_id,
            body=body,
            message_sid=message_id,
            error=error,
        )
