"""
dispatcher.py — Route one alert to one channel and record the outcome.

    dispatch(alert, channel)
        │
        ├─ resolve recipient from the owning rep's contact record
        ├─ build AlertMessage from the alert + property
        └─ send(alert_id, channel, recipient, message)
              │
              ├─ channel sender  → ChannelResult
              └─ ledger          SENT    → record_delivery (pending → sent)
                                 FAILED  → record_failure (reason kept on alert)
                                 INVALID → record_failure
                                 SKIPPED → nothing persisted on the alert

Automatic dispatch happens once per (alert, channel), driven by the
orchestrator for newly created alerts. resend() is the explicit manual
path and goes through the same gates, rate limiter included.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from stormwatch.app.alerts.channels.base import AlertMessage
from stormwatch.app.alerts.ledger import AlertLedger
from stormwatch.app.alerts.models import (
    Channel,
    ChannelResult,
    SendStatus,
    channel_for_preference,
)
from stormwatch.app.alerts.orm import ImpactAlertRecord, RepContactRecord
from stormwatch.app.alerts.store import ImpactStore
from stormwatch.app.core.errors import NotFoundError, StoreUnavailableError, ValidationError

logger = logging.getLogger(__name__)


def _recipient_for(channel: Channel, rep: Optional[RepContactRecord]) -> Optional[str]:
    if rep is None:
        return None
    if channel == Channel.SMS:
        return rep.phone_number
    if channel == Channel.EMAIL:
        return rep.email
    return rep.push_token


class ChannelDispatcher:
    """
    Parameters
    ----------
    store : ImpactStore
    ledger : AlertLedger
    senders : mapping of Channel → sender
        Each sender exposes ``await send(alert_id, recipient, message)``.
    """

    def __init__(self, store: ImpactStore, ledger: AlertLedger, senders: Mapping[Channel, object]):
        self.store = store
        self.ledger = ledger
        self.senders = dict(senders)

    async def send(
        self,
        alert_id: str,
        channel: Channel,
        recipient: Optional[str],
        message: AlertMessage,
    ) -> ChannelResult:
        sender = self.senders.get(channel)
        if sender is None:
            result = ChannelResult(
                alert_id, channel, SendStatus.FAILED,
                error=f"No sender configured for channel '{channel.value}'",
            )
        elif not recipient:
            result = ChannelResult(
                alert_id, channel, SendStatus.INVALID,
                error=f"No {channel.value} recipient on file for rep {message.rep_id}",
            )
        else:
            try:
                result = await sender.send(alert_id, recipient, message)
            except StoreUnavailableError:
                raise
            except Exception as exc:
                logger.exception("Sender %s crashed for alert %s", channel.value, alert_id)
                result = ChannelResult(
                    alert_id, channel, SendStatus.FAILED, error=f"{type(exc).__name__}: {exc}",
                )

        if result.status == SendStatus.SENT:
            await self.ledger.record_delivery(alert_id, channel, result.provider_message_id)
        elif result.status in (SendStatus.FAILED, SendStatus.INVALID):
            await self.ledger.record_failure(alert_id, channel, result.error or result.status.value)
        return result

    async def dispatch(
        self,
        alert: ImpactAlertRecord,
        channel: Channel,
    ) -> Optional[ChannelResult]:
        """
        Send one alert over one channel to its owning rep.

        Returns None when the rep has switched SMS alerts off; nothing is
        attempted or recorded then.
        """
        prop = await self.store.get_property(alert.customer_property_id)
        if prop is None:
            raise NotFoundError("CustomerProperty", id=alert.customer_property_id)
        rep = await self.store.get_rep_contact(alert.rep_id)

        if channel == Channel.SMS and rep is not None and not rep.sms_alerts_enabled:
            logger.info(
                "SMS alerts disabled for rep %s; alert %s not sent", alert.rep_id, alert.id,
                extra={"alert_id": alert.id, "rep_id": alert.rep_id},
            )
            return None

        message = AlertMessage.from_records(alert, prop)
        return await self.send(alert.id, channel, _recipient_for(channel, rep), message)

    async def resend(self, alert_id: str, channel: Optional[Channel] = None) -> ChannelResult:
        """
        Manual re-send. Defaults to the property's preferred channel.

        Raises NotFoundError for an unknown alert and ValidationError when
        no channel can be chosen or the rep has SMS switched off.
        """
        alert = await self.ledger.get_alert(alert_id)
        if channel is None:
            prop = await self.store.get_property(alert.customer_property_id)
            channel = channel_for_preference(prop.preferred_contact_method if prop else None)
            if channel is None:
                raise ValidationError("No channel given and no usable contact preference", field="channel")

        logger.info(
            "Manual re-send of alert %s over %s", alert_id, channel.value,
            extra={"alert_id": alert_id, "channel": channel.value},
        )
        result = await self.dispatch(alert, channel)
        if result is None:
            raise ValidationError("SMS alerts are disabled for this rep", field="channel")
        return result
