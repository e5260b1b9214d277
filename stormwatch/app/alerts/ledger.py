"""
ledger.py — The ImpactAlert ledger: creation, lifecycle, rep-facing reads.

The ledger is the single source of truth for "has this property already
been alerted for this storm event". Alerts are never deleted; every
matched (property, event) pair ends in a persisted row whether or not a
message went out.

Transitions
-----------
    create_alert          → pending        (idempotent per property + event)
    record_delivery       pending → sent   (dispatcher, first channel success)
    update_status         any state        (rep action, recorded as given)
    convert               → converted      (job id + date written atomically)
    dismiss               → dismissed      (any time)
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Union

from stormwatch.app.alerts.models import (
    AlertOutcome,
    AlertStatus,
    Channel,
    ImpactedProperty,
    Severity,
    SeverityFacts,
    StormEvent,
)
from stormwatch.app.alerts.orm import ImpactAlertRecord
from stormwatch.app.alerts.store import ImpactStore
from stormwatch.app.core.config import settings
from stormwatch.app.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class AlertLedger:
    """Owns ImpactAlert rows and their state machine."""

    def __init__(self, store: ImpactStore):
        self.store = store

    # ── Creation ──

    async def create_alert(
        self,
        impacted: ImpactedProperty,
        event: StormEvent,
        severity: Severity,
    ) -> Tuple[ImpactAlertRecord, bool]:
        """
        Create the alert for (property, event) or return the existing one.

        Returns (alert, created). A duplicate is not an error.
        """
        facts = SeverityFacts(
            event_type=event.event_type,
            storm_date=event.storm_date,
            distance_miles=impacted.distance_miles,
            severity=severity,
            hail_size_inches=event.hail_size_inches,
            wind_speed_mph=event.wind_speed_mph,
            storm_event_id=event.source_event_id,
        )
        alert, created = await self.store.create_alert_if_absent(
            property_id=impacted.property_id,
            rep_id=impacted.rep_id,
            event_key=event.event_key,
            facts=facts,
        )
        if created:
            logger.info(
                "Alert %s created: %s %s at %.2f mi from property %s",
                alert.id, severity.label, event.event_type.value,
                impacted.distance_miles, impacted.property_id,
                extra={"alert_id": alert.id, "property_id": impacted.property_id,
                       "severity": severity.label},
            )
        else:
            logger.info(
                "Alert %s already exists for property %s / event %s",
                alert.id, impacted.property_id, event.event_key,
                extra={"alert_id": alert.id, "property_id": impacted.property_id},
            )
        return alert, created

    # ── Delivery bookkeeping ──

    async def record_delivery(
        self, alert_id: str, channel: Channel, message_id: Optional[str] = None,
    ) -> None:
        await self.store.mark_channel_sent(alert_id, channel, message_id=message_id)

    async def record_failure(self, alert_id: str, channel: Channel, reason: str) -> None:
        await self.store.mark_channel_failed(alert_id, channel, reason)

    # ── Rep-driven transitions ──

    async def get_alert(self, alert_id: str) -> ImpactAlertRecord:
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("ImpactAlert", id=alert_id)
        return alert

    async def update_status(
        self,
        alert_id: str,
        status: Union[AlertStatus, str],
        *,
        outcome: Optional[Union[AlertOutcome, str]] = None,
        contact_notes: Optional[str] = None,
        contact_method: Optional[str] = None,
    ) -> ImpactAlertRecord:
        """
        Record a status chosen by the rep. Ordering is not validated.

        converted must go through convert(), which requires a job id.
        """
        try:
            status = AlertStatus(status)
            outcome_value = AlertOutcome(outcome).value if outcome is not None else None
        except ValueError as exc:
            raise ValidationError(str(exc), field="status") from exc

        if status == AlertStatus.CONVERTED:
            raise ValidationError(
                "Converted alerts require a job id; use convert()",
                field="status",
            )
        if status == AlertStatus.NOT_PURSUED and outcome_value is None:
            outcome_value = AlertOutcome.NOT_PURSUED.value
        if status == AlertStatus.CONTACTED and outcome_value is None:
            outcome_value = AlertOutcome.CONTACTED.value

        alert = await self.store.set_alert_status(
            alert_id, status,
            outcome=outcome_value,
            contact_notes=contact_notes,
            contact_method=contact_method,
        )
        if alert is None:
            raise NotFoundError("ImpactAlert", id=alert_id)
        logger.info("Alert %s → %s", alert_id, status.value, extra={"alert_id": alert_id})
        return alert

    async def mark_viewed(self, alert_id: str) -> ImpactAlertRecord:
        return await self.update_status(alert_id, AlertStatus.VIEWED)

    async def dismiss(self, alert_id: str) -> ImpactAlertRecord:
        return await self.update_status(alert_id, AlertStatus.DISMISSED)

    async def convert(
        self,
        alert_id: str,
        job_id: str,
        conversion_date: Optional[date] = None,
    ) -> ImpactAlertRecord:
        if not job_id:
            raise ValidationError("job_id is required to convert an alert", field="job_id")
        alert = await self.store.convert_alert(
            alert_id, job_id, conversion_date or self.store.now().date(),
        )
        if alert is None:
            raise NotFoundError("ImpactAlert", id=alert_id)
        logger.info(
            "Alert %s converted to job %s", alert_id, job_id,
            extra={"alert_id": alert_id},
        )
        return alert

    # ── Reads for the rep-facing UI ──

    async def pending_alerts(self, rep_id: str) -> List[Dict[str, Any]]:
        rows = await self.store.pending_alerts(rep_id)
        return [
            {
                "alert": alert.to_dict(),
                "property": {
                    "id": prop.id,
                    "customer_name": prop.customer_name,
                    "customer_phone": prop.customer_phone,
                    "customer_email": prop.customer_email,
                    "address": prop.address,
                    "city": prop.city,
                    "state": prop.state,
                },
            }
            for alert, prop in rows
        ]

    async def impact_stats(self, rep_id: str, days_back: Optional[int] = None) -> Dict[str, Any]:
        days = days_back if days_back is not None else settings.IMPACT_STATS_DAYS
        stats = await self.store.impact_stats(rep_id, days)
        stats["days_back"] = days
        return stats
