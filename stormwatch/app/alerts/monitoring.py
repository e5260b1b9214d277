"""
monitoring.py — Batch orchestrator: one monitoring run over a set of storm events.

This is the top-level pipeline:

    for each event (sequentially):
        1. Match properties inside the event's impact zone
        2. Score severity per matched property
        3. Create-or-fetch the ImpactAlert (idempotent)
        4. New alerts only: dispatch over the property's preferred channel

═══════════════════════════════════════════════════════════════════════════
RUN GUARANTEES
═══════════════════════════════════════════════════════════════════════════

    • A storm_monitoring_runs row is opened first and finalized last.
    • SMS attempts are spaced by at least send_interval seconds; alert
      creation is never throttled.
    • A failed send is counted and the run moves on.
    • A malformed feed record is counted as a failure and skipped.
    • Store unavailable (or any other unexpected error) finalizes the run
      with the error and re-raises. Alerts already committed stay.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Set, Union

from stormwatch.app.alerts.dispatcher import ChannelDispatcher
from stormwatch.app.alerts.ledger import AlertLedger
from stormwatch.app.alerts.models import (
    Channel,
    MonitoringSummary,
    StormEvent,
    channel_for_preference,
)
from stormwatch.app.alerts.proximity import find_impacted_properties
from stormwatch.app.alerts.severity import score_severity
from stormwatch.app.alerts.store import ImpactStore
from stormwatch.app.core.config import settings
from stormwatch.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

EventInput = Union[StormEvent, Mapping[str, Any]]


class MonitoringOrchestrator:
    """
    Runs the match → score → create → dispatch pipeline.

    Parameters
    ----------
    store : ImpactStore
    ledger : AlertLedger
    dispatcher : ChannelDispatcher
    send_interval : float
        Minimum seconds between consecutive SMS attempts in a run.
    sleep : coroutine function
        Injectable for tests; defaults to asyncio.sleep.
    """

    def __init__(
        self,
        store: ImpactStore,
        ledger: AlertLedger,
        dispatcher: ChannelDispatcher,
        *,
        send_interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.send_interval = (
            settings.SMS_SEND_INTERVAL_SECONDS if send_interval is None else send_interval
        )
        self._sleep = sleep
        self._last_sms_at: Optional[float] = None

    async def _throttle(self) -> None:
        """Enforce send_interval between SMS attempts."""
        if self._last_sms_at is not None and self.send_interval > 0:
            elapsed = time.monotonic() - self._last_sms_at
            if elapsed < self.send_interval:
                await self._sleep(self.send_interval - elapsed)
        self._last_sms_at = time.monotonic()

    async def run_monitoring(
        self,
        events: Iterable[EventInput],
        *,
        run_type: str = "scheduled",
    ) -> MonitoringSummary:
        """
        Process a batch of storm events.

        Parameters
        ----------
        events : iterable of StormEvent or feed dicts
        run_type : str
            Recorded on the run row ("scheduled", "manual", ...).

        Returns
        -------
        MonitoringSummary
        """
        run_id = await self.store.open_run(run_type)
        summary = MonitoringSummary(run_id=run_id, started_at=self.store.now())
        checked: Set[str] = set()
        self._last_sms_at = None

        with log_context(run_id=run_id):
            logger.info("Monitoring run %s started (%s)", run_id, run_type)
            try:
                for raw in events:
                    event = self._coerce_event(raw, summary)
                    if event is None:
                        continue
                    summary.events_processed += 1
                    await self._process_event(event, summary, checked)

                summary.properties_checked = len(checked)
                summary.completed_at = self.store.now()
                await self._finalize(summary, errors=self._failure_report(summary))

            except Exception as exc:
                summary.properties_checked = len(checked)
                summary.completed_at = self.store.now()
                logger.error("Monitoring run %s aborted: %s", run_id, exc)
                error = {"fatal": {"type": type(exc).__name__, "message": str(exc)}}
                failures = self._failure_report(summary)
                if failures:
                    error.update(failures)
                try:
                    await self._finalize(summary, errors=error)
                except Exception as finalize_exc:
                    logger.error("Could not finalize monitoring run %s: %s", run_id, finalize_exc)
                raise

        duration = (summary.completed_at - summary.started_at).total_seconds()
        logger.info(
            "Monitoring run %s complete: %d events, %d properties, %d new alerts, "
            "%d sent / %d failed / %d skipped, %.1fs",
            run_id, summary.events_processed, summary.properties_checked,
            summary.alerts_generated, summary.sent, summary.failed, summary.skipped, duration,
            extra={"run_id": run_id, "duration_ms": round(duration * 1000)},
        )
        return summary

    # ── Steps ──

    def _coerce_event(self, raw: EventInput, summary: MonitoringSummary) -> Optional[StormEvent]:
        if isinstance(raw, StormEvent):
            return raw
        try:
            return StormEvent.from_feed(raw)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Skipping malformed storm event %r: %s", raw, exc)
            summary.failures.append({"event": repr(raw)[:200], "error": str(exc)})
            return None

    async def _process_event(
        self,
        event: StormEvent,
        summary: MonitoringSummary,
        checked: Set[str],
    ) -> None:
        impacted = await find_impacted_properties(self.store, event)

        for hit in impacted:
            checked.add(hit.property_id)
            severity = score_severity(
                event.event_type,
                hit.distance_miles,
                hail_size_inches=event.hail_size_inches,
                wind_speed_mph=event.wind_speed_mph,
            )
            alert, created = await self.ledger.create_alert(hit, event, severity)
            if not created:
                summary.alerts_existing += 1
                continue
            summary.alerts_generated += 1

            channel = channel_for_preference(hit.preferred_channel)
            if channel is None:
                logger.info(
                    "Property %s has no dispatchable contact preference (%s)",
                    hit.property_id, hit.preferred_channel,
                    extra={"property_id": hit.property_id},
                )
                continue

            if channel == Channel.SMS:
                await self._throttle()
            result = await self.dispatcher.dispatch(alert, channel)
            if result is not None:
                summary.record(result)

    async def _finalize(self, summary: MonitoringSummary, *, errors) -> None:
        await self.store.finalize_run(
            summary.run_id,
            events_processed=summary.events_processed,
            properties_checked=summary.properties_checked,
            alerts_generated=summary.alerts_generated,
            messages_sent=summary.sent,
            messages_failed=summary.failed,
            messages_skipped=summary.skipped,
            errors=errors,
        )

    @staticmethod
    def _failure_report(summary: MonitoringSummary):
        if not summary.failures:
            return None
        return {"failures": summary.failures[:100], "failure_count": len(summary.failures)}
