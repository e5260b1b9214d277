"""
store.py — Property / alert persistence behind one explicit handle.

The store is the only shared mutable resource of the pipeline. Every
operation the pipeline needs to be race-free is a single conditional
statement or a short locked transaction here:

    create_alert_if_absent   INSERT ... ON CONFLICT DO NOTHING, then fetch
    mark_channel_sent        UPDATE ... SET status='sent' WHERE status='pending'
    reserve_sms_slot         INSERT 'sending' ... WHERE NOT EXISTS (lookback)

Connection-level failures surface as StoreUnavailableError so a
monitoring run can tell "store down" apart from a bad record.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, insert, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stormwatch.app.alerts.models import (
    OPEN_STATUSES,
    AlertStatus,
    Channel,
    EventType,
    SeverityFacts,
)
from stormwatch.app.alerts.orm import (
    CustomerPropertyRecord,
    ImpactAlertRecord,
    MonitoringRunRecord,
    RepContactRecord,
    SmsNotificationRecord,
    utcnow,
)
from stormwatch.app.core.config import settings
from stormwatch.app.core.errors import StoreUnavailableError
from stormwatch.app.spatial.radius_utils import Coordinate, bounding_box

logger = logging.getLogger(__name__)

# Columns a rep may change on an existing property
UPDATABLE_PROPERTY_FIELDS = frozenset({
    "customer_name", "customer_phone", "customer_email",
    "address", "street_address", "city", "state", "zip_code",
    "latitude", "longitude", "property_type", "roof_type", "roof_age_years",
    "relationship_status", "lifetime_value",
    "notify_on_hail", "notify_on_wind", "notify_on_tornado",
    "notify_threshold_hail_size", "notify_radius_miles",
    "preferred_contact_method", "do_not_contact", "notes", "is_active",
})

_OPT_IN_COLUMNS = {
    EventType.HAIL: CustomerPropertyRecord.notify_on_hail,
    EventType.WIND: CustomerPropertyRecord.notify_on_wind,
    EventType.TORNADO: CustomerPropertyRecord.notify_on_tornado,
}

# Box padding so boundary properties survive float error before Haversine
_BOX_PADDING = 1.001

# In-flight reservations count against the window too
_RATE_LIMITED_STATUSES = ("sent", "sending")


class ImpactStore:
    """
    Async store for properties, impact alerts, SMS log and run records.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Bound to the target database.
    clock : callable
        Returns the current aware UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.clock = clock

    def now(self) -> datetime:
        return self.clock()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Session in a transaction; connection failures become StoreUnavailableError."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.error("Store failure during %s: %s", operation, exc)
            raise StoreUnavailableError(operation, str(exc)) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                logger.error("Store connection lost during %s: %s", operation, exc)
                raise StoreUnavailableError(operation, str(exc)) from exc
            raise

    # ═══════════════════════════════════════════════════════════════════
    # Customer properties
    # ═══════════════════════════════════════════════════════════════════

    async def add_property(
        self,
        *,
        rep_id: str,
        customer_name: str,
        address: str,
        latitude: float,
        longitude: float,
        **fields: Any,
    ) -> CustomerPropertyRecord:
        Coordinate(latitude, longitude)  # range check
        unknown = set(fields) - UPDATABLE_PROPERTY_FIELDS - {"original_job_id"}
        if unknown:
            raise ValueError(f"Unknown property fields: {sorted(unknown)}")

        fields.setdefault("notify_radius_miles", settings.DEFAULT_NOTIFY_RADIUS_MILES)
        fields.setdefault("notify_threshold_hail_size", settings.DEFAULT_HAIL_THRESHOLD_INCHES)
        record = CustomerPropertyRecord(
            rep_id=rep_id,
            customer_name=customer_name,
            address=address,
            latitude=latitude,
            longitude=longitude,
            **fields,
        )
        async with self._session("add_property") as session:
            session.add(record)
        logger.info(
            "Property %s added for rep %s (%s)", record.id, rep_id, address,
            extra={"property_id": record.id, "rep_id": rep_id},
        )
        return record

    async def get_property(self, property_id: str) -> Optional[CustomerPropertyRecord]:
        async with self._session("get_property") as session:
            return await session.get(CustomerPropertyRecord, property_id)

    async def list_rep_properties(
        self, rep_id: str, *, active_only: bool = True,
    ) -> List[CustomerPropertyRecord]:
        stmt = select(CustomerPropertyRecord).where(CustomerPropertyRecord.rep_id == rep_id)
        if active_only:
            stmt = stmt.where(CustomerPropertyRecord.is_active.is_(True))
        stmt = stmt.order_by(CustomerPropertyRecord.created_at.desc())
        async with self._session("list_rep_properties") as session:
            return list((await session.scalars(stmt)).all())

    async def update_property(
        self, property_id: str, updates: Dict[str, Any],
    ) -> Optional[CustomerPropertyRecord]:
        unknown = set(updates) - UPDATABLE_PROPERTY_FIELDS
        if unknown:
            raise ValueError(f"Unknown property fields: {sorted(unknown)}")
        async with self._session("update_property") as session:
            record = await session.get(CustomerPropertyRecord, property_id)
            if record is None:
                return None
            for key, value in updates.items():
                setattr(record, key, value)
            record.updated_at = self.now()
        return record

    async def deactivate_property(self, property_id: str, rep_id: str) -> bool:
        """Soft delete; alerts keep referencing the row."""
        stmt = (
            update(CustomerPropertyRecord)
            .where(
                CustomerPropertyRecord.id == property_id,
                CustomerPropertyRecord.rep_id == rep_id,
            )
            .values(is_active=False, updated_at=self.now())
        )
        async with self._session("deactivate_property") as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def candidate_properties(
        self, event_type: EventType, latitude: float, longitude: float,
    ) -> List[CustomerPropertyRecord]:
        """
        Active, contactable, opted-in properties inside the event's box.

        The box is sized by the largest notify radius among active
        properties; the caller applies each property's own radius.
        """
        eligible = and_(
            CustomerPropertyRecord.is_active.is_(True),
            CustomerPropertyRecord.do_not_contact.is_(False),
            _OPT_IN_COLUMNS[event_type].is_(True),
        )
        async with self._session("candidate_properties") as session:
            max_radius = await session.scalar(
                select(func.max(CustomerPropertyRecord.notify_radius_miles)).where(eligible)
            )
            if not max_radius:
                return []
            min_lat, max_lat, min_lon, max_lon = bounding_box(
                Coordinate(latitude, longitude), max_radius * _BOX_PADDING,
            )
            stmt = select(CustomerPropertyRecord).where(
                eligible,
                CustomerPropertyRecord.latitude.between(min_lat, max_lat),
                CustomerPropertyRecord.longitude.between(min_lon, max_lon),
            )
            return list((await session.scalars(stmt)).all())

    # ═══════════════════════════════════════════════════════════════════
    # Rep contacts
    # ═══════════════════════════════════════════════════════════════════

    async def upsert_rep_contact(self, rep_id: str, **fields: Any) -> RepContactRecord:
        async with self._session("upsert_rep_contact") as session:
            record = await session.get(RepContactRecord, rep_id)
            if record is None:
                record = RepContactRecord(rep_id=rep_id)
                session.add(record)
            for key, value in fields.items():
                setattr(record, key, value)
        return record

    async def get_rep_contact(self, rep_id: str) -> Optional[RepContactRecord]:
        async with self._session("get_rep_contact") as session:
            return await session.get(RepContactRecord, rep_id)

    # ═══════════════════════════════════════════════════════════════════
    # Impact alerts
    # ═══════════════════════════════════════════════════════════════════

    async def create_alert_if_absent(
        self,
        *,
        property_id: str,
        rep_id: str,
        event_key: str,
        facts: SeverityFacts,
    ) -> Tuple[ImpactAlertRecord, bool]:
        """
        Insert the alert unless one exists for (property_id, event_key).

        Returns (alert, created). A losing concurrent insert is a no-op
        that returns the winner's row.
        """
        now = self.now()
        new_id = str(uuid.uuid4())
        values = {
            "id": new_id,
            "customer_property_id": property_id,
            "storm_event_id": facts.storm_event_id,
            "event_key": event_key,
            "rep_id": rep_id,
            "alert_type": facts.event_type.value,
            "alert_severity": facts.severity.label,
            "storm_date": facts.storm_date,
            "storm_distance_miles": facts.distance_miles,
            "hail_size_inches": facts.hail_size_inches,
            "wind_speed_mph": facts.wind_speed_mph,
            "status": AlertStatus.PENDING.value,
            "sms_sent": False,
            "email_sent": False,
            "push_sent": False,
            "created_at": now,
            "updated_at": now,
        }
        conflict_cols = ["customer_property_id", "event_key"]

        async with self._session("create_alert") as session:
            dialect = session.bind.dialect.name
            if dialect in ("postgresql", "sqlite"):
                insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
                stmt = insert_fn(ImpactAlertRecord).values(**values)
                await session.execute(stmt.on_conflict_do_nothing(index_elements=conflict_cols))
            else:
                try:
                    async with session.begin_nested():
                        session.add(ImpactAlertRecord(**values))
                except IntegrityError:
                    logger.debug("Alert for %s/%s already exists", property_id, event_key)

            alert = await session.scalar(
                select(ImpactAlertRecord)
                .where(
                    ImpactAlertRecord.customer_property_id == property_id,
                    ImpactAlertRecord.event_key == event_key,
                )
                .execution_options(populate_existing=True)
            )
        return alert, alert.id == new_id

    async def get_alert(self, alert_id: str) -> Optional[ImpactAlertRecord]:
        async with self._session("get_alert") as session:
            return await session.get(ImpactAlertRecord, alert_id)

    async def count_alerts(self, **filters: Any) -> int:
        stmt = select(func.count()).select_from(ImpactAlertRecord)
        for key, value in filters.items():
            stmt = stmt.where(getattr(ImpactAlertRecord, key) == value)
        async with self._session("count_alerts") as session:
            return int(await session.scalar(stmt) or 0)

    async def mark_channel_sent(
        self,
        alert_id: str,
        channel: Channel,
        *,
        message_id: Optional[str] = None,
    ) -> None:
        """Set the channel's delivery fields; pending → sent on first success."""
        now = self.now()
        prefix = channel.value
        id_column = "sms_message_sid" if channel == Channel.SMS else f"{prefix}_message_id"
        async with self._session("mark_channel_sent") as session:
            await session.execute(
                update(ImpactAlertRecord)
                .where(ImpactAlertRecord.id == alert_id)
                .values({
                    f"{prefix}_sent": True,
                    f"{prefix}_sent_at": now,
                    id_column: message_id,
                    f"{prefix}_error": None,
                    "updated_at": now,
                })
            )
            await session.execute(
                update(ImpactAlertRecord)
                .where(
                    ImpactAlertRecord.id == alert_id,
                    ImpactAlertRecord.status == AlertStatus.PENDING.value,
                )
                .values(status=AlertStatus.SENT.value)
            )

    async def mark_channel_failed(self, alert_id: str, channel: Channel, error: str) -> None:
        async with self._session("mark_channel_failed") as session:
            await session.execute(
                update(ImpactAlertRecord)
                .where(ImpactAlertRecord.id == alert_id)
                .values({f"{channel.value}_error": error[:500], "updated_at": self.now()})
            )

    async def set_alert_status(
        self,
        alert_id: str,
        status: AlertStatus,
        *,
        outcome: Optional[str] = None,
        contact_notes: Optional[str] = None,
        contact_method: Optional[str] = None,
    ) -> Optional[ImpactAlertRecord]:
        now = self.now()
        async with self._session("set_alert_status") as session:
            alert = await session.get(ImpactAlertRecord, alert_id)
            if alert is None:
                return None
            alert.status = status.value
            if outcome is not None:
                alert.outcome = outcome
            if contact_notes is not None:
                alert.contact_notes = contact_notes
            if contact_method is not None:
                alert.contact_method = contact_method
            if status == AlertStatus.VIEWED and alert.viewed_at is None:
                alert.viewed_at = now
            if status in (AlertStatus.CONTACTED, AlertStatus.CONVERTED):
                alert.contacted_at = now
            alert.updated_at = now
        return alert

    async def convert_alert(
        self, alert_id: str, job_id: str, conversion_date: date,
    ) -> Optional[ImpactAlertRecord]:
        """Status, outcome, job id and date written in one transaction."""
        now = self.now()
        async with self._session("convert_alert") as session:
            alert = await session.get(ImpactAlertRecord, alert_id)
            if alert is None:
                return None
            alert.status = AlertStatus.CONVERTED.value
            alert.outcome = "converted"
            alert.converted_job_id = job_id
            alert.conversion_date = conversion_date
            if alert.contacted_at is None:
                alert.contacted_at = now
            alert.updated_at = now
        return alert

    async def pending_alerts(self, rep_id: str) -> List[Tuple[ImpactAlertRecord, CustomerPropertyRecord]]:
        stmt = (
            select(ImpactAlertRecord, CustomerPropertyRecord)
            .join(
                CustomerPropertyRecord,
                ImpactAlertRecord.customer_property_id == CustomerPropertyRecord.id,
            )
            .where(
                ImpactAlertRecord.rep_id == rep_id,
                ImpactAlertRecord.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .order_by(ImpactAlertRecord.created_at.desc())
        )
        async with self._session("pending_alerts") as session:
            return [(row[0], row[1]) for row in (await session.execute(stmt)).all()]

    async def impact_stats(self, rep_id: str, days_back: int) -> Dict[str, Any]:
        since = self.now() - timedelta(days=days_back)
        in_window = and_(
            ImpactAlertRecord.rep_id == rep_id,
            ImpactAlertRecord.created_at >= since,
        )
        async with self._session("impact_stats") as session:
            total_properties = await session.scalar(
                select(func.count()).select_from(CustomerPropertyRecord).where(
                    CustomerPropertyRecord.rep_id == rep_id,
                    CustomerPropertyRecord.is_active.is_(True),
                )
            )
            total_alerts = await session.scalar(
                select(func.count()).select_from(ImpactAlertRecord).where(in_window)
            )
            pending = await session.scalar(
                select(func.count()).select_from(ImpactAlertRecord).where(
                    in_window,
                    ImpactAlertRecord.status.in_([s.value for s in OPEN_STATUSES]),
                )
            )
            converted = await session.scalar(
                select(func.count()).select_from(ImpactAlertRecord).where(
                    in_window, ImpactAlertRecord.status == AlertStatus.CONVERTED.value,
                )
            )
            conversion_value = await session.scalar(
                select(func.coalesce(func.sum(CustomerPropertyRecord.lifetime_value), 0.0))
                .select_from(ImpactAlertRecord)
                .join(
                    CustomerPropertyRecord,
                    ImpactAlertRecord.customer_property_id == CustomerPropertyRecord.id,
                )
                .where(in_window, ImpactAlertRecord.status == AlertStatus.CONVERTED.value)
            )

        total_alerts = int(total_alerts or 0)
        converted = int(converted or 0)
        return {
            "total_properties": int(total_properties or 0),
            "total_alerts": total_alerts,
            "alerts_pending": int(pending or 0),
            "alerts_converted": converted,
            "conversion_rate": round(converted / total_alerts * 100, 2) if total_alerts else 0.0,
            "total_conversion_value": float(conversion_value or 0.0),
        }

    # ═══════════════════════════════════════════════════════════════════
    # SMS log / rate-limit lookback
    # ═══════════════════════════════════════════════════════════════════

    async def count_recent_sms(
        self,
        phone_number: str,
        property_id: str,
        since: datetime,
        *,
        statuses: Sequence[str] = ("sent",),
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(SmsNotificationRecord)
            .where(
                SmsNotificationRecord.phone_number == phone_number,
                SmsNotificationRecord.customer_property_id == property_id,
                SmsNotificationRecord.status.in_(list(statuses)),
                or_(
                    SmsNotificationRecord.sent_at > since,
                    and_(
                        SmsNotificationRecord.sent_at.is_(None),
                        SmsNotificationRecord.created_at > since,
                    ),
                ),
            )
        )
        async with self._session("count_recent_sms") as session:
            return int(await session.scalar(stmt) or 0)

    async def reserve_sms_slot(
        self,
        *,
        phone_number: str,
        property_id: str,
        alert_id: Optional[str],
        rep_id: Optional[str],
        body: str,
        window: timedelta,
    ) -> Optional[str]:
        """
        Claim the (phone, property) send slot for the current window.

        The 'sending' row is written by one
        INSERT ... SELECT ... WHERE NOT EXISTS (<sent or in-flight row in
        the window>), so the check and the claim are a single statement on
        every backend. Where the dialect supports it the property row is
        also locked first, which serializes reservations across
        READ COMMITTED transactions. Returns the log row id, or None when
        the slot is taken.
        """
        now = self.now()
        since = now - window
        new_id = str(uuid.uuid4())
        values = {
            "id": new_id,
            "rep_id": rep_id,
            "impact_alert_id": alert_id,
            "customer_property_id": property_id,
            "phone_number": phone_number,
            "message_body": body,
            "status": "sending",
            "created_at": now,
        }
        recent = (
            select(SmsNotificationRecord.id)
            .where(
                SmsNotificationRecord.phone_number == phone_number,
                SmsNotificationRecord.customer_property_id == property_id,
                SmsNotificationRecord.status.in_(_RATE_LIMITED_STATUSES),
                or_(
                    SmsNotificationRecord.sent_at > since,
                    SmsNotificationRecord.created_at > since,
                ),
            )
        )
        claim = insert(SmsNotificationRecord).from_select(
            list(values),
            select(*[
                literal(value, SmsNotificationRecord.__table__.c[name].type).label(name)
                for name, value in values.items()
            ]).where(~recent.exists()),
        )

        async with self._session("reserve_sms_slot") as session:
            if session.bind.dialect.name == "postgresql":
                await session.execute(
                    select(CustomerPropertyRecord.id)
                    .where(CustomerPropertyRecord.id == property_id)
                    .with_for_update()
                )
            result = await session.execute(claim)
        return new_id if result.rowcount == 1 else None

    async def log_sms(
        self,
        *,
        notification_id: Optional[str],
        phone_number: str,
        property_id: Optional[str],
        alert_id: Optional[str],
        rep_id: Optional[str],
        body: str,
        message_sid: Optional[str] = None,
        error: Optional[str] = None,
    ) -> str:
        """Finalize a reserved log row, or write a new one when none was reserved."""
        now = self.now()
        async with self._session("log_sms") as session:
            record = None
            if notification_id:
                record = await session.get(SmsNotificationRecord, notification_id)
            if record is None:
                record = SmsNotificationRecord(
                    rep_id=rep_id,
                    impact_alert_id=alert_id,
                    customer_property_id=property_id,
                    phone_number=phone_number,
                    message_body=body,
                    created_at=now,
                )
                session.add(record)
            record.message_sid = message_sid
            record.status = "sent" if message_sid and not error else "failed"
            record.error_message = error[:500] if error else None
            record.sent_at = now if record.status == "sent" else None
        return record.id

    # ═══════════════════════════════════════════════════════════════════
    # Monitoring runs
    # ═══════════════════════════════════════════════════════════════════

    async def open_run(self, run_type: str = "scheduled") -> str:
        record = MonitoringRunRecord(run_type=run_type, start_time=self.now())
        async with self._session("open_run") as session:
            session.add(record)
        return record.id

    async def finalize_run(
        self,
        run_id: str,
        *,
        events_processed: int,
        properties_checked: int,
        alerts_generated: int,
        messages_sent: int,
        messages_failed: int,
        messages_skipped: int,
        errors: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._session("finalize_run") as session:
            await session.execute(
                update(MonitoringRunRecord)
                .where(MonitoringRunRecord.id == run_id)
                .values(
                    end_time=self.now(),
                    events_processed=events_processed,
                    properties_checked=properties_checked,
                    alerts_generated=alerts_generated,
                    messages_sent=messages_sent,
                    messages_failed=messages_failed,
                    messages_skipped=messages_skipped,
                    errors=errors,
                )
            )

    async def get_run(self, run_id: str) -> Optional[MonitoringRunRecord]:
        async with self._session("get_run") as session:
            return await session.get(MonitoringRunRecord, run_id)
