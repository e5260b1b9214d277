"""
ORM tables for the storm-impact pipeline.

═══════════════════════════════════════════════════════════════════════════
SCHEMA
═══════════════════════════════════════════════════════════════════════════

customer_properties    monitored addresses, soft-deleted via is_active
rep_contacts           where a rep receives notifications
impact_alerts          one row per (property, storm event) — audit trail
sms_notifications      outbound SMS log; backs the rate-limit lookback
storm_monitoring_runs  one row per batch run

Constraints:
- UNIQUE (customer_property_id, event_key) on impact_alerts — the
  idempotency boundary for alert creation
- INDEX (phone_number, customer_property_id, sent_at) on sms_notifications
- INDEX (latitude, longitude) on customer_properties for box queries
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stormwatch.app.core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomerPropertyRecord(Base):
    """A past customer's property, monitored for storm impacts."""

    __tablename__ = "customer_properties"
    __table_args__ = (
        Index("ix_customer_properties_lat_lon", "latitude", "longitude"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    rep_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(32))
    customer_email: Mapped[Optional[str]] = mapped_column(String(254))

    address: Mapped[str] = mapped_column(String(300), nullable=False)
    street_address: Mapped[Optional[str]] = mapped_column(String(200))
    city: Mapped[str] = mapped_column(String(100), default="")
    state: Mapped[str] = mapped_column(String(32), default="")
    zip_code: Mapped[str] = mapped_column(String(16), default="")
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)

    property_type: Mapped[str] = mapped_column(String(32), default="residential")
    roof_type: Mapped[Optional[str]] = mapped_column(String(64))
    roof_age_years: Mapped[Optional[int]] = mapped_column(Integer)
    relationship_status: Mapped[str] = mapped_column(String(32), default="past_customer")
    original_job_id: Mapped[Optional[str]] = mapped_column(String(64))
    lifetime_value: Mapped[Optional[float]] = mapped_column(Float)

    notify_on_hail: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_on_wind: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_on_tornado: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_threshold_hail_size: Mapped[float] = mapped_column(Float, default=1.0)
    notify_radius_miles: Mapped[float] = mapped_column(Float, default=5.0)
    preferred_contact_method: Mapped[str] = mapped_column(String(16), default="phone")
    do_not_contact: Mapped[bool] = mapped_column(Boolean, default=False)

    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow,
    )

    def opted_in(self, event_type: str) -> bool:
        return {
            "hail": self.notify_on_hail,
            "wind": self.notify_on_wind,
            "tornado": self.notify_on_tornado,
        }.get(event_type, False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rep_id": self.rep_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_email": self.customer_email,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "relationship_status": self.relationship_status,
            "notify_on_hail": self.notify_on_hail,
            "notify_on_wind": self.notify_on_wind,
            "notify_on_tornado": self.notify_on_tornado,
            "notify_threshold_hail_size": self.notify_threshold_hail_size,
            "notify_radius_miles": self.notify_radius_miles,
            "preferred_contact_method": self.preferred_contact_method,
            "do_not_contact": self.do_not_contact,
            "is_active": self.is_active,
        }


class RepContactRecord(Base):
    """Notification endpoints for a sales rep."""

    __tablename__ = "rep_contacts"

    rep_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    phone_number: Mapped[Optional[str]] = mapped_column(String(32))
    email: Mapped[Optional[str]] = mapped_column(String(254))
    push_token: Mapped[Optional[str]] = mapped_column(String(512))
    sms_alerts_enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class ImpactAlertRecord(Base):
    """One storm event matched against one property."""

    __tablename__ = "impact_alerts"
    __table_args__ = (
        UniqueConstraint(
            "customer_property_id", "event_key",
            name="uq_impact_alerts_property_event",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    customer_property_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customer_properties.id"), nullable=False, index=True,
    )
    storm_event_id: Mapped[Optional[str]] = mapped_column(String(128))
    event_key: Mapped[str] = mapped_column(String(128), nullable=False)
    rep_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Event facts — immutable once written
    alert_type: Mapped[str] = mapped_column(String(16), nullable=False)
    alert_severity: Mapped[str] = mapped_column(String(16), nullable=False)
    storm_date: Mapped[date] = mapped_column(Date, nullable=False)
    storm_distance_miles: Mapped[float] = mapped_column(Float, nullable=False)
    hail_size_inches: Mapped[Optional[float]] = mapped_column(Float)
    wind_speed_mph: Mapped[Optional[float]] = mapped_column(Float)

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)

    # Rep follow-up
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    contacted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    contact_method: Mapped[Optional[str]] = mapped_column(String(16))
    contact_notes: Mapped[Optional[str]] = mapped_column(Text)
    outcome: Mapped[Optional[str]] = mapped_column(String(16))
    converted_job_id: Mapped[Optional[str]] = mapped_column(String(64))
    conversion_date: Mapped[Optional[date]] = mapped_column(Date)

    # Per-channel delivery
    sms_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sms_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sms_message_sid: Mapped[Optional[str]] = mapped_column(String(64))
    sms_error: Mapped[Optional[str]] = mapped_column(String(500))
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    email_message_id: Mapped[Optional[str]] = mapped_column(String(128))
    email_error: Mapped[Optional[str]] = mapped_column(String(500))
    push_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    push_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    push_message_id: Mapped[Optional[str]] = mapped_column(String(128))
    push_error: Mapped[Optional[str]] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow,
    )

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "customer_property_id": self.customer_property_id,
            "storm_event_id": self.storm_event_id,
            "rep_id": self.rep_id,
            "alert_type": self.alert_type,
            "alert_severity": self.alert_severity,
            "storm_date": iso(self.storm_date),
            "storm_distance_miles": round(self.storm_distance_miles, 3),
            "hail_size_inches": self.hail_size_inches,
            "wind_speed_mph": self.wind_speed_mph,
            "status": self.status,
            "outcome": self.outcome,
            "contacted_at": iso(self.contacted_at),
            "contact_notes": self.contact_notes,
            "converted_job_id": self.converted_job_id,
            "conversion_date": iso(self.conversion_date),
            "sms": {"sent": self.sms_sent, "sent_at": iso(self.sms_sent_at), "error": self.sms_error},
            "email": {"sent": self.email_sent, "sent_at": iso(self.email_sent_at), "error": self.email_error},
            "push": {"sent": self.push_sent, "sent_at": iso(self.push_sent_at), "error": self.push_error},
            "created_at": iso(self.created_at),
        }


class SmsNotificationRecord(Base):
    """Outbound SMS log entry: sending → sent | failed."""

    __tablename__ = "sms_notifications"
    __table_args__ = (
        Index(
            "ix_sms_notifications_phone_property_sent",
            "phone_number", "customer_property_id", "sent_at",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    rep_id: Mapped[Optional[str]] = mapped_column(String(64))
    impact_alert_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("impact_alerts.id"),
    )
    customer_property_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("customer_properties.id"),
    )
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    message_body: Mapped[str] = mapped_column(Text, default="")
    message_sid: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), default="sending")
    error_message: Mapped[Optional[str]] = mapped_column(String(500))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class MonitoringRunRecord(Base):
    """Append-only audit row per monitoring run."""

    __tablename__ = "storm_monitoring_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    run_type: Mapped[str] = mapped_column(String(16), default="scheduled")
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    events_processed: Mapped[int] = mapped_column(Integer, default=0)
    properties_checked: Mapped[int] = mapped_column(Integer, default=0)
    alerts_generated: Mapped[int] = mapped_column(Integer, default=0)
    messages_sent: Mapped[int] = mapped_column(Integer, default=0)
    messages_failed: Mapped[int] = mapped_column(Integer, default=0)
    messages_skipped: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
