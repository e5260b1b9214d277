"""
models.py — Shared data structures for the storm-impact alert pipeline.

Defines:
    • EventType       — hazard kinds reported by the weather feed
    • Severity        — ordinal impact classification
    • AlertStatus     — ImpactAlert lifecycle states
    • AlertOutcome    — rep-recorded follow-up outcome
    • Channel         — notification medium
    • SendStatus      — per-channel dispatch outcome
    • StormEvent      — one inbound severe-weather observation
    • ImpactedProperty, SeverityFacts, ChannelResult, MonitoringSummary

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    pending ──► sent ──► viewed ──► contacted ──► converted
       │          │         │           │
       └──────────┴─────────┴───────────┴──► not_pursued

    dismissed can be set by a rep at any time.

    pending → sent is owned by the dispatcher (first successful channel).
    Everything after sent is a human action; the ledger records the state
    it is given without enforcing order.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Mapping, Optional

from stormwatch.app.spatial.radius_utils import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class EventType(str, Enum):
    HAIL = "hail"
    WIND = "wind"
    TORNADO = "tornado"


class Severity(IntEnum):
    """Ordinal impact scale — integer ordering enables comparison."""
    MINOR = 1
    MODERATE = 2
    SEVERE = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "Severity":
        return cls[label.upper()]


class AlertStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    VIEWED = "viewed"
    CONTACTED = "contacted"
    CONVERTED = "converted"
    NOT_PURSUED = "not_pursued"
    DISMISSED = "dismissed"


# States a rep still has to act on
OPEN_STATUSES = (AlertStatus.PENDING, AlertStatus.SENT, AlertStatus.VIEWED)


class AlertOutcome(str, Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    CONVERTED = "converted"
    NOT_PURSUED = "not_pursued"


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"


# preferred_contact_method → channel
_PREFERENCE_CHANNELS = {
    "phone": Channel.SMS,
    "sms": Channel.SMS,
    "text": Channel.SMS,
    "email": Channel.EMAIL,
    "push": Channel.PUSH,
    "app": Channel.PUSH,
}


def channel_for_preference(preference: Optional[str]) -> Optional[Channel]:
    """Channel for a property's preferred contact method; None if unknown."""
    if not preference:
        return None
    return _PREFERENCE_CHANNELS.get(preference.strip().lower())


class SendStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"      # rate limited — not an error
    INVALID = "invalid"      # recipient failed validation


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _optional_float(value: Any) -> Optional[float]:
    """Malformed magnitudes become None: no magnitude gate applies."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number < 0:  # NaN or negative
        return None
    return number


@dataclass(frozen=True)
class StormEvent:
    """
    A severe-weather observation supplied by the ingestion feed.

    Attributes
    ----------
    latitude, longitude : float
        Event location in decimal degrees.
    event_type : EventType
    storm_date : date
    hail_size_inches, wind_speed_mph : float | None
        Magnitude, when the feed reports one.
    source_event_id : str | None
        Upstream identifier; the idempotency key when present.
    """
    latitude: float
    longitude: float
    event_type: EventType
    storm_date: date
    hail_size_inches: Optional[float] = None
    wind_speed_mph: Optional[float] = None
    source_event_id: Optional[str] = None

    def __post_init__(self) -> None:
        Coordinate(self.latitude, self.longitude)
        if not isinstance(self.event_type, EventType):
            raise ValueError(f"Unknown event type: {self.event_type!r}")
        if isinstance(self.storm_date, datetime) or not isinstance(self.storm_date, date):
            raise ValueError(f"stormDate must be a calendar date, got {self.storm_date!r}")

    @property
    def event_key(self) -> str:
        """
        Stable identity of this event for alert de-duplication.

        The source id when supplied; otherwise a fingerprint of the
        event's facts so re-ingesting the same observation still
        collapses onto the same key.
        """
        if self.source_event_id:
            return self.source_event_id
        raw = "|".join([
            self.event_type.value,
            self.storm_date.isoformat(),
            f"{self.latitude:.5f}",
            f"{self.longitude:.5f}",
            f"{self.hail_size_inches}",
            f"{self.wind_speed_mph}",
        ])
        return "fp:" + hashlib.sha1(raw.encode("utf-8")).hexdigest()[:24]

    @classmethod
    def from_feed(cls, record: Mapping[str, Any]) -> "StormEvent":
        """
        Build an event from a feed record (camelCase or snake_case keys).

        Raises ValueError when a required field is missing or malformed.
        Optional magnitude fields that fail to parse are dropped.
        """
        def pick(*keys: str) -> Any:
            for key in keys:
                if key in record and record[key] is not None:
                    return record[key]
            return None

        lat = pick("latitude", "lat")
        lon = pick("longitude", "lon")
        event_type = pick("eventType", "event_type", "type")
        storm_date = pick("stormDate", "storm_date", "date")
        if lat is None or lon is None or event_type is None or storm_date is None:
            raise ValueError(
                "Storm event requires latitude, longitude, eventType and stormDate"
            )

        if isinstance(storm_date, datetime):
            storm_date = storm_date.date()
        elif isinstance(storm_date, str):
            storm_date = date.fromisoformat(storm_date[:10])
        elif not isinstance(storm_date, date):
            raise ValueError(f"Unparseable stormDate: {storm_date!r}")

        source_id = pick("sourceEventId", "source_event_id", "stormEventId")
        return cls(
            latitude=float(lat),
            longitude=float(lon),
            event_type=(
                event_type if isinstance(event_type, EventType)
                else EventType(str(event_type).strip().lower())
            ),
            storm_date=storm_date,
            hail_size_inches=_optional_float(pick("hailSizeInches", "hail_size_inches", "hailSize")),
            wind_speed_mph=_optional_float(pick("windSpeedMph", "wind_speed_mph", "windSpeed")),
            source_event_id=str(source_id) if source_id is not None else None,
        )


@dataclass(frozen=True)
class ImpactedProperty:
    """One matcher hit: a property inside an event's impact zone."""
    property_id: str
    rep_id: str
    distance_miles: float
    customer_name: str = ""
    address: str = ""
    preferred_channel: str = "phone"
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None


@dataclass(frozen=True)
class SeverityFacts:
    """Event facts captured on an alert at creation time."""
    event_type: EventType
    storm_date: date
    distance_miles: float
    severity: Severity
    hail_size_inches: Optional[float] = None
    wind_speed_mph: Optional[float] = None
    storm_event_id: Optional[str] = None


@dataclass
class ChannelResult:
    """Outcome of one send attempt over one channel."""
    alert_id: str
    channel: Channel
    status: SendStatus
    provider_message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SendStatus.SENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "success": self.success,
            "provider_message_id": self.provider_message_id,
            "error": self.error,
        }


@dataclass
class MonitoringSummary:
    """
    Aggregate statistics for one monitoring run.

    sent / failed / skipped count dispatch attempts across all channels;
    by_channel breaks them down per channel.
    """
    run_id: str
    events_processed: int = 0
    properties_checked: int = 0
    alerts_generated: int = 0
    alerts_existing: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    by_channel: Dict[str, Dict[str, int]] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, result: ChannelResult) -> None:
        bucket = self.by_channel.setdefault(
            result.channel.value, {"sent": 0, "failed": 0, "skipped": 0},
        )
        if result.status == SendStatus.SENT:
            self.sent += 1
            bucket["sent"] += 1
        elif result.status == SendStatus.SKIPPED:
            self.skipped += 1
            bucket["skipped"] += 1
        else:
            self.failed += 1
            bucket["failed"] += 1
            self.failures.append({
                "alert_id": result.alert_id,
                "channel": result.channel.value,
                "error": result.error,
            })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "events_processed": self.events_processed,
            "properties_checked": self.properties_checked,
            "alerts_generated": self.alerts_generated,
            "alerts_existing": self.alerts_existing,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "by_channel": self.by_channel,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failures": self.failures,
        }
