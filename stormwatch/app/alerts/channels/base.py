"""
base.py — Types shared by every channel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional

from stormwatch.app.alerts.models import EventType, Severity


@dataclass(frozen=True)
class AlertMessage:
    """Everything a channel needs to render one impact alert."""
    property_id: str
    rep_id: str
    address: str
    event_type: EventType
    storm_date: date
    severity: Severity
    distance_miles: float
    customer_name: str = ""
    hail_size_inches: Optional[float] = None
    wind_speed_mph: Optional[float] = None

    @classmethod
    def from_records(cls, alert, prop) -> "AlertMessage":
        """Build from an ImpactAlertRecord and its CustomerPropertyRecord."""
        return cls(
            property_id=prop.id,
            rep_id=alert.rep_id,
            address=prop.address,
            event_type=EventType(alert.alert_type),
            storm_date=alert.storm_date,
            severity=Severity.from_label(alert.alert_severity),
            distance_miles=alert.storm_distance_miles,
            customer_name=prop.customer_name,
            hail_size_inches=alert.hail_size_inches,
            wind_speed_mph=alert.wind_speed_mph,
        )

    def hazard_detail(self) -> str:
        """One-line hazard description, e.g. 'Hail 1.75" at 2.0 mi'."""
        if self.event_type == EventType.HAIL:
            label = f'Hail {self.hail_size_inches:.2f}"' if self.hail_size_inches is not None else "Hail"
        elif self.event_type == EventType.WIND:
            label = f"Wind {self.wind_speed_mph:.0f} mph" if self.wind_speed_mph is not None else "High wind"
        else:
            label = "Tornado"
        return f"{label} at {self.distance_miles:.1f} mi"


@dataclass(frozen=True)
class GatewayReceipt:
    """Provider acknowledgement of an accepted message."""
    provider: str
    message_id: str
    raw: Dict[str, Any] = field(default_factory=dict)
