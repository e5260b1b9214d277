"""
severity.py — Ordinal impact scoring for one (event, property) pair.

score_severity(event_type, distance_miles, hail_size, wind_speed) is pure:
no I/O, no clock, same inputs → same Severity.

═══════════════════════════════════════════════════════════════════════════
DEFAULT POLICY
═══════════════════════════════════════════════════════════════════════════

    Hazard     Magnitude band                      Base severity
    ───────    ─────────────────────────────       ─────────────
    Hail       ≥ 2.50 in                           CRITICAL
               ≥ 1.75 in                           SEVERE
               ≥ 1.00 in                           MODERATE
               < 1.00 in                           MINOR
    Wind       ≥ 90 mph                            CRITICAL
               ≥ 75 mph                            SEVERE
               ≥ 58 mph                            MODERATE
               < 58 mph                            MINOR
    Tornado    within 1 mi                         CRITICAL
               otherwise                           SEVERE (floor)
    No magnitude (hail/wind)
               within 1 mi                         MODERATE
               otherwise                           MINOR

Distance attenuation for hail/wind with a magnitude:

    distance ≤ 3 mi        no change
    3 < distance ≤ 10 mi   one level down
    distance > 10 mi       two levels down
    (never below MINOR)

Both magnitude bands and attenuation steps are monotonic, so the score
is non-decreasing in magnitude and non-increasing in distance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from stormwatch.app.alerts.models import EventType, Severity


@dataclass(frozen=True)
class SeverityPolicy:
    """
    Numeric bands for scoring. Band tuples are (threshold, severity),
    sorted by descending threshold; the first threshold met wins.
    """
    hail_bands: Tuple[Tuple[float, Severity], ...] = (
        (2.50, Severity.CRITICAL),
        (1.75, Severity.SEVERE),
        (1.00, Severity.MODERATE),
    )
    wind_bands: Tuple[Tuple[float, Severity], ...] = (
        (90.0, Severity.CRITICAL),
        (75.0, Severity.SEVERE),
        (58.0, Severity.MODERATE),
    )
    # (distance beyond which, levels removed), ascending distance
    attenuation: Tuple[Tuple[float, int], ...] = (
        (3.0, 1),
        (10.0, 2),
    )
    near_miles: float = 1.0
    tornado_floor: Severity = Severity.SEVERE


DEFAULT_POLICY = SeverityPolicy()


def _band(value: float, bands: Tuple[Tuple[float, Severity], ...]) -> Severity:
    for threshold, severity in bands:
        if value >= threshold:
            return severity
    return Severity.MINOR


def _attenuate(base: Severity, distance_miles: float, policy: SeverityPolicy) -> Severity:
    levels = 0
    for beyond, drop in policy.attenuation:
        if distance_miles > beyond:
            levels = drop
    return Severity(max(int(Severity.MINOR), int(base) - levels))


def score_severity(
    event_type: EventType,
    distance_miles: float,
    hail_size_inches: Optional[float] = None,
    wind_speed_mph: Optional[float] = None,
    *,
    policy: SeverityPolicy = DEFAULT_POLICY,
) -> Severity:
    """
    Score how seriously an event likely affected a property.

    Parameters
    ----------
    event_type : EventType
    distance_miles : float
        Great-circle distance from event to property.
    hail_size_inches, wind_speed_mph : float | None
        Magnitude for the matching hazard; the other is ignored.

    Examples
    --------
    >>> score_severity(EventType.HAIL, 2.0, hail_size_inches=1.75)
    <Severity.SEVERE: 3>
    >>> score_severity(EventType.TORNADO, 8.0)
    <Severity.SEVERE: 3>
    """
    event_type = EventType(event_type)
    near = distance_miles <= policy.near_miles

    if event_type == EventType.TORNADO:
        return Severity.CRITICAL if near else policy.tornado_floor

    magnitude = hail_size_inches if event_type == EventType.HAIL else wind_speed_mph
    if magnitude is None:
        return Severity.MODERATE if near else Severity.MINOR

    bands = policy.hail_bands if event_type == EventType.HAIL else policy.wind_bands
    return _attenuate(_band(magnitude, bands), distance_miles, policy)
