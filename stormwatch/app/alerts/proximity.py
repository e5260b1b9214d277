"""
proximity.py — Which monitored properties fall inside a storm's impact zone.

A property matches an event when all of:

    • property is active and not flagged do-not-contact
    • property opted in to the event's hazard type
    • haversine(event, property) ≤ property.notify_radius_miles   (inclusive)
    • hail only: event.hail_size ≥ property.notify_threshold_hail_size,
      unless the event carries no hail size (no magnitude gate then)

Wind and tornado have no magnitude gate beyond distance.

The store narrows candidates with a bounding box sized by the largest
radius in play; the per-property radius is applied here.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

from stormwatch.app.alerts.models import EventType, ImpactedProperty, StormEvent
from stormwatch.app.alerts.orm import CustomerPropertyRecord
from stormwatch.app.alerts.store import ImpactStore
from stormwatch.app.spatial.radius_utils import Coordinate, haversine_miles

logger = logging.getLogger(__name__)


def property_matches(
    event: StormEvent,
    prop: CustomerPropertyRecord,
) -> Tuple[bool, float]:
    """
    Apply the matching rules to one property.

    Returns (matched, distance_miles).
    """
    distance = haversine_miles(
        Coordinate(event.latitude, event.longitude),
        Coordinate(prop.latitude, prop.longitude),
    )

    if not prop.is_active or prop.do_not_contact:
        return False, distance
    if not prop.opted_in(event.event_type.value):
        return False, distance
    if distance > prop.notify_radius_miles:
        return False, distance
    if (
        event.event_type == EventType.HAIL
        and event.hail_size_inches is not None
        and event.hail_size_inches < prop.notify_threshold_hail_size
    ):
        return False, distance
    return True, distance


async def find_impacted_properties(
    store: ImpactStore,
    event: StormEvent,
) -> List[ImpactedProperty]:
    """
    Find every property impacted by an event, nearest first.

    Returns an empty list when nothing qualifies.
    """
    candidates = await store.candidate_properties(
        event.event_type, event.latitude, event.longitude,
    )

    impacted: List[ImpactedProperty] = []
    for prop in candidates:
        matched, distance = property_matches(event, prop)
        if not matched:
            continue
        impacted.append(ImpactedProperty(
            property_id=prop.id,
            rep_id=prop.rep_id,
            distance_miles=distance,
            customer_name=prop.customer_name,
            address=prop.address,
            preferred_channel=prop.preferred_contact_method,
            customer_phone=prop.customer_phone,
            customer_email=prop.customer_email,
        ))

    impacted.sort(key=lambda p: p.distance_miles)
    logger.info(
        "%s event at (%.4f, %.4f) [%s]: %d candidates, %d impacted",
        event.event_type.value, event.latitude, event.longitude,
        event.event_key, len(candidates), len(impacted),
        extra={"event_key": event.event_key},
    )
    return impacted
