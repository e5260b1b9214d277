"""
FastAPI route: storm-impact alerts for sales reps.

Provides endpoints to:
    POST   /api/v1/impact/properties                      — add a monitored property
    GET    /api/v1/impact/properties/{id}                 — get one property
    PATCH  /api/v1/impact/properties/{id}                 — partial update
    DELETE /api/v1/impact/properties/{id}?rep_id=...      — deactivate (soft delete)
    GET    /api/v1/impact/reps/{rep_id}/properties        — a rep's properties
    PUT    /api/v1/impact/reps/{rep_id}/contact           — rep notification endpoints
    GET    /api/v1/impact/reps/{rep_id}/alerts/pending    — alerts awaiting follow-up
    GET    /api/v1/impact/reps/{rep_id}/stats             — impact / conversion stats
    GET    /api/v1/impact/alerts/{id}                     — one alert
    PATCH  /api/v1/impact/alerts/{id}/status              — rep status update
    POST   /api/v1/impact/alerts/{id}/convert             — mark converted to a job
    POST   /api/v1/impact/alerts/{id}/resend              — manual re-send
    POST   /api/v1/impact/monitoring/runs                 — run a batch of storm events
    GET    /api/v1/impact/monitoring/runs/{id}            — run record
    POST   /api/v1/impact/sms/test                        — gateway test message
    GET    /api/v1/impact/channels/status                 — gateway configuration
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from stormwatch.app.alerts.channels.sms_gateway import send_test_sms
from stormwatch.app.alerts.models import AlertOutcome, AlertStatus, Channel, EventType
from stormwatch.app.alerts.service import ImpactServices
from stormwatch.app.core.config import settings
from stormwatch.app.core.errors import NotFoundError

router = APIRouter(prefix="/api/v1/impact", tags=["storm-impact"])


def get_services(request: Request) -> ImpactServices:
    return request.app.state.impact


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class PropertyCreate(BaseModel):
    rep_id: str = Field(..., examples=["rep-42"])
    customer_name: str = Field(..., examples=["Dana Whitfield"])
    address: str = Field(..., examples=["123 Main St, Dallas, TX"])
    latitude: float = Field(..., ge=-90, le=90, examples=[32.7767])
    longitude: float = Field(..., ge=-180, le=180, examples=[-96.7970])
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    city: str = ""
    state: str = ""
    zip_code: str = ""
    property_type: str = "residential"
    roof_type: Optional[str] = None
    roof_age_years: Optional[int] = Field(None, ge=0)
    relationship_status: str = "past_customer"
    original_job_id: Optional[str] = None
    lifetime_value: Optional[float] = Field(None, ge=0)
    notify_on_hail: bool = True
    notify_on_wind: bool = True
    notify_on_tornado: bool = True
    notify_threshold_hail_size: float = Field(settings.DEFAULT_HAIL_THRESHOLD_INCHES, ge=0)
    notify_radius_miles: float = Field(settings.DEFAULT_NOTIFY_RADIUS_MILES, gt=0, le=100)
    preferred_contact_method: str = Field("phone", examples=["phone", "email", "push"])
    do_not_contact: bool = False
    notes: Optional[str] = None


class PropertyUpdate(BaseModel):
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    relationship_status: Optional[str] = None
    lifetime_value: Optional[float] = Field(None, ge=0)
    notify_on_hail: Optional[bool] = None
    notify_on_wind: Optional[bool] = None
    notify_on_tornado: Optional[bool] = None
    notify_threshold_hail_size: Optional[float] = Field(None, ge=0)
    notify_radius_miles: Optional[float] = Field(None, gt=0, le=100)
    preferred_contact_method: Optional[str] = None
    do_not_contact: Optional[bool] = None
    notes: Optional[str] = None


class RepContactUpdate(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = Field(None, examples=["+12145550100"])
    email: Optional[str] = None
    push_token: Optional[str] = None
    sms_alerts_enabled: Optional[bool] = None


class StatusUpdate(BaseModel):
    status: AlertStatus
    outcome: Optional[AlertOutcome] = None
    notes: Optional[str] = None
    contact_method: Optional[str] = None


class ConvertRequest(BaseModel):
    job_id: str = Field(..., min_length=1, examples=["JOB-1001"])
    conversion_date: Optional[date] = None


class ResendRequest(BaseModel):
    channel: Optional[Channel] = None


class StormEventInput(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    event_type: EventType
    storm_date: date
    hail_size_inches: Optional[float] = None
    wind_speed_mph: Optional[float] = None
    source_event_id: Optional[str] = None


class MonitoringRunRequest(BaseModel):
    events: List[StormEventInput] = Field(..., min_length=1)
    run_type: str = "manual"


class TestSmsRequest(BaseModel):
    phone_number: str = Field(..., examples=["(214) 555-0100"])


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

@router.post("/properties", status_code=201)
async def add_property(body: PropertyCreate, services: ImpactServices = Depends(get_services)):
    record = await services.store.add_property(**body.model_dump())
    return record.to_dict()


@router.get("/properties/{property_id}")
async def get_property(property_id: str, services: ImpactServices = Depends(get_services)):
    record = await services.store.get_property(property_id)
    if record is None:
        raise NotFoundError("CustomerProperty", id=property_id)
    return record.to_dict()


@router.patch("/properties/{property_id}")
async def update_property(
    property_id: str,
    body: PropertyUpdate,
    services: ImpactServices = Depends(get_services),
):
    record = await services.store.update_property(property_id, body.model_dump(exclude_unset=True))
    if record is None:
        raise NotFoundError("CustomerProperty", id=property_id)
    return record.to_dict()


@router.delete("/properties/{property_id}")
async def deactivate_property(
    property_id: str,
    rep_id: str = Query(...),
    services: ImpactServices = Depends(get_services),
):
    if not await services.store.deactivate_property(property_id, rep_id):
        raise NotFoundError("CustomerProperty", id=property_id, rep_id=rep_id)
    return {"id": property_id, "is_active": False}


@router.get("/reps/{rep_id}/properties")
async def list_properties(
    rep_id: str,
    include_inactive: bool = Query(False),
    services: ImpactServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    records = await services.store.list_rep_properties(rep_id, active_only=not include_inactive)
    return [r.to_dict() for r in records]


@router.put("/reps/{rep_id}/contact")
async def upsert_rep_contact(
    rep_id: str,
    body: RepContactUpdate,
    services: ImpactServices = Depends(get_services),
):
    record = await services.store.upsert_rep_contact(rep_id, **body.model_dump(exclude_unset=True))
    return {
        "rep_id": record.rep_id,
        "name": record.name,
        "phone_number": record.phone_number,
        "email": record.email,
        "sms_alerts_enabled": record.sms_alerts_enabled,
    }


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@router.get("/reps/{rep_id}/alerts/pending")
async def pending_alerts(rep_id: str, services: ImpactServices = Depends(get_services)):
    return await services.ledger.pending_alerts(rep_id)


@router.get("/reps/{rep_id}/stats")
async def impact_stats(
    rep_id: str,
    days: int = Query(settings.IMPACT_STATS_DAYS, ge=1, le=3650),
    services: ImpactServices = Depends(get_services),
):
    return await services.ledger.impact_stats(rep_id, days)


@router.get("/alerts/{alert_id}")
async def get_alert(alert_id: str, services: ImpactServices = Depends(get_services)):
    return (await services.ledger.get_alert(alert_id)).to_dict()


@router.patch("/alerts/{alert_id}/status")
async def update_alert_status(
    alert_id: str,
    body: StatusUpdate,
    services: ImpactServices = Depends(get_services),
):
    alert = await services.ledger.update_status(
        alert_id, body.status,
        outcome=body.outcome,
        contact_notes=body.notes,
        contact_method=body.contact_method,
    )
    return alert.to_dict()


@router.post("/alerts/{alert_id}/convert")
async def convert_alert(
    alert_id: str,
    body: ConvertRequest,
    services: ImpactServices = Depends(get_services),
):
    alert = await services.ledger.convert(alert_id, body.job_id, body.conversion_date)
    return alert.to_dict()


@router.post("/alerts/{alert_id}/resend")
async def resend_alert(
    alert_id: str,
    body: ResendRequest,
    services: ImpactServices = Depends(get_services),
):
    result = await services.dispatcher.resend(alert_id, body.channel)
    return result.to_dict()


# ---------------------------------------------------------------------------
# Monitoring runs
# ---------------------------------------------------------------------------

@router.post("/monitoring/runs")
async def trigger_monitoring_run(
    body: MonitoringRunRequest,
    services: ImpactServices = Depends(get_services),
):
    events = [e.model_dump(mode="json") for e in body.events]
    summary = await services.orchestrator.run_monitoring(events, run_type=body.run_type)
    return summary.to_dict()


@router.get("/monitoring/runs/{run_id}")
async def get_monitoring_run(run_id: str, services: ImpactServices = Depends(get_services)):
    run = await services.store.get_run(run_id)
    if run is None:
        raise NotFoundError("MonitoringRun", id=run_id)
    return {
        "id": run.id,
        "run_type": run.run_type,
        "start_time": run.start_time.isoformat() if run.start_time else None,
        "end_time": run.end_time.isoformat() if run.end_time else None,
        "events_processed": run.events_processed,
        "properties_checked": run.properties_checked,
        "alerts_generated": run.alerts_generated,
        "messages_sent": run.messages_sent,
        "messages_failed": run.messages_failed,
        "messages_skipped": run.messages_skipped,
        "errors": run.errors,
    }


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------

@router.post("/sms/test")
async def test_sms(body: TestSmsRequest, services: ImpactServices = Depends(get_services)):
    return await send_test_sms(
        services.sms_gateway, body.phone_number,
        default_country_code=settings.SMS_DEFAULT_COUNTRY_CODE,
    )


@router.get("/channels/status")
async def channel_status(services: ImpactServices = Depends(get_services)):
    return services.gateway_status()
