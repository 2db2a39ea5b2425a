"""
FastAPI route: alert reporting, listing and resolution.

Provides endpoints to:
    POST  /api/v1/alerts               — report a new alert
    GET   /api/v1/alerts               — list live alerts (category / time window)
    GET   /api/v1/alerts/{id}          — fetch one alert
    PATCH /api/v1/alerts/{id}/resolve  — admin-only resolution
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from alerthub.app.alerts.models import AlertFilter, AuthClaim
from alerthub.app.alerts.service import AlertService
from alerthub.app.alerts.store import parse_category
from alerthub.app.api.deps import get_alert_service, get_claim
from alerthub.app.api.schemas import AlertOut, CreateAlertRequest

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.post(
    "",
    response_model=AlertOut,
    status_code=201,
    summary="Report an alert",
    description=(
        "Persists a new active alert (version 1) and pushes a `created` "
        "event to every connected observer."
    ),
)
async def create_alert(
    request: CreateAlertRequest,
    service: AlertService = Depends(get_alert_service),
):
    position = request.position.model_dump() if request.position else None
    alert = await service.create(request.category, request.description, position)
    return AlertOut.from_alert(alert)


@router.get(
    "",
    response_model=List[AlertOut],
    summary="List live alerts",
    description=(
        "Non-expired alerts matching every supplied filter, newest first. "
        "`from`/`to` bound the creation time (inclusive, ISO-8601). When the "
        "store is unreachable a cached view may be served with "
        "`X-Data-Stale: true`."
    ),
)
async def list_alerts(
    response: Response,
    category: Optional[str] = Query(None, examples=["fire"]),
    from_time: Optional[datetime] = Query(None, alias="from"),
    to_time: Optional[datetime] = Query(None, alias="to"),
    service: AlertService = Depends(get_alert_service),
):
    alert_filter = AlertFilter(
        category=parse_category(category) if category else None,
        from_time=from_time,
        to_time=to_time,
    )
    result = await service.query(alert_filter)
    if result.stale:
        response.headers["X-Data-Stale"] = "true"
    return [AlertOut.from_alert(a) for a in result.alerts]


@router.get(
    "/{alert_id}",
    response_model=AlertOut,
    summary="Fetch one alert",
)
async def get_alert(
    alert_id: str,
    service: AlertService = Depends(get_alert_service),
):
    return AlertOut.from_alert(await service.get(alert_id))


@router.patch(
    "/{alert_id}/resolve",
    response_model=AlertOut,
    summary="Resolve an alert (admin)",
    description=(
        "Requires a bearer token with the admin role. Idempotent: resolving "
        "an already-resolved alert returns it unchanged. Pushes a `resolved` "
        "event only when the state actually changed."
    ),
)
async def resolve_alert(
    alert_id: str,
    claim: AuthClaim = Depends(get_claim),
    service: AlertService = Depends(get_alert_service),
):
    alert = await service.resolve(alert_id, claim)
    return AlertOut.from_alert(alert)
