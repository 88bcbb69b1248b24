"""
api/routes/v1/alerts.py -- Security triggers and their processing record.

Routes:
  POST   /alerts                      -- report a trigger (SIM change, uninstall attempt, ...)
  GET    /alerts/{event_id}           -- event with its full notification audit trail
  POST   /alerts/{event_id}/process   -- retry an unprocessed event (operator)

POST /alerts returns 201 with the processed event. An event that could not be
processed (owner unknown) is still stored; the 422 body carries its event id
in detail so an operator can retry once the record is fixed.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from alerts.orchestrator import SecurityOrchestrator
from alerts.store import AlertStore
from api.limiter import api_limit, limiter
from api.models import AlertReport, ErrorDetail, EventResponse
from auth.dependencies import ensure_device_access, get_api_key, require_operator
from auth.models import ApiKey

router = APIRouter()


def _event_not_found(event_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="not_found", message=f"Event {event_id} not found.").model_dump(),
    )


@limiter.limit(api_limit)
@router.post("/alerts", response_model=EventResponse, status_code=201)
def report_alert(
    request: Request,
    body: AlertReport,
    key: ApiKey = Depends(get_api_key),
) -> EventResponse:
    ensure_device_access(key, body.device_id)
    orchestrator: SecurityOrchestrator = request.app.state.orchestrator
    event = orchestrator.report(
        body.device_id,
        body.type,
        details=body.details,
        location=body.location.to_point() if body.location else None,
    )
    return EventResponse.from_event(event)


@limiter.limit(api_limit)
@router.get("/alerts/{event_id}", response_model=EventResponse)
def get_alert(
    request: Request,
    event_id: str,
    key: ApiKey = Depends(get_api_key),
) -> EventResponse:
    store: AlertStore = request.app.state.alert_store
    event = store.get_event(event_id)
    if event is None:
        raise _event_not_found(event_id)
    ensure_device_access(key, event.device_id)
    return EventResponse.from_event(event)


@limiter.limit(api_limit)
@router.post("/alerts/{event_id}/process", response_model=EventResponse)
def process_alert(
    request: Request,
    event_id: str,
    _key: ApiKey = Depends(require_operator),
) -> EventResponse:
    """Run (or resume) processing. A processed event is returned unchanged."""
    store: AlertStore = request.app.state.alert_store
    if store.get_event(event_id) is None:
        raise _event_not_found(event_id)
    orchestrator: SecurityOrchestrator = request.app.state.orchestrator
    return EventResponse.from_event(orchestrator.process(event_id))
