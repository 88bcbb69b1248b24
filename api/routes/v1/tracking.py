"""
api/routes/v1/tracking.py -- Location streaming into tracking sessions.

Routes:
  POST   /tracking/{session_id}/locations  -- append one fix (202)
  GET    /tracking/{session_id}            -- session state and last location
  GET    /tracking/{session_id}/locations  -- the retained log, oldest first
  POST   /tracking/{session_id}/close      -- stop tracking (manual close)

Unknown sessions map to 404 and closed sessions to 409 through the exception
handlers in api/main.py. The address of an accepted fix is resolved after the
response is sent (BackgroundTasks), so a slow geocoder never delays the device.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request

from api.limiter import api_limit, limiter
from api.models import AppendResponse, CloseResponse, LocationIn, LocationOut, SessionResponse
from auth.dependencies import ensure_device_access, get_api_key
from auth.models import ApiKey
from tracking.sessions import TrackingService

router = APIRouter()


def _authorized_session(request: Request, session_id: str, key: ApiKey):
    tracking: TrackingService = request.app.state.tracking
    session = tracking.get(session_id)
    ensure_device_access(key, session.device_id)
    return tracking, session


@limiter.limit(api_limit)
@router.post("/tracking/{session_id}/locations", response_model=AppendResponse, status_code=202)
def append_location(
    request: Request,
    session_id: str,
    body: LocationIn,
    background_tasks: BackgroundTasks,
    key: ApiKey = Depends(get_api_key),
) -> AppendResponse:
    tracking, _session = _authorized_session(request, session_id, key)
    evicted = tracking.append(session_id, body.to_point())
    background_tasks.add_task(tracking.resolve_address, session_id, body.timestamp)
    return AppendResponse(evicted=evicted)


@limiter.limit(api_limit)
@router.get("/tracking/{session_id}", response_model=SessionResponse)
def get_session(
    request: Request,
    session_id: str,
    key: ApiKey = Depends(get_api_key),
) -> SessionResponse:
    _tracking, session = _authorized_session(request, session_id, key)
    return SessionResponse.from_session(session)


@limiter.limit(api_limit)
@router.get("/tracking/{session_id}/locations", response_model=list[LocationOut])
def list_locations(
    request: Request,
    session_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    key: ApiKey = Depends(get_api_key),
) -> list[LocationOut]:
    tracking, _session = _authorized_session(request, session_id, key)
    return [LocationOut.from_point(p) for p in tracking.locations(session_id, limit=limit)]


@limiter.limit(api_limit)
@router.post("/tracking/{session_id}/close", response_model=CloseResponse)
def close_session(
    request: Request,
    session_id: str,
    key: ApiKey = Depends(get_api_key),
) -> CloseResponse:
    """Close the session. closed is False if it had already ended."""
    tracking, _session = _authorized_session(request, session_id, key)
    return CloseResponse(session_id=session_id, closed=tracking.close(session_id))
