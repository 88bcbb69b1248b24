"""
api/routes/v1/devices.py -- User and device registration.

Routes:
  POST   /users                -- create or replace a user profile (operator)
  POST   /devices              -- register a device (operator)
  GET    /devices/{device_id}  -- device status projection
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from alerts.store import AlertStore
from api.limiter import api_limit, limiter
from api.models import DeviceCreate, DeviceResponse, ErrorDetail, UserCreate
from auth.dependencies import ensure_device_access, get_api_key, require_operator
from auth.models import ApiKey
from core.models import Device, UserProfile

router = APIRouter()


@limiter.limit(api_limit)
@router.post("/users", status_code=204)
def save_user(
    request: Request,
    body: UserCreate,
    _key: ApiKey = Depends(require_operator),
) -> Response:
    store: AlertStore = request.app.state.alert_store
    store.save_user(UserProfile(**body.model_dump()))
    return Response(status_code=204)


@limiter.limit(api_limit)
@router.post("/devices", response_model=DeviceResponse, status_code=201)
def register_device(
    request: Request,
    body: DeviceCreate,
    _key: ApiKey = Depends(require_operator),
) -> DeviceResponse:
    store: AlertStore = request.app.state.alert_store
    if store.get_user(body.user_id) is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"User {body.user_id} not found.").model_dump(),
        )
    store.save_device(Device(**body.model_dump()))
    return DeviceResponse.from_device(store.get_device(body.device_id))


@limiter.limit(api_limit)
@router.get("/devices/{device_id}", response_model=DeviceResponse)
def get_device(
    request: Request,
    device_id: str,
    key: ApiKey = Depends(get_api_key),
) -> DeviceResponse:
    ensure_device_access(key, device_id)
    store: AlertStore = request.app.state.alert_store
    device = store.get_device(device_id)
    if device is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"Device {device_id} not found.").model_dump(),
        )
    return DeviceResponse.from_device(device)
