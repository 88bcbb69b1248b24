"""
api/routes/v1/credentials.py -- The credential gate over HTTP.

Routes:
  POST   /devices/{device_id}/credentials   -- set up a PIN or password (204)
  POST   /devices/{device_id}/verify        -- check a credential before power-off
  GET    /devices/{device_id}/auth-status   -- counters and lock state
  DELETE /devices/{device_id}/credentials   -- operator reset (account recovery)

verify always answers 200 with the outcome in the body, including failed and
locked-out checks: the device UI needs the attempt count and the remaining
lockout to render its prompt. Escalation side effects (event, tracking,
notifications) happen inside the call but never change the response.
"""

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import api_limit, limiter, verify_limit
from api.models import AuthStatusResponse, CredentialCheck, CredentialSetup, VerifyResponse
from auth.dependencies import ensure_device_access, get_api_key, require_operator
from auth.gate import AuthGate
from auth.models import ApiKey

router = APIRouter()


@limiter.limit(api_limit)
@router.post("/devices/{device_id}/credentials", status_code=204)
def setup_credential(
    request: Request,
    device_id: str,
    body: CredentialSetup,
    key: ApiKey = Depends(get_api_key),
) -> Response:
    """Store a new credential of body.kind, replacing any existing one.

    A malformed credential raises InvalidCredentialFormat, mapped to 422 by
    the handler in api/main.py.
    """
    ensure_device_access(key, device_id)
    gate: AuthGate = request.app.state.gate
    gate.setup(device_id, body.kind, body.credential)
    return Response(status_code=204)


@limiter.limit(verify_limit)
@router.post("/devices/{device_id}/verify", response_model=VerifyResponse)
def verify_credential(
    request: Request,
    device_id: str,
    body: CredentialCheck,
    key: ApiKey = Depends(get_api_key),
) -> VerifyResponse:
    ensure_device_access(key, device_id)
    gate: AuthGate = request.app.state.gate
    return VerifyResponse.from_outcome(gate.verify(device_id, body.kind, body.credential))


@limiter.limit(api_limit)
@router.get("/devices/{device_id}/auth-status", response_model=AuthStatusResponse)
def auth_status(
    request: Request,
    device_id: str,
    key: ApiKey = Depends(get_api_key),
) -> AuthStatusResponse:
    ensure_device_access(key, device_id)
    gate: AuthGate = request.app.state.gate
    return AuthStatusResponse.from_status(gate.status(device_id))


@limiter.limit(api_limit)
@router.delete("/devices/{device_id}/credentials", status_code=204)
def reset_credentials(
    request: Request,
    device_id: str,
    _key: ApiKey = Depends(require_operator),
) -> Response:
    """Delete both credentials and clear the attempt counters.

    Operator only: a device key able to reset its own gate would let anyone
    holding the handset bypass it.
    """
    gate: AuthGate = request.app.state.gate
    gate.reset(device_id)
    return Response(status_code=204)
