"""
auth/dependencies.py -- FastAPI Depends() helpers for API-key authentication.

Every HTTP client authenticates with an X-API-Key header. Keys are stored as
HMAC-SHA256 hashes (see auth/hashing.py), so lookup is a single indexed query.

Two kinds of key:
  operator key  (device_id None)  -- may act on any device, session or event
  device key    (device_id set)   -- may act only on its own device

try_get_api_key() is the soft variant (returns None on failure).
get_api_key() wraps it and raises HTTP 401 if unauthenticated.
require_operator() wraps get_api_key() and raises HTTP 403 for device keys.
ensure_device_access() is called by handlers once the target device is known.

Layer rule: no imports from api/, alerts/, or tracking/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.hashing import hash_api_key
from auth.models import ApiKey


def try_get_api_key(request: Request) -> ApiKey | None:
    """Resolve the request's X-API-Key header to an active key record.

    Returns None on any failure. Never raises -- callers that need a hard
    401 should use get_api_key().
    """
    raw_key = request.headers.get("X-API-Key", "")
    if not raw_key:
        return None
    credential_store = request.app.state.credential_store
    key = credential_store.get_api_key_by_hash(hash_api_key(raw_key))
    if key is None or not key.is_active:
        return None
    credential_store.update_api_key_last_used(key.id)
    return key


def get_api_key(request: Request) -> ApiKey:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(key: ApiKey = Depends(get_api_key)): ...
    """
    key = try_get_api_key(request)
    if key is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "A valid X-API-Key header is required."},
        )
    return key


def require_operator(request: Request) -> ApiKey:
    """Require an operator key. Raises HTTP 401 if unauthenticated, HTTP 403 for device keys."""
    key = get_api_key(request)
    if not key.is_operator:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Operator access required."},
        )
    return key


def ensure_device_access(key: ApiKey, device_id: str) -> None:
    """Raise HTTP 403 unless key may act on device_id.

    Device keys are confined to their own device [M1]. The 403 does not
    reveal whether the other device exists.
    """
    if key.is_operator or key.device_id == device_id:
        return
    raise HTTPException(
        status_code=403,
        detail={"code": "forbidden", "message": "This key is not authorized for that device."},
    )
