"""
API request and response models for SecurePower REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py and
auth/models.py, which own the internal domain representation. Route handlers
map between the two.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from dataclasses import asdict
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import (
    AuthOutcome,
    AuthStatus,
    CredentialKind,
    Failed,
    FailedAtThreshold,
    FailedWithAlert,
    LockedOut,
    NotConfigured,
    Success,
)
from core.models import AlertType, Device, LocationPoint, NotificationOutcome, SecurityEvent, TrackingSession

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialSetup(BaseModel):
    """Request body for POST /devices/{device_id}/credentials.

    Format rules (digits-only PIN of 4-6, password of 8+) are enforced by the
    credential store, not here, so the same rules apply to every caller.
    """

    kind: CredentialKind
    credential: str = Field(min_length=1, max_length=256)


class CredentialCheck(BaseModel):
    """Request body for POST /devices/{device_id}/verify."""

    kind: CredentialKind
    credential: str = Field(max_length=256)


class VerifyResponse(BaseModel):
    """The AuthOutcome of one credential check, flattened for JSON.

    outcome is one of: success, not_configured, failed, failed_at_threshold,
    failed_with_alert, locked_out. allow_poweroff is True only for success.
    """

    model_config = ConfigDict(frozen=True)

    outcome: str
    allow_poweroff: bool = False
    attempt_count: Optional[int] = None
    lockout_seconds: Optional[int] = None
    remaining_seconds: Optional[int] = None

    @classmethod
    def from_outcome(cls, outcome: AuthOutcome) -> "VerifyResponse":
        if isinstance(outcome, Success):
            return cls(outcome="success", allow_poweroff=True)
        if isinstance(outcome, NotConfigured):
            return cls(outcome="not_configured")
        if isinstance(outcome, FailedWithAlert):
            return cls(
                outcome="failed_with_alert",
                attempt_count=outcome.attempt_count,
                lockout_seconds=outcome.lockout_seconds,
            )
        if isinstance(outcome, FailedAtThreshold):
            return cls(outcome="failed_at_threshold", attempt_count=outcome.attempt_count)
        if isinstance(outcome, Failed):
            return cls(outcome="failed", attempt_count=outcome.attempt_count)
        if isinstance(outcome, LockedOut):
            return cls(outcome="locked_out", remaining_seconds=outcome.remaining_seconds)
        raise TypeError(f"Unknown auth outcome: {outcome!r}")


class AuthStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    failed_count: int
    last_attempt_at: Optional[int]
    locked_out: bool
    lockout_until: Optional[int]
    pin_configured: bool
    password_configured: bool

    @classmethod
    def from_status(cls, status: AuthStatus) -> "AuthStatusResponse":
        return cls(**asdict(status))


# ---------------------------------------------------------------------------
# Users and devices
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /users. Replaces the profile if user_id exists."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=128)
    name: str = Field(default="", max_length=255)
    trusted_number: Optional[str] = Field(default=None, max_length=32)
    family_emails: list[str] = Field(default_factory=list, max_length=10)
    fcm_tokens: list[str] = Field(default_factory=list, max_length=20)
    settings: dict[str, Any] = Field(default_factory=dict)


class DeviceCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    device_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    name: str = Field(default="", max_length=255)
    model: str = Field(default="", max_length=255)


class LocationIn(BaseModel):
    """One location fix. timestamp is epoch milliseconds."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy: float = Field(ge=0)
    timestamp: int = Field(gt=0)
    speed: Optional[float] = None
    bearing: Optional[float] = None
    altitude: Optional[float] = None
    battery_level: Optional[int] = Field(default=None, ge=0, le=100)
    connection_type: Optional[str] = Field(default=None, max_length=20)

    def to_point(self) -> LocationPoint:
        return LocationPoint(**self.model_dump())


class LocationOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    accuracy: float
    timestamp: int
    speed: Optional[float] = None
    bearing: Optional[float] = None
    altitude: Optional[float] = None
    battery_level: Optional[int] = None
    connection_type: Optional[str] = None
    address: Optional[str] = None

    @classmethod
    def from_point(cls, point: Optional[LocationPoint]) -> Optional["LocationOut"]:
        return cls(**asdict(point)) if point is not None else None


class DeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    user_id: str
    name: str
    model: str
    status: str
    last_alert: Optional[int]
    last_alert_type: Optional[AlertType]
    last_location: Optional[LocationOut]

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        return cls(
            device_id=device.device_id,
            user_id=device.user_id,
            name=device.name,
            model=device.model,
            status=device.status,
            last_alert=device.last_alert,
            last_alert_type=device.last_alert_type,
            last_location=LocationOut.from_point(device.last_location),
        )


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertReport(BaseModel):
    """Request body for POST /alerts -- a trigger from a device-side detector."""

    device_id: str = Field(min_length=1, max_length=128)
    type: AlertType
    details: dict[str, Any] = Field(default_factory=dict)
    location: Optional[LocationIn] = None


class OutcomeRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: str
    status: str
    sent_at: Optional[int] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: NotificationOutcome) -> "OutcomeRow":
        return cls(
            channel=outcome.channel,
            status=outcome.status,
            sent_at=outcome.sent_at,
            skipped_reason=outcome.skipped_reason,
            error=outcome.error,
        )


class EventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    device_id: str
    user_id: str
    type: AlertType
    timestamp: int
    session_id: Optional[str]
    details: dict[str, Any]
    processed: bool
    processed_at: Optional[int]
    processing_error: Optional[str]
    outcomes: list[OutcomeRow]

    @classmethod
    def from_event(cls, event: SecurityEvent) -> "EventResponse":
        return cls(
            event_id=event.event_id,
            device_id=event.device_id,
            user_id=event.user_id,
            type=event.type,
            timestamp=event.timestamp,
            session_id=event.session_id,
            details=event.details,
            processed=event.processed,
            processed_at=event.processed_at,
            processing_error=event.processing_error,
            outcomes=[OutcomeRow.from_outcome(o) for o in event.outcomes],
        )


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------


class AppendResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    accepted: bool = True
    evicted: int


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    device_id: str
    alert_type: AlertType
    active: bool
    start_time: int
    end_time: Optional[int]
    close_reason: Optional[str]
    last_location: Optional[LocationOut]
    last_update: Optional[int]

    @classmethod
    def from_session(cls, session: TrackingSession) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            device_id=session.device_id,
            alert_type=session.alert_type,
            active=session.active,
            start_time=session.start_time,
            end_time=session.end_time,
            close_reason=session.close_reason,
            last_location=LocationOut.from_point(session.last_location),
            last_update=session.last_update,
        )


class CloseResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    closed: bool
