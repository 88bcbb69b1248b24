"""
core/models.py -- Domain dataclasses shared by the gate, dispatcher and tracker.

Pure data containers. Stores own persistence, services own behaviour.
All timestamps are integer epoch milliseconds (UTC).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class AlertType(str, Enum):
    UNAUTHORIZED_POWEROFF = "UNAUTHORIZED_POWEROFF"
    SIM_CHANGED = "SIM_CHANGED"
    FAILED_AUTH_THRESHOLD = "FAILED_AUTH_THRESHOLD"
    APP_UNINSTALL_ATTEMPT = "APP_UNINSTALL_ATTEMPT"
    DEVICE_ADMIN_REMOVED = "DEVICE_ADMIN_REMOVED"


# Alert types that justify waking trusted contacts over direct messaging.
# Everything else is push-only.
CRITICAL_ALERT_TYPES = frozenset(
    {
        AlertType.UNAUTHORIZED_POWEROFF,
        AlertType.SIM_CHANGED,
        AlertType.FAILED_AUTH_THRESHOLD,
    }
)

ALERT_TYPE_MESSAGES: dict[AlertType, str] = {
    AlertType.UNAUTHORIZED_POWEROFF: "Unauthorized power-off attempt",
    AlertType.SIM_CHANGED: "SIM card changed",
    AlertType.FAILED_AUTH_THRESHOLD: "Multiple failed unlock attempts",
    AlertType.APP_UNINSTALL_ATTEMPT: "App uninstall attempt",
    AlertType.DEVICE_ADMIN_REMOVED: "Device admin removed",
}

DEVICE_STATUS_ACTIVE = "active"
DEVICE_STATUS_ALERT = "security_alert"

CLOSE_REASON_MANUAL = "manual"
CLOSE_REASON_AGE_LIMIT = "age_limit"


@dataclass(frozen=True)
class LocationPoint:
    """One fix reported by the device's location producer.

    Frozen once recorded. The only later change is the reverse-geocoded
    address, which the tracking service writes to the stored copy.
    """

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


@dataclass
class NotificationOutcome:
    """Audit record of one channel's handling of one event.

    status is "sent" when at least one recipient accepted, "skipped" when the
    channel was never called, and "error" otherwise. A sent outcome keeps the
    failures of any recipients it did not reach in error.
    """

    channel: str
    sent: bool = False
    sent_at: Optional[int] = None
    skipped_reason: Optional[str] = None  # "rate_limit" | "disabled" | "not_eligible" | "no_recipient"
    error: Optional[str] = None
    recipients: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.sent:
            return "sent"
        if self.skipped_reason:
            return "skipped"
        return "error"


@dataclass
class SecurityEvent:
    """A triggered security response.

    Created once per escalation or trigger. After creation only session_id,
    the processed flags and the append-only outcomes list change.

    event_id is None before the record is written to the store.
    """

    device_id: str
    user_id: str
    type: AlertType
    timestamp: int
    event_id: Optional[str] = None
    session_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    location: Optional[LocationPoint] = None
    processed: bool = False
    processed_at: Optional[int] = None
    processing_error: Optional[str] = None
    outcomes: list[NotificationOutcome] = field(default_factory=list)


@dataclass
class TrackingSession:
    """Bounded-lifetime location tracking tied to one security response.

    The location log itself lives in the tracking store; last_location is the
    newest accepted point, kept on the session for cheap reads.
    """

    session_id: str
    device_id: str
    user_id: str
    alert_type: AlertType
    start_time: int
    active: bool = True
    end_time: Optional[int] = None
    close_reason: Optional[str] = None  # "manual" | "age_limit"
    last_location: Optional[LocationPoint] = None
    last_update: Optional[int] = None


@dataclass
class UserProfile:
    """The owner of one or more protected devices and their trusted contacts.

    settings drives channel policy:
      "<channel>_notifications": False     -- channel off for every alert type
      "disabled_channels": {type: [names]} -- channel off for one alert type
    """

    user_id: str
    name: str = ""
    trusted_number: Optional[str] = None
    family_emails: list[str] = field(default_factory=list)
    fcm_tokens: list[str] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass
class Device:
    """A protected handset and its status projection."""

    device_id: str
    user_id: str
    name: str = ""
    model: str = ""
    status: str = DEVICE_STATUS_ACTIVE
    last_alert: Optional[int] = None
    last_alert_type: Optional[AlertType] = None
    last_location: Optional[LocationPoint] = None
