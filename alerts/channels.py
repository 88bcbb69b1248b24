"""
alerts/channels.py -- Outbound notification channels.

Every channel is a narrow capability:

    recipients(user) -> list of addresses this channel would use for the user
    send(recipient, message) -> provider message id, or raises ChannelDeliveryError

The dispatcher hands each channel a structured AlertMessage, never
pre-formatted text. Each adapter renders what its provider needs.

Shipped adapters (all HTTP via a module-level requests.Session):
  TwilioChannel      -- WhatsApp or SMS to the user's trusted number (critical, rate limited)
  SendGridChannel    -- e-mail to the user's family addresses (critical)
  FcmPushChannel     -- push to the user's other devices (every alert type)

build_channels(settings) returns the adapters whose credentials are present.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from core.config import Settings
from core.errors import ChannelDeliveryError
from core.models import ALERT_TYPE_MESSAGES, AlertType, LocationPoint, UserProfile

logger = logging.getLogger("securepower.channels")

TWILIO_MESSAGES_API = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
SENDGRID_MAIL_API = "https://api.sendgrid.com/v3/mail/send"
FCM_SEND_API = "https://fcm.googleapis.com/v1/projects/{project}/messages:send"

_HTTP_TIMEOUT = 10  # seconds, per provider call

# Shared across all adapters for connection pooling. Providers are known
# endpoints; 3 redirects is generous.
_session = requests.Session()
_session.max_redirects = 3


@dataclass(frozen=True)
class AlertMessage:
    """Structured content of one notification.

    summary is set only for end-of-session reports:
      {"reason", "started", "ended", "points"}
    """

    alert_type: AlertType
    device_id: str
    timestamp: int
    event_id: Optional[str] = None
    device_name: str = ""
    session_id: Optional[str] = None
    tracking_url: Optional[str] = None
    location: Optional[LocationPoint] = None
    details: dict[str, Any] = field(default_factory=dict)
    summary: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Rendering helpers (adapters only)
# ---------------------------------------------------------------------------


def _location_text(location: Optional[LocationPoint]) -> str:
    if location is None:
        return "Unknown"
    return location.address or f"{location.lat:.4f}, {location.lng:.4f}"


def render_subject(message: AlertMessage) -> str:
    title = ALERT_TYPE_MESSAGES.get(message.alert_type, "Security alert")
    if message.summary is not None:
        return f"SecurePower: tracking ended for {message.device_name or message.device_id}"
    return f"SecurePower Alert: {title}"


def render_text(message: AlertMessage) -> str:
    """Short plain-text body, sized for a single SMS where possible."""
    device = message.device_name or "your device"
    if message.summary is not None:
        return (
            f"SecurePower: tracking session for {device} ended ({message.summary.get('reason')}). "
            f"{message.summary.get('points', 0)} locations recorded. "
            f"Last location: {_location_text(message.location)}."
        )
    title = ALERT_TYPE_MESSAGES.get(message.alert_type, "Security alert")
    text = f"SecurePower Alert: {title} on {device}. Location: {_location_text(message.location)}."
    attempts = message.details.get("failed_attempts")
    if attempts:
        text += f" Failed attempts: {attempts}."
    if message.tracking_url:
        text += f" Track: {message.tracking_url}"
    return text


def _render_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


# ---------------------------------------------------------------------------
# Channel interface
# ---------------------------------------------------------------------------


class Channel(ABC):
    """One independent outbound notification capability.

    critical channels are only used for CRITICAL_ALERT_TYPES. A positive
    min_interval_seconds limits sends per user to one per window.
    """

    def __init__(self, name: str, critical: bool = False, min_interval_seconds: int = 0) -> None:
        self.name = name
        self.critical = critical
        self.min_interval_seconds = min_interval_seconds

    @abstractmethod
    def recipients(self, user: UserProfile) -> list[str]:
        """Addresses this channel would deliver to for user. Empty means skip."""

    @abstractmethod
    def send(self, recipient: str, message: AlertMessage) -> Optional[str]:
        """Deliver one message. Return the provider's id, raise ChannelDeliveryError on failure."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


def _post(url: str, provider: str, **kwargs) -> requests.Response:
    try:
        resp = _session.post(url, timeout=_HTTP_TIMEOUT, **kwargs)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ChannelDeliveryError(f"{provider} request failed: {e}") from e
    return resp


def _response_field(resp: requests.Response, key: str) -> Optional[str]:
    """Provider message id from an accepted (2xx) response, or None if the body is not JSON."""
    try:
        body = resp.json()
    except ValueError:
        logger.warning("Provider accepted the message but returned no JSON body (status %s)", resp.status_code)
        return None
    return body.get(key) if isinstance(body, dict) else None


# ---------------------------------------------------------------------------
# Twilio (WhatsApp / SMS)
# ---------------------------------------------------------------------------


class TwilioChannel(Channel):
    """Direct message to the trusted contact through Twilio's Messages API.

    whatsapp=True prefixes both numbers with "whatsapp:" -- the only
    difference between the two transports on Twilio's side.
    """

    def __init__(
        self,
        name: str,
        account_sid: str,
        auth_token: str,
        from_number: str,
        whatsapp: bool = False,
        min_interval_seconds: int = 300,
    ) -> None:
        super().__init__(name, critical=True, min_interval_seconds=min_interval_seconds)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.whatsapp = whatsapp

    def recipients(self, user: UserProfile) -> list[str]:
        return [user.trusted_number] if user.trusted_number else []

    def _address(self, number: str) -> str:
        return f"whatsapp:{number}" if self.whatsapp else number

    def send(self, recipient: str, message: AlertMessage) -> Optional[str]:
        resp = _post(
            TWILIO_MESSAGES_API.format(sid=self.account_sid),
            "Twilio",
            data={
                "From": self._address(self.from_number),
                "To": self._address(recipient),
                "Body": render_text(message),
            },
            auth=(self.account_sid, self.auth_token),
        )
        return _response_field(resp, "sid")


# ---------------------------------------------------------------------------
# SendGrid (e-mail)
# ---------------------------------------------------------------------------


class SendGridChannel(Channel):
    def __init__(self, api_key: str, from_email: str, name: str = "email") -> None:
        super().__init__(name, critical=True)
        self.api_key = api_key
        self.from_email = from_email

    def recipients(self, user: UserProfile) -> list[str]:
        return list(user.family_emails)

    def send(self, recipient: str, message: AlertMessage) -> Optional[str]:
        body = render_text(message) + f"\nTime: {_render_time(message.timestamp)}"
        if message.details.get("sim_change"):
            change = message.details["sim_change"]
            body += f"\nSIM change: old {change.get('old_iccid') or 'N/A'}, new {change.get('new_iccid') or 'N/A'}"
        resp = _post(
            SENDGRID_MAIL_API,
            "SendGrid",
            json={
                "personalizations": [{"to": [{"email": recipient}]}],
                "from": {"email": self.from_email, "name": "SecurePower"},
                "subject": render_subject(message),
                "content": [{"type": "text/plain", "value": body}],
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return resp.headers.get("X-Message-Id")


# ---------------------------------------------------------------------------
# Firebase Cloud Messaging (push)
# ---------------------------------------------------------------------------


class FcmPushChannel(Channel):
    def __init__(self, project_id: str, access_token: str, name: str = "push") -> None:
        super().__init__(name, critical=False)
        self.project_id = project_id
        self.access_token = access_token

    def recipients(self, user: UserProfile) -> list[str]:
        return list(user.fcm_tokens)

    def send(self, recipient: str, message: AlertMessage) -> Optional[str]:
        # FCM data payloads must be string-valued.
        data = {
            "alertType": message.alert_type.value,
            "deviceId": message.device_id,
            "alertId": message.event_id or "",
            "sessionId": message.session_id or "",
        }
        resp = _post(
            FCM_SEND_API.format(project=self.project_id),
            "FCM",
            json={
                "message": {
                    "token": recipient,
                    "notification": {"title": render_subject(message), "body": render_text(message)},
                    "data": data,
                }
            },
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        return _response_field(resp, "name")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_channels(settings: Settings) -> list[Channel]:
    """Return the channels whose provider credentials are configured, in dispatch order."""
    channels: list[Channel] = []
    twilio_ready = bool(settings.twilio_account_sid and settings.twilio_auth_token)
    if twilio_ready and settings.twilio_whatsapp_from:
        channels.append(
            TwilioChannel(
                "whatsapp",
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                settings.twilio_whatsapp_from,
                whatsapp=True,
                min_interval_seconds=settings.message_rate_limit_seconds,
            )
        )
    if twilio_ready and settings.twilio_sms_from:
        channels.append(
            TwilioChannel(
                "sms",
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                settings.twilio_sms_from,
                min_interval_seconds=settings.message_rate_limit_seconds,
            )
        )
    if settings.sendgrid_api_key:
        channels.append(SendGridChannel(settings.sendgrid_api_key, settings.sendgrid_from_email))
    if settings.fcm_project_id and settings.fcm_access_token:
        channels.append(FcmPushChannel(settings.fcm_project_id, settings.fcm_access_token))

    if not channels:
        logger.warning("No notification channels configured -- alerts will be recorded but not delivered")
    else:
        logger.info("Notification channels: %s", ", ".join(c.name for c in channels))
    return channels
