"""
alerts/store.py -- SQLAlchemy-backed persistence for users, devices and events.

Uses SQLAlchemy Core (not ORM) so the dataclasses in core/models.py remain the
authoritative domain representation.

Pattern: Repository + Data Mapper. AlertStore is the repository; the _row_to_*
functions translate rows into domain dataclasses. The dispatcher and the
orchestrator never touch SQL directly.

Audit trail: notification_outcomes is append-only. Outcomes are inserted,
never updated or deleted, so every attempt for an event survives re-processing.

Rate limiting: channel_sends holds the last send instant per (user, channel).
claim_send_slot() is a compare-and-swap so two dispatches for the same user
cannot both pass the window check.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = AlertStore()
    store.save_user(UserProfile(user_id="u1", trusted_number="+15550100"))
    store.save_device(Device(device_id="d1", user_id="u1"))
    event = store.create_event(SecurityEvent(...))
    store.close()
"""

import json
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.clock import Clock, now_ms
from core.db import create_store_engine
from core.models import AlertType, Device, LocationPoint, NotificationOutcome, SecurityEvent, UserProfile

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'securepower_alerts.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("trusted_number", String(32)),
    Column("family_emails", Text),  # JSON array
    Column("fcm_tokens", Text),  # JSON array
    Column("settings", Text),  # JSON object
)

_devices = Table(
    "devices",
    metadata,
    Column("device_id", String(128), primary_key=True),
    Column("user_id", String(128), nullable=False),
    Column("name", String(255), nullable=False, server_default=""),
    Column("model", String(255), nullable=False, server_default=""),
    Column("status", String(30), nullable=False, server_default="active"),
    Column("last_alert", BigInteger),
    Column("last_alert_type", String(40)),
    Column("last_location", Text),  # JSON LocationPoint
)

_events = Table(
    "security_events",
    metadata,
    Column("event_id", String(32), primary_key=True),
    Column("device_id", String(128), nullable=False),
    Column("user_id", String(128), nullable=False),
    Column("type", String(40), nullable=False),
    Column("timestamp", BigInteger, nullable=False),
    Column("session_id", String(200)),
    Column("details", Text),  # JSON object
    Column("location", Text),  # JSON LocationPoint
    Column("processed", Integer, nullable=False, server_default="0"),
    Column("processed_at", BigInteger),
    Column("processing_error", Text),
)

_outcomes = Table(
    "notification_outcomes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(32), nullable=False, index=True),
    Column("channel", String(40), nullable=False),
    Column("sent", Integer, nullable=False, server_default="0"),
    Column("sent_at", BigInteger),
    Column("skipped_reason", String(40)),
    Column("error", Text),
    Column("recipients", Text),  # JSON array
    Column("recorded_at", BigInteger, nullable=False),
)

_channel_sends = Table(
    "channel_sends",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("channel", String(40), primary_key=True),
    Column("last_sent_at", BigInteger, nullable=False),
)


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------


def _point_to_json(point: Optional[LocationPoint]) -> Optional[str]:
    return json.dumps(asdict(point)) if point is not None else None


def _point_from_json(raw: Optional[str]) -> Optional[LocationPoint]:
    return LocationPoint(**json.loads(raw)) if raw else None


def _loads(raw: Optional[str], default: Any) -> Any:
    return json.loads(raw) if raw else default


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AlertStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Clock = now_ms) -> None:
        self._clock = clock
        self.engine: Engine = create_store_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def save_user(self, user: UserProfile) -> None:
        """Insert or replace a user profile."""
        values = {
            "name": user.name,
            "trusted_number": user.trusted_number,
            "family_emails": json.dumps(user.family_emails),
            "fcm_tokens": json.dumps(user.fcm_tokens),
            "settings": json.dumps(user.settings),
        }
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.user_id == user.user_id).values(**values))
            if result.rowcount == 0:
                conn.execute(_users.insert().values(user_id=user.user_id, **values))
            conn.commit()

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.user_id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def save_device(self, device: Device) -> None:
        """Register a device, or update name/model/owner of an existing one.

        Status fields are left alone on update -- they belong to the
        orchestrator's projection, not to registration.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update()
                .where(_devices.c.device_id == device.device_id)
                .values(user_id=device.user_id, name=device.name, model=device.model)
            )
            if result.rowcount == 0:
                conn.execute(
                    _devices.insert().values(
                        device_id=device.device_id,
                        user_id=device.user_id,
                        name=device.name,
                        model=device.model,
                        status=device.status,
                    )
                )
            conn.commit()

    def get_device(self, device_id: str) -> Optional[Device]:
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(_devices.c.device_id == device_id)).fetchone()
        return _row_to_device(row) if row is not None else None

    def update_device_status(
        self,
        device_id: str,
        status: str,
        last_alert: Optional[int] = None,
        last_alert_type: Optional[AlertType] = None,
    ) -> bool:
        """Write the device-status projection. Returns False if the device is unknown.

        last_alert / last_alert_type are only written when given, so returning
        a device to "active" keeps the record of what last happened to it.
        """
        values: dict[str, Any] = {"status": status}
        if last_alert is not None:
            values["last_alert"] = last_alert
        if last_alert_type is not None:
            values["last_alert_type"] = AlertType(last_alert_type).value
        with self.engine.connect() as conn:
            result = conn.execute(_devices.update().where(_devices.c.device_id == device_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def update_device_location(self, device_id: str, point: LocationPoint) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update().where(_devices.c.device_id == device_id).values(last_location=_point_to_json(point))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def create_event(self, event: SecurityEvent) -> SecurityEvent:
        """Persist a new event, assigning event_id if the caller did not.

        Raises sqlalchemy.exc.IntegrityError if event_id already exists --
        duplicate delivery of a caller-assigned id should go through
        get_event() and the orchestrator's process() instead.
        """
        if event.event_id is None:
            event.event_id = uuid.uuid4().hex
        with self.engine.connect() as conn:
            conn.execute(
                _events.insert().values(
                    event_id=event.event_id,
                    device_id=event.device_id,
                    user_id=event.user_id,
                    type=AlertType(event.type).value,
                    timestamp=event.timestamp,
                    session_id=event.session_id,
                    details=json.dumps(event.details),
                    location=_point_to_json(event.location),
                    processed=1 if event.processed else 0,
                )
            )
            conn.commit()
        return event

    def get_event(self, event_id: str) -> Optional[SecurityEvent]:
        """Fetch an event with its full outcome audit trail, oldest first."""
        with self.engine.connect() as conn:
            row = conn.execute(_events.select().where(_events.c.event_id == event_id)).fetchone()
            if row is None:
                return None
            outcome_rows = conn.execute(
                _outcomes.select().where(_outcomes.c.event_id == event_id).order_by(_outcomes.c.id)
            ).fetchall()
        event = _row_to_event(row)
        event.outcomes = [_row_to_outcome(r) for r in outcome_rows]
        return event

    def list_events(self, device_id: Optional[str] = None, limit: int = 50) -> list[SecurityEvent]:
        """Return the newest events (without outcomes), optionally for one device."""
        query = _events.select().order_by(_events.c.timestamp.desc()).limit(limit)
        if device_id is not None:
            query = query.where(_events.c.device_id == device_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def attach_session(self, event_id: str, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _events.update().where(_events.c.event_id == event_id).values(session_id=session_id)
            )
            conn.commit()
        return result.rowcount > 0

    def add_outcomes(self, event_id: str, outcomes: list[NotificationOutcome]) -> None:
        """Append outcome rows to the event's audit trail."""
        if not outcomes:
            return
        recorded_at = self._clock()
        with self.engine.connect() as conn:
            conn.execute(
                _outcomes.insert(),
                [
                    {
                        "event_id": event_id,
                        "channel": o.channel,
                        "sent": 1 if o.sent else 0,
                        "sent_at": o.sent_at,
                        "skipped_reason": o.skipped_reason,
                        "error": o.error,
                        "recipients": json.dumps(o.recipients),
                        "recorded_at": recorded_at,
                    }
                    for o in outcomes
                ],
            )
            conn.commit()

    def mark_processed(self, event_id: str, processed_at: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _events.update()
                .where(_events.c.event_id == event_id)
                .values(processed=1, processed_at=processed_at, processing_error=None)
            )
            conn.commit()

    def mark_failed(self, event_id: str, error: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _events.update()
                .where(_events.c.event_id == event_id)
                .values(processed=0, processing_error=error)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Channel rate-limit slots
    # ------------------------------------------------------------------

    def last_send(self, user_id: str, channel: str) -> Optional[int]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(_channel_sends.c.last_sent_at).where(
                    (_channel_sends.c.user_id == user_id) & (_channel_sends.c.channel == channel)
                )
            ).scalar()

    def claim_send_slot(self, user_id: str, channel: str, now: int, min_interval_ms: int) -> tuple[bool, Optional[int]]:
        """Atomically take the (user, channel) send slot if the window has passed.

        Returns (claimed, previous_last_sent_at). The UPDATE only matches if
        last_sent_at still holds the value read, so of two concurrent claimers
        exactly one wins. The loser sees rowcount 0 (or an IntegrityError on
        the first-ever insert) and reports not claimed.
        """
        where = (_channel_sends.c.user_id == user_id) & (_channel_sends.c.channel == channel)
        with self.engine.connect() as conn:
            previous = conn.execute(select(_channel_sends.c.last_sent_at).where(where)).scalar()
            if previous is None:
                try:
                    conn.execute(_channel_sends.insert().values(user_id=user_id, channel=channel, last_sent_at=now))
                    conn.commit()
                except IntegrityError:
                    conn.rollback()
                    return False, None
                return True, None
            if now - previous < min_interval_ms:
                return False, previous
            result = conn.execute(
                _channel_sends.update()
                .where(where & (_channel_sends.c.last_sent_at == previous))
                .values(last_sent_at=now)
            )
            conn.commit()
        return result.rowcount == 1, previous

    def restore_send_slot(self, user_id: str, channel: str, claimed_at: int, previous: Optional[int]) -> None:
        """Undo a claim whose send failed, unless someone has claimed since."""
        where = (
            (_channel_sends.c.user_id == user_id)
            & (_channel_sends.c.channel == channel)
            & (_channel_sends.c.last_sent_at == claimed_at)
        )
        with self.engine.connect() as conn:
            if previous is None:
                conn.execute(_channel_sends.delete().where(where))
            else:
                conn.execute(_channel_sends.update().where(where).values(last_sent_at=previous))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> UserProfile:
    return UserProfile(
        user_id=row.user_id,
        name=row.name or "",
        trusted_number=row.trusted_number,
        family_emails=_loads(row.family_emails, []),
        fcm_tokens=_loads(row.fcm_tokens, []),
        settings=_loads(row.settings, {}),
    )


def _row_to_device(row) -> Device:
    return Device(
        device_id=row.device_id,
        user_id=row.user_id,
        name=row.name or "",
        model=row.model or "",
        status=row.status,
        last_alert=row.last_alert,
        last_alert_type=AlertType(row.last_alert_type) if row.last_alert_type else None,
        last_location=_point_from_json(row.last_location),
    )


def _row_to_event(row) -> SecurityEvent:
    return SecurityEvent(
        event_id=row.event_id,
        device_id=row.device_id,
        user_id=row.user_id,
        type=AlertType(row.type),
        timestamp=row.timestamp,
        session_id=row.session_id,
        details=_loads(row.details, {}),
        location=_point_from_json(row.location),
        processed=bool(row.processed),
        processed_at=row.processed_at,
        processing_error=row.processing_error,
    )


def _row_to_outcome(row) -> NotificationOutcome:
    return NotificationOutcome(
        channel=row.channel,
        sent=bool(row.sent),
        sent_at=row.sent_at,
        skipped_reason=row.skipped_reason,
        error=row.error,
        recipients=_loads(row.recipients, []),
    )
