"""
tracking/store.py -- SQLAlchemy Core persistence for tracking sessions.

Pattern: Repository + Data Mapper. SessionStore is the repository;
_row_to_session / _row_to_point are the mappers.

Two storage-level guarantees the service relies on:

  One active session per device
      tracking_sessions.active_device_id is UNIQUE and holds the device id
      only while the session is active (NULL once closed). create_if_absent()
      inserts with it set; a concurrent creator for the same device hits an
      IntegrityError and reads back the winner instead.

  Bounded location log
      session_locations is UNIQUE(session_id, timestamp). insert_location()
      writes the point, evicts the oldest rows beyond the cap and refreshes
      the session's last_location in a single transaction.

deactivate() is a conditional UPDATE (WHERE active = 1), so of any number of
concurrent closers exactly one sees rowcount 1.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, auth/ or alerts/.
"""

import json
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from core.db import create_store_engine
from core.models import AlertType, LocationPoint, TrackingSession

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'securepower_tracking.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "tracking_sessions",
    _metadata,
    Column("session_id", String(200), primary_key=True),
    Column("device_id", String(128), nullable=False, index=True),
    Column("user_id", String(128), nullable=False),
    Column("alert_type", String(40), nullable=False),
    Column("start_time", BigInteger, nullable=False),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("active_device_id", String(128), unique=True),  # NULL once closed
    Column("end_time", BigInteger),
    Column("close_reason", String(20)),
    Column("last_location", Text),  # JSON LocationPoint
    Column("last_update", BigInteger),
)

_locations = Table(
    "session_locations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("session_id", String(200), nullable=False),
    Column("timestamp", BigInteger, nullable=False),
    Column("lat", Float, nullable=False),
    Column("lng", Float, nullable=False),
    Column("accuracy", Float, nullable=False),
    Column("speed", Float),
    Column("bearing", Float),
    Column("altitude", Float),
    Column("battery_level", Integer),
    Column("connection_type", String(20)),
    Column("address", Text),
    UniqueConstraint("session_id", "timestamp", name="uq_session_timestamp"),
)

_POINT_FIELDS = (
    "lat",
    "lng",
    "accuracy",
    "timestamp",
    "speed",
    "bearing",
    "altitude",
    "battery_level",
    "connection_type",
    "address",
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_if_absent(self, session: TrackingSession) -> tuple[TrackingSession, bool]:
        """Insert session unless its device already has an active one.

        Returns (session, True) when inserted, (existing_active, False) when
        another active session for the device won.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _sessions.insert().values(
                        session_id=session.session_id,
                        device_id=session.device_id,
                        user_id=session.user_id,
                        alert_type=AlertType(session.alert_type).value,
                        start_time=session.start_time,
                        active=1,
                        active_device_id=session.device_id,
                    )
                )
                conn.commit()
        except IntegrityError:
            existing = self.get_active_for_device(session.device_id)
            if existing is None:
                # Not a device conflict: the session_id itself is taken.
                raise
            return existing, False
        return session, True

    def get(self, session_id: str) -> Optional[TrackingSession]:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_active_for_device(self, device_id: str) -> Optional[TrackingSession]:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.active_device_id == device_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active(self) -> list[TrackingSession]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.active == 1).order_by(_sessions.c.start_time)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def deactivate(self, session_id: str, end_time: int, reason: str) -> bool:
        """Flip an active session to inactive. True only for the caller that did it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.session_id == session_id) & (_sessions.c.active == 1))
                .values(active=0, active_device_id=None, end_time=end_time, close_reason=reason)
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Location log
    # ------------------------------------------------------------------

    def insert_location(self, session_id: str, point: LocationPoint, cap: int, now: int) -> int:
        """Record point and trim the log to cap entries. Returns the number evicted.

        A point whose timestamp is already logged replaces the old one.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _locations.delete().where(
                    (_locations.c.session_id == session_id) & (_locations.c.timestamp == point.timestamp)
                )
            )
            conn.execute(_locations.insert().values(session_id=session_id, **asdict(point)))

            count = conn.execute(
                select(func.count()).select_from(_locations).where(_locations.c.session_id == session_id)
            ).scalar()
            evicted = 0
            if count > cap:
                oldest = (
                    select(_locations.c.id)
                    .where(_locations.c.session_id == session_id)
                    .order_by(_locations.c.timestamp)
                    .limit(count - cap)
                )
                evicted = conn.execute(_locations.delete().where(_locations.c.id.in_(oldest))).rowcount

            self._refresh_last_location(conn, session_id, now)
            conn.commit()
        return evicted

    def list_locations(self, session_id: str, limit: Optional[int] = None) -> list[LocationPoint]:
        """Return the log oldest first. With limit, only the newest `limit` points."""
        query = _locations.select().where(_locations.c.session_id == session_id)
        with self.engine.connect() as conn:
            if limit is None:
                rows = conn.execute(query.order_by(_locations.c.timestamp)).fetchall()
            else:
                rows = conn.execute(query.order_by(_locations.c.timestamp.desc()).limit(limit)).fetchall()
                rows = list(reversed(rows))
        return [_row_to_point(r) for r in rows]

    def count_locations(self, session_id: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_locations).where(_locations.c.session_id == session_id)
            ).scalar()

    def get_location(self, session_id: str, timestamp: int) -> Optional[LocationPoint]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _locations.select().where(
                    (_locations.c.session_id == session_id) & (_locations.c.timestamp == timestamp)
                )
            ).fetchone()
        return _row_to_point(row) if row is not None else None

    def set_address(self, session_id: str, timestamp: int, address: str) -> bool:
        """Attach a reverse-geocoded address to one logged point.

        False if the point is gone (evicted since it was appended).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _locations.update()
                .where((_locations.c.session_id == session_id) & (_locations.c.timestamp == timestamp))
                .values(address=address)
            )
            if result.rowcount:
                last_update = conn.execute(
                    select(_sessions.c.last_update).where(_sessions.c.session_id == session_id)
                ).scalar()
                self._refresh_last_location(conn, session_id, last_update)
            conn.commit()
        return result.rowcount > 0

    @staticmethod
    def _refresh_last_location(conn: Connection, session_id: str, now: Optional[int]) -> None:
        newest = conn.execute(
            _locations.select()
            .where(_locations.c.session_id == session_id)
            .order_by(_locations.c.timestamp.desc())
            .limit(1)
        ).fetchone()
        point = _row_to_point(newest) if newest is not None else None
        conn.execute(
            _sessions.update()
            .where(_sessions.c.session_id == session_id)
            .values(
                last_location=json.dumps(asdict(point)) if point is not None else None,
                last_update=now,
            )
        )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_point(row) -> LocationPoint:
    return LocationPoint(**{name: getattr(row, name) for name in _POINT_FIELDS})


def _row_to_session(row) -> TrackingSession:
    return TrackingSession(
        session_id=row.session_id,
        device_id=row.device_id,
        user_id=row.user_id,
        alert_type=AlertType(row.alert_type),
        start_time=row.start_time,
        active=bool(row.active),
        end_time=row.end_time,
        close_reason=row.close_reason,
        last_location=LocationPoint(**json.loads(row.last_location)) if row.last_location else None,
        last_update=row.last_update,
    )
