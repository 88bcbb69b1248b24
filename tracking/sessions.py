"""
tracking/sessions.py -- Tracking session lifecycle over SessionStore.

    open()          idempotent: reuse the named or the device's active session,
                    otherwise create "<device_id>_<start_ms>"
    append()        age check, then insert + evict beyond the retention cap
    maybe_expire()  active -> inactive ("age_limit") once start_time is older
                    than the maximum session age
    close()         active -> inactive ("manual")
    expire_stale()  maybe_expire() over every active session

Each session's appends, closes and expiries are serialized on a per-session
lock; the active -> inactive flip itself is a conditional UPDATE in the store,
so it happens exactly once even across processes. The close hook fires once,
for the caller whose update won, after the lock is released.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Optional

from core.clock import MS_PER_SECOND, Clock, now_ms
from core.errors import SessionClosedError, SessionNotFoundError
from core.locks import KeyedLock
from core.models import CLOSE_REASON_AGE_LIMIT, CLOSE_REASON_MANUAL, AlertType, LocationPoint, TrackingSession
from tracking.store import SessionStore

logger = logging.getLogger("securepower.tracking")

LOCATION_RETENTION_CAP = 500
SESSION_MAX_AGE_HOURS = 24

CloseHook = Callable[[TrackingSession, int], object]
LocationHook = Callable[[TrackingSession, LocationPoint], object]
Geocoder = Callable[[float, float], Optional[str]]


def format_coordinates(lat: float, lng: float) -> str:
    """Fallback geocoder: the coordinates themselves, 6 decimal places."""
    return f"{lat:.6f}, {lng:.6f}"


class TrackingService:
    def __init__(
        self,
        store: SessionStore,
        retention_cap: int = LOCATION_RETENTION_CAP,
        max_age_hours: int = SESSION_MAX_AGE_HOURS,
        on_close: CloseHook | None = None,
        on_location: LocationHook | None = None,
        geocoder: Geocoder = format_coordinates,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.retention_cap = retention_cap
        self.max_age_ms = max_age_hours * 3600 * MS_PER_SECOND
        self.on_close = on_close
        self.on_location = on_location
        self.geocoder = geocoder
        self._clock = clock
        self._session_locks = KeyedLock()
        self._device_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> TrackingSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def locations(self, session_id: str, limit: int | None = None) -> list[LocationPoint]:
        self.get(session_id)
        return self.store.list_locations(session_id, limit=limit)

    def is_stale(self, session: TrackingSession, now: int) -> bool:
        return now - session.start_time > self.max_age_ms

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(
        self,
        device_id: str,
        user_id: str,
        alert_type: AlertType,
        session_id: str | None = None,
    ) -> tuple[TrackingSession, bool]:
        """Return (session, created). Never leaves two active sessions for one device."""
        expired: list[str] = []
        try:
            with self._device_locks.hold(device_id):
                if session_id is not None:
                    named = self.store.get(session_id)
                    if named is not None and named.device_id == device_id and named.active:
                        if not self._expire_if_stale(named, expired):
                            return named, False

                current = self.store.get_active_for_device(device_id)
                if current is not None and not self._expire_if_stale(current, expired):
                    return current, False

                now = self._clock()
                new_id = f"{device_id}_{now}"
                # A session closed within the same millisecond already owns the id.
                suffix = 1
                while self.store.get(new_id) is not None:
                    new_id = f"{device_id}_{now}_{suffix}"
                    suffix += 1
                session, created = self.store.create_if_absent(
                    TrackingSession(
                        session_id=new_id,
                        device_id=device_id,
                        user_id=user_id,
                        alert_type=AlertType(alert_type),
                        start_time=now,
                    )
                )
        finally:
            for closed_id in expired:
                self._fire_close(closed_id)

        if created:
            logger.info("Tracking session %s started for device %s", session.session_id, device_id)
        return session, created

    def append(self, session_id: str, point: LocationPoint) -> int:
        """Record one point. Returns the number of points evicted to stay within the cap.

        Raises SessionNotFoundError for an unknown session and
        SessionClosedError for an inactive one, including one this call
        found over age and closed.
        """
        expired: list[str] = []
        evicted = 0
        with self._session_locks.hold(session_id):
            session = self.get(session_id)
            usable = session.active and not self._expire_if_stale(session, expired, locked=True)
            if usable:
                evicted = self.store.insert_location(session_id, point, self.retention_cap, self._clock())

        for closed_id in expired:
            self._fire_close(closed_id)
        if not usable:
            raise SessionClosedError(f"Tracking session {session_id} is closed")

        if evicted:
            logger.debug("Session %s: evicted %d oldest points", session_id, evicted)
        if self.on_location is not None:
            try:
                self.on_location(session, point)
            except Exception:
                logger.exception("Location hook failed for session %s", session_id)
        return evicted

    def maybe_expire(self, session_id: str) -> bool:
        """Close the session for age if it is active and over age. True if this call closed it."""
        expired: list[str] = []
        with self._session_locks.hold(session_id):
            session = self.get(session_id)
            if session.active:
                self._expire_if_stale(session, expired, locked=True)
        for closed_id in expired:
            self._fire_close(closed_id)
        return bool(expired)

    def close(self, session_id: str, reason: str = CLOSE_REASON_MANUAL) -> bool:
        """Stop tracking. True if this call closed it, False if it was already inactive."""
        with self._session_locks.hold(session_id):
            self.get(session_id)
            closed = self.store.deactivate(session_id, self._clock(), reason)
        if closed:
            self._fire_close(session_id)
        return closed

    def expire_stale(self) -> list[str]:
        """Sweep every active session and close the over-age ones. Returns their ids."""
        now = self._clock()
        expired = []
        for session in self.store.list_active():
            if self.is_stale(session, now) and self.maybe_expire(session.session_id):
                expired.append(session.session_id)
        if expired:
            logger.info("Expired %d tracking session(s) at the age limit", len(expired))
        return expired

    def resolve_address(self, session_id: str, timestamp: int) -> str | None:
        """Fill in the address of one logged point. None if the point is gone."""
        point = self.store.get_location(session_id, timestamp)
        if point is None:
            return None
        if point.address:
            return point.address
        try:
            address = self.geocoder(point.lat, point.lng)
        except Exception:
            logger.exception("Geocoder failed for session %s at %d", session_id, timestamp)
            return None
        if not address:
            return None
        if not self.store.set_address(session_id, timestamp, address):
            return None
        return address

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _expire_if_stale(self, session: TrackingSession, expired: list[str], locked: bool = False) -> bool:
        """Deactivate session if it is over age; record its id in expired when this call did it.

        Returns True when the session is no longer usable.
        """
        now = self._clock()
        if not self.is_stale(session, now):
            return False
        if locked:
            won = self.store.deactivate(session.session_id, now, CLOSE_REASON_AGE_LIMIT)
        else:
            with self._session_locks.hold(session.session_id):
                won = self.store.deactivate(session.session_id, now, CLOSE_REASON_AGE_LIMIT)
        if won:
            logger.info("Tracking session %s reached the age limit", session.session_id)
            expired.append(session.session_id)
        return True

    def _fire_close(self, session_id: str) -> None:
        session = self.store.get(session_id)
        if session is None:
            return
        logger.info("Tracking session %s closed (%s)", session_id, session.close_reason)
        if self.on_close is None:
            return
        try:
            self.on_close(session, self.store.count_locations(session_id))
        except Exception:
            logger.exception("Close hook failed for session %s", session_id)
