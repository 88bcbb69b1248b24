"""
alerts/orchestrator.py -- Turns triggers into a full security response.

Triggers arrive two ways:
  handle_escalation()  AuthGate's hook, after the failed-attempt threshold is crossed
  report()             any other source (SIM change, uninstall attempt, admin
                       removal, unauthorized power-off)

Both record a SecurityEvent and run process(). handle_escalation() runs on the
thread that called AuthGate.verify(), so it only records the event and hands
process() to a background worker; verify() never waits on a provider.
wait_background() blocks until queued work is done (tests, shutdown).

process() for one event:

  1. validates the identifiers and the owning user record
  2. opens (or re-attaches) the device's tracking session
  3. dispatches to every channel
  4. sets the device projection to "security_alert"
  5. marks the event processed

process() is serialized per event id and returns a processed event untouched,
so a trigger delivered twice notifies once. A partially processed event (for
example, the process died after dispatch) resumes: channels that already sent
are not called again.

When a tracking session closes, the device goes back to "active" and the
user's e-mail and push channels get a summary of the session.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Optional

from alerts.channels import AlertMessage
from alerts.dispatcher import AlertDispatcher
from alerts.store import AlertStore
from auth.models import Escalation
from core.clock import Clock, now_ms
from core.errors import UnrecoverableEventError
from core.locks import KeyedLock
from core.models import (
    DEVICE_STATUS_ACTIVE,
    DEVICE_STATUS_ALERT,
    AlertType,
    LocationPoint,
    SecurityEvent,
    TrackingSession,
)
from tracking.sessions import TrackingService

logger = logging.getLogger("securepower.orchestrator")

SUMMARY_CHANNELS = ("email", "push")


class SecurityOrchestrator:
    """Wires the gate, the dispatcher and tracking together.

    Takes over the tracking service's close and location hooks.
    """

    def __init__(
        self,
        store: AlertStore,
        dispatcher: AlertDispatcher,
        tracking: TrackingService,
        clock: Clock = now_ms,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.tracking = tracking
        self._clock = clock
        self._locks = KeyedLock()
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="escalation")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        tracking.on_close = self.handle_session_closed
        tracking.on_location = self.handle_location

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def handle_escalation(self, escalation: Escalation) -> SecurityEvent:
        """Record the event now, process it in the background. Returns the unprocessed event."""
        event = self.record(
            escalation.device_id,
            AlertType.FAILED_AUTH_THRESHOLD,
            details={"failed_attempts": escalation.failed_count},
            timestamp=escalation.timestamp,
        )
        self._submit(event.event_id)
        return event

    def report(
        self,
        device_id: str,
        alert_type: AlertType,
        details: Optional[dict[str, Any]] = None,
        location: Optional[LocationPoint] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> SecurityEvent:
        """Record a trigger as an event and process it.

        An event that cannot be processed is still stored, with its
        processing_error set.
        """
        event = self.record(device_id, alert_type, details, location, user_id, timestamp)
        return self.process(event.event_id)

    def record(
        self,
        device_id: str,
        alert_type: AlertType,
        details: Optional[dict[str, Any]] = None,
        location: Optional[LocationPoint] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> SecurityEvent:
        """Store a trigger as an unprocessed event. The owner defaults to the device's user."""
        if user_id is None:
            device = self.store.get_device(device_id)
            user_id = device.user_id if device is not None else ""
        event = self.store.create_event(
            SecurityEvent(
                device_id=device_id,
                user_id=user_id,
                type=AlertType(alert_type),
                timestamp=timestamp if timestamp is not None else self._clock(),
                details=dict(details or {}),
                location=location,
            )
        )
        logger.warning("Security event %s: %s on device %s", event.event_id, event.type.value, device_id)
        return event

    # ------------------------------------------------------------------
    # Background processing
    # ------------------------------------------------------------------

    def _submit(self, event_id: str) -> None:
        future = self._executor.submit(self._process_in_background, event_id)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _process_in_background(self, event_id: str) -> None:
        try:
            self.process(event_id)
        except Exception as e:
            # process() already logged and stored processing_error.
            logger.warning("Background processing of event %s failed: %s", event_id, e)

    def wait_background(self, timeout: Optional[float] = None) -> bool:
        """Block until queued escalations finish. False if the timeout ran out first."""
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, timeout: Optional[float] = 10.0) -> None:
        """Let queued escalations finish, then stop the worker."""
        if not self.wait_background(timeout):
            logger.warning("Escalations still running at shutdown; they resume on the next process() call")
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process(self, event_id: str) -> SecurityEvent:
        """Run the response for one event. Safe to call repeatedly."""
        with self._locks.hold(event_id):
            event = self.store.get_event(event_id)
            if event is None:
                raise UnrecoverableEventError(f"Event {event_id} not found")
            if event.processed:
                logger.info("Event %s already processed, skipping", event_id)
                return event
            try:
                self._process_locked(event)
            except UnrecoverableEventError as e:
                logger.error("Event %s cannot be processed: %s", event_id, e)
                self.store.mark_failed(event_id, str(e))
                raise
            except Exception as e:
                logger.exception("Event %s failed during processing", event_id)
                self.store.mark_failed(event_id, f"{type(e).__name__}: {e}")
                raise
            return self.store.get_event(event_id)

    def _process_locked(self, event: SecurityEvent) -> None:
        if not event.device_id or not event.user_id:
            raise UnrecoverableEventError(f"Event {event.event_id} is missing its device or user id")
        if self.store.get_user(event.user_id) is None:
            raise UnrecoverableEventError(f"User {event.user_id!r} not found for event {event.event_id}")

        session, created = self.tracking.open(event.device_id, event.user_id, event.type, event.session_id)
        if session.session_id != event.session_id:
            self.store.attach_session(event.event_id, session.session_id)
            event.session_id = session.session_id
        if not created:
            logger.info("Event %s joined tracking session %s", event.event_id, session.session_id)

        outcomes = self.dispatcher.dispatch(event)
        sent = sum(1 for o in outcomes if o.sent)
        logger.info("Event %s dispatched: %d/%d channel(s) sent", event.event_id, sent, len(outcomes))

        self.store.update_device_status(
            event.device_id,
            DEVICE_STATUS_ALERT,
            last_alert=event.timestamp,
            last_alert_type=event.type,
        )
        self.store.mark_processed(event.event_id, self._clock())

    # ------------------------------------------------------------------
    # Tracking hooks
    # ------------------------------------------------------------------

    def handle_location(self, session: TrackingSession, point: LocationPoint) -> None:
        self.store.update_device_location(session.device_id, point)

    def handle_session_closed(self, session: TrackingSession, points: int) -> None:
        self.store.update_device_status(session.device_id, DEVICE_STATUS_ACTIVE)
        device = self.store.get_device(session.device_id)
        message = AlertMessage(
            alert_type=session.alert_type,
            device_id=session.device_id,
            timestamp=session.end_time if session.end_time is not None else self._clock(),
            device_name=device.name if device else "",
            session_id=session.session_id,
            location=session.last_location,
            summary={
                "reason": session.close_reason,
                "started": session.start_time,
                "ended": session.end_time,
                "points": points,
            },
        )
        try:
            self.dispatcher.notify(session.user_id, message, SUMMARY_CHANNELS)
        except UnrecoverableEventError as e:
            logger.warning("No summary sent for session %s: %s", session.session_id, e)
