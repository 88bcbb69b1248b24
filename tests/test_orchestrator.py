"""Unit tests for alerts/orchestrator.py -- the end-to-end security response.

Covers:
- report(): event stored, tracking session opened and attached, channels
  notified, device projection set to "security_alert", event processed
- process() twice notifies once
- a partial channel failure still marks the event processed
- a second trigger for the same device joins the running session
- an unknown user leaves the event unprocessed with processing_error set
- an unexpected error during processing is recorded on the event too
- the gate's escalation hook raises a FAILED_AUTH_THRESHOLD event, processed
  in the background: verify() returns while a provider call is still hanging
- closing a session returns the device to "active" and sends a summary
  to e-mail and push only
- appended locations land on the device projection
"""

import time

import pytest
from conftest import email_channel, make_user, push_channel, whatsapp_channel

from alerts.dispatcher import AlertDispatcher
from alerts.orchestrator import SecurityOrchestrator
from auth.gate import AuthGate
from auth.models import CredentialKind, FailedWithAlert
from core.errors import UnrecoverableEventError
from core.models import AlertType, Device, LocationPoint
from tracking.sessions import TrackingService

POWEROFF = AlertType.UNAUTHORIZED_POWEROFF


@pytest.fixture
def channels() -> dict:
    return {"whatsapp": whatsapp_channel(), "email": email_channel(), "push": push_channel()}


@pytest.fixture
def orchestrator(alert_store, session_store, clock, channels):
    alert_store.save_user(make_user("u1"))
    alert_store.save_device(Device(device_id="d1", user_id="u1", name="Pixel 7"))
    dispatcher = AlertDispatcher(alert_store, list(channels.values()), clock=clock)
    tracking = TrackingService(session_store, clock=clock)
    orch = SecurityOrchestrator(alert_store, dispatcher, tracking, clock=clock)
    yield orch
    orch.close()


class TestReport:
    def test_full_response(self, orchestrator, alert_store, channels, clock) -> None:
        event = orchestrator.report("d1", POWEROFF)

        assert event.processed
        assert event.processed_at == clock()
        assert event.user_id == "u1"
        assert event.session_id == f"d1_{clock()}"
        assert [o.status for o in event.outcomes] == ["sent", "sent", "sent"]
        assert all(len(c.sent) == 1 for c in channels.values())

        session = orchestrator.tracking.get(event.session_id)
        assert session.active
        assert session.alert_type == POWEROFF

        device = alert_store.get_device("d1")
        assert device.status == "security_alert"
        assert device.last_alert == event.timestamp
        assert device.last_alert_type == POWEROFF

    def test_message_names_session(self, orchestrator, channels) -> None:
        event = orchestrator.report("d1", AlertType.SIM_CHANGED, details={"sim_change": {"old_iccid": "1"}})
        message = channels["push"].sent[0][1]
        assert message.session_id == event.session_id
        assert message.details["sim_change"]["old_iccid"] == "1"

    def test_second_trigger_joins_session(self, orchestrator, clock) -> None:
        first = orchestrator.report("d1", POWEROFF)
        clock.advance(seconds=30)
        second = orchestrator.report("d1", AlertType.SIM_CHANGED)
        assert second.session_id == first.session_id
        assert len(orchestrator.tracking.store.list_active()) == 1

    def test_partial_failure_still_processed(self, alert_store, session_store, clock) -> None:
        alert_store.save_user(make_user("u1"))
        alert_store.save_device(Device(device_id="d1", user_id="u1"))
        dispatcher = AlertDispatcher(alert_store, [email_channel(), push_channel(fail=True)], clock=clock)
        orch = SecurityOrchestrator(alert_store, dispatcher, TrackingService(session_store, clock=clock), clock=clock)

        event = orch.report("d1", POWEROFF)
        assert event.processed
        assert {o.channel: o.status for o in event.outcomes} == {"email": "sent", "push": "error"}

    def test_unknown_user_marks_failed(self, orchestrator, alert_store, channels) -> None:
        with pytest.raises(UnrecoverableEventError):
            orchestrator.report("d1", POWEROFF, user_id="ghost")

        (event,) = alert_store.list_events(device_id="d1")
        stored = alert_store.get_event(event.event_id)
        assert stored.processed is False
        assert "ghost" in stored.processing_error
        assert all(c.calls == 0 for c in channels.values())
        assert orchestrator.tracking.store.list_active() == []

    def test_unregistered_device_marks_failed(self, orchestrator, alert_store) -> None:
        with pytest.raises(UnrecoverableEventError):
            orchestrator.report("unknown-device", POWEROFF)
        (event,) = alert_store.list_events(device_id="unknown-device")
        assert alert_store.get_event(event.event_id).processing_error

    def test_unexpected_error_marks_failed(self, orchestrator, alert_store, channels, monkeypatch) -> None:
        def broken_open(*args, **kwargs):
            raise RuntimeError("tracking store unavailable")

        monkeypatch.setattr(orchestrator.tracking, "open", broken_open)
        with pytest.raises(RuntimeError):
            orchestrator.report("d1", POWEROFF)

        (event,) = alert_store.list_events(device_id="d1")
        stored = alert_store.get_event(event.event_id)
        assert stored.processed is False
        assert stored.processing_error == "RuntimeError: tracking store unavailable"
        assert all(c.calls == 0 for c in channels.values())


class TestIdempotency:
    def test_process_twice_notifies_once(self, orchestrator, channels) -> None:
        event = orchestrator.report("d1", POWEROFF)
        again = orchestrator.process(event.event_id)
        assert again.processed
        assert len(again.outcomes) == 3
        assert all(c.calls == 1 for c in channels.values())

    def test_unknown_event(self, orchestrator) -> None:
        with pytest.raises(UnrecoverableEventError):
            orchestrator.process("no-such-event")

    def test_failed_event_can_be_retried(self, orchestrator, alert_store, channels) -> None:
        with pytest.raises(UnrecoverableEventError):
            orchestrator.report("d2", POWEROFF, user_id="u2")
        alert_store.save_user(make_user("u2", trusted_number="+15550199"))
        (event,) = alert_store.list_events(device_id="d2")

        retried = orchestrator.process(event.event_id)
        assert retried.processed
        assert retried.processing_error is None


class TestEscalation:
    def test_gate_escalation_raises_event(self, orchestrator, credential_store, alert_store, clock) -> None:
        gate = AuthGate(credential_store, on_escalation=orchestrator.handle_escalation, clock=clock)
        gate.setup("d1", CredentialKind.PIN, "1234")
        gate.verify("d1", CredentialKind.PIN, "0000")
        gate.verify("d1", CredentialKind.PIN, "0000")
        assert gate.verify("d1", CredentialKind.PIN, "0000") == FailedWithAlert(3, 30)

        (event,) = alert_store.list_events(device_id="d1")
        stored = alert_store.get_event(event.event_id)
        assert stored.type == AlertType.FAILED_AUTH_THRESHOLD
        assert stored.details == {"failed_attempts": 3}
        assert stored.timestamp == clock()
        assert orchestrator.wait_background(timeout=5)
        assert alert_store.get_event(event.event_id).processed
        assert alert_store.get_device("d1").status == "security_alert"

    def test_verify_does_not_wait_for_dispatch(self, alert_store, session_store, credential_store, clock) -> None:
        alert_store.save_user(make_user("u1"))
        alert_store.save_device(Device(device_id="d1", user_id="u1"))
        slow = whatsapp_channel(hang=True)
        dispatcher = AlertDispatcher(alert_store, [slow, push_channel()], timeout_seconds=3, clock=clock)
        orch = SecurityOrchestrator(alert_store, dispatcher, TrackingService(session_store, clock=clock), clock=clock)
        gate = AuthGate(credential_store, on_escalation=orch.handle_escalation, clock=clock)
        gate.setup("d1", CredentialKind.PIN, "1234")
        gate.verify("d1", CredentialKind.PIN, "0000")
        gate.verify("d1", CredentialKind.PIN, "0000")

        try:
            started = time.monotonic()
            assert gate.verify("d1", CredentialKind.PIN, "0000") == FailedWithAlert(3, 30)
            assert time.monotonic() - started < 1.0
            (event,) = alert_store.list_events(device_id="d1")
            assert alert_store.get_event(event.event_id).processed is False
        finally:
            slow.release()
            assert orch.wait_background(timeout=10)
            orch.close()

        stored = alert_store.get_event(event.event_id)
        assert stored.processed
        assert {o.channel: o.status for o in stored.outcomes} == {"whatsapp": "sent", "push": "sent"}

class TestTrackingHooks:
    def test_location_updates_device(self, orchestrator, alert_store, clock) -> None:
        event = orchestrator.report("d1", POWEROFF)
        point = LocationPoint(lat=40.4, lng=-3.7, accuracy=8.0, timestamp=clock() + 1)
        orchestrator.tracking.append(event.session_id, point)
        assert alert_store.get_device("d1").last_location == point

    def test_close_sends_summary(self, orchestrator, alert_store, channels, clock) -> None:
        event = orchestrator.report("d1", POWEROFF)
        orchestrator.tracking.append(
            event.session_id, LocationPoint(lat=1.0, lng=2.0, accuracy=3.0, timestamp=clock())
        )
        clock.advance(seconds=600)
        assert orchestrator.tracking.close(event.session_id)

        device = alert_store.get_device("d1")
        assert device.status == "active"
        assert device.last_alert_type == POWEROFF

        assert len(channels["whatsapp"].sent) == 1
        assert len(channels["email"].sent) == 2
        summary = channels["push"].sent[-1][1].summary
        assert summary == {
            "reason": "manual",
            "started": event.timestamp,
            "ended": clock(),
            "points": 1,
        }

    def test_age_expiry_sends_summary_once(self, orchestrator, channels, clock) -> None:
        event = orchestrator.report("d1", POWEROFF)
        clock.advance(ms=24 * 3600 * 1000 + 1)
        assert orchestrator.tracking.expire_stale() == [event.session_id]
        assert orchestrator.tracking.expire_stale() == []
        assert len(channels["email"].sent) == 2
        assert channels["email"].sent[-1][1].summary["reason"] == "age_limit"
