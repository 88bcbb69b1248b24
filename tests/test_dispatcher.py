"""Unit tests for alerts/dispatcher.py -- channel fan-out and the outcome audit.

Covers:
- one outcome per channel, in channel order, persisted on the event
- a failing channel is recorded and does not stop the others
- a channel that reaches only some recipients is sent and keeps the failures
- a hung channel is recorded as "timeout" after the bounded wait
- eligibility: critical channels skip non-critical alert types
- user policy: channel disabled globally or for one alert type
- no recipient on the user record
- rate limiting: T=0 sent, T=120s skipped, T=310s sent; failures restore the slot
- re-dispatch does not call channels that already sent
- unknown user raises UnrecoverableEventError
- notify() for summaries: named channels only, nothing persisted
"""

import time

import pytest
from conftest import email_channel, make_user, push_channel, whatsapp_channel

from alerts.channels import AlertMessage
from alerts.dispatcher import AlertDispatcher
from core.errors import UnrecoverableEventError
from core.models import AlertType, Device, SecurityEvent


@pytest.fixture
def user(alert_store):
    u = make_user("u1")
    alert_store.save_user(u)
    alert_store.save_device(Device(device_id="d1", user_id="u1", name="Pixel 7"))
    return u


def _event(alert_store, clock, alert_type=AlertType.UNAUTHORIZED_POWEROFF, **kwargs) -> SecurityEvent:
    return alert_store.create_event(
        SecurityEvent(device_id="d1", user_id="u1", type=alert_type, timestamp=clock(), **kwargs)
    )


def _by_channel(outcomes):
    return {o.channel: o for o in outcomes}


class TestFanOut:
    def test_all_channels_sent(self, alert_store, clock, user) -> None:
        channels = [whatsapp_channel(), email_channel(), push_channel()]
        dispatcher = AlertDispatcher(alert_store, channels, clock=clock)
        event = _event(alert_store, clock)

        outcomes = dispatcher.dispatch(event)

        assert [o.channel for o in outcomes] == ["whatsapp", "email", "push"]
        assert all(o.sent for o in outcomes)
        assert channels[0].sent[0][0] == "+15550100"
        assert channels[1].sent[0][0] == "family@example.com"
        assert channels[2].sent[0][0] == "fcm-token-1"

        stored = alert_store.get_event(event.event_id)
        assert [o.status for o in stored.outcomes] == ["sent", "sent", "sent"]

    def test_one_channel_fails(self, alert_store, clock, user) -> None:
        channels = [email_channel(), push_channel(fail=True)]
        dispatcher = AlertDispatcher(alert_store, channels, clock=clock)
        outcomes = _by_channel(dispatcher.dispatch(_event(alert_store, clock)))

        assert outcomes["email"].sent
        assert outcomes["push"].status == "error"
        assert "provider unavailable" in outcomes["push"].error

    def test_hung_channel_times_out(self, alert_store, clock, user) -> None:
        hung = push_channel(hang=True)
        dispatcher = AlertDispatcher(alert_store, [email_channel(), hung], timeout_seconds=0.2, clock=clock)
        start = time.monotonic()
        try:
            outcomes = _by_channel(dispatcher.dispatch(_event(alert_store, clock)))
        finally:
            hung.release()
        assert time.monotonic() - start < 3
        assert outcomes["email"].sent
        assert outcomes["push"].error == "timeout"

    def test_message_carries_event_context(self, alert_store, clock, user) -> None:
        push = push_channel()
        dispatcher = AlertDispatcher(
            alert_store, [push], tracking_base_url="https://track.example/t/", clock=clock
        )
        event = _event(alert_store, clock, session_id="d1_123", details={"failed_attempts": 3})
        dispatcher.dispatch(event)
        message = push.sent[0][1]
        assert message.event_id == event.event_id
        assert message.device_name == "Pixel 7"
        assert message.tracking_url == "https://track.example/t/d1_123"
        assert message.details["failed_attempts"] == 3

    def test_multiple_recipients_one_accepts(self, alert_store, clock) -> None:
        alert_store.save_user(make_user("u1", family_emails=["a@example.com", "b@example.com"]))
        email = email_channel()
        dispatcher = AlertDispatcher(alert_store, [email], clock=clock)
        (outcome,) = dispatcher.dispatch(_event(alert_store, clock))
        assert outcome.sent
        assert outcome.recipients == ["a@example.com", "b@example.com"]

    def test_partial_recipient_failure_keeps_error(self, alert_store, clock) -> None:
        alert_store.save_user(make_user("u1", family_emails=["a@example.com", "b@example.com"]))
        email = email_channel(fail_for=["b@example.com"])
        dispatcher = AlertDispatcher(alert_store, [email], clock=clock)
        event = _event(alert_store, clock)

        (outcome,) = dispatcher.dispatch(event)
        assert outcome.status == "sent"
        assert outcome.recipients == ["a@example.com"]
        assert outcome.error == "email rejected b@example.com"

        (stored,) = alert_store.get_event(event.event_id).outcomes
        assert stored.sent
        assert stored.error == "email rejected b@example.com"

    def test_unknown_user(self, alert_store, clock) -> None:
        dispatcher = AlertDispatcher(alert_store, [push_channel()], clock=clock)
        event = alert_store.create_event(
            SecurityEvent(device_id="d1", user_id="ghost", type=AlertType.SIM_CHANGED, timestamp=clock())
        )
        with pytest.raises(UnrecoverableEventError):
            dispatcher.dispatch(event)

    def test_event_without_id(self, alert_store, clock, user) -> None:
        dispatcher = AlertDispatcher(alert_store, [push_channel()], clock=clock)
        with pytest.raises(UnrecoverableEventError):
            dispatcher.dispatch(SecurityEvent(device_id="d1", user_id="u1", type=AlertType.SIM_CHANGED, timestamp=1))


class TestPolicy:
    def test_critical_channels_skip_non_critical_types(self, alert_store, clock, user) -> None:
        channels = [whatsapp_channel(), email_channel(), push_channel()]
        dispatcher = AlertDispatcher(alert_store, channels, clock=clock)
        outcomes = _by_channel(dispatcher.dispatch(_event(alert_store, clock, AlertType.APP_UNINSTALL_ATTEMPT)))

        assert outcomes["whatsapp"].skipped_reason == "not_eligible"
        assert outcomes["email"].skipped_reason == "not_eligible"
        assert outcomes["push"].sent
        assert channels[0].calls == 0

    def test_channel_disabled_globally(self, alert_store, clock) -> None:
        alert_store.save_user(make_user("u1", settings={"whatsapp_notifications": False}))
        wa = whatsapp_channel()
        dispatcher = AlertDispatcher(alert_store, [wa, push_channel()], clock=clock)
        outcomes = _by_channel(dispatcher.dispatch(_event(alert_store, clock)))
        assert outcomes["whatsapp"].skipped_reason == "disabled"
        assert outcomes["push"].sent
        assert wa.calls == 0

    def test_channel_disabled_for_one_type(self, alert_store, clock) -> None:
        alert_store.save_user(make_user("u1", settings={"disabled_channels": {"SIM_CHANGED": ["email"]}}))
        dispatcher = AlertDispatcher(alert_store, [email_channel()], clock=clock)
        (sim,) = dispatcher.dispatch(_event(alert_store, clock, AlertType.SIM_CHANGED))
        (poweroff,) = dispatcher.dispatch(_event(alert_store, clock, AlertType.UNAUTHORIZED_POWEROFF))
        assert sim.skipped_reason == "disabled"
        assert poweroff.sent

    def test_no_recipient(self, alert_store, clock) -> None:
        alert_store.save_user(make_user("u1", trusted_number=None, fcm_tokens=[]))
        dispatcher = AlertDispatcher(alert_store, [whatsapp_channel(), push_channel()], clock=clock)
        outcomes = _by_channel(dispatcher.dispatch(_event(alert_store, clock)))
        assert outcomes["whatsapp"].skipped_reason == "no_recipient"
        assert outcomes["push"].skipped_reason == "no_recipient"


class TestRateLimit:
    def test_window_scenario(self, alert_store, clock, user) -> None:
        wa = whatsapp_channel()
        dispatcher = AlertDispatcher(alert_store, [wa], clock=clock)

        (first,) = dispatcher.dispatch(_event(alert_store, clock))
        clock.advance(seconds=120)
        (second,) = dispatcher.dispatch(_event(alert_store, clock))
        clock.advance(seconds=190)
        (third,) = dispatcher.dispatch(_event(alert_store, clock))

        assert first.sent
        assert second.skipped_reason == "rate_limit"
        assert third.sent
        assert wa.calls == 2

    def test_failed_send_restores_slot(self, alert_store, clock, user) -> None:
        failing = whatsapp_channel(fail=True)
        dispatcher = AlertDispatcher(alert_store, [failing], clock=clock)
        (first,) = dispatcher.dispatch(_event(alert_store, clock))
        assert first.status == "error"
        assert alert_store.last_send("u1", "whatsapp") is None

        failing.fail = False
        clock.advance(seconds=10)
        (second,) = dispatcher.dispatch(_event(alert_store, clock))
        assert second.sent

    def test_window_is_per_user(self, alert_store, clock, user) -> None:
        alert_store.save_user(make_user("u2", trusted_number="+15550199"))
        wa = whatsapp_channel()
        dispatcher = AlertDispatcher(alert_store, [wa], clock=clock)
        dispatcher.dispatch(_event(alert_store, clock))
        other = alert_store.create_event(
            SecurityEvent(device_id="d2", user_id="u2", type=AlertType.SIM_CHANGED, timestamp=clock())
        )
        (outcome,) = dispatcher.dispatch(other)
        assert outcome.sent


class TestRedispatch:
    def test_sent_channels_not_called_again(self, alert_store, clock, user) -> None:
        email = email_channel()
        push = push_channel(fail=True)
        dispatcher = AlertDispatcher(alert_store, [email, push], clock=clock)
        event = _event(alert_store, clock)
        dispatcher.dispatch(event)

        push.fail = False
        reloaded = alert_store.get_event(event.event_id)
        outcomes = _by_channel(dispatcher.dispatch(reloaded))

        assert email.calls == 1
        assert push.calls == 2
        assert outcomes["email"].sent and outcomes["push"].sent

        audit = alert_store.get_event(event.event_id).outcomes
        assert [(o.channel, o.status) for o in audit] == [
            ("email", "sent"),
            ("push", "error"),
            ("push", "sent"),
        ]


class TestNotify:
    def test_named_channels_only(self, alert_store, clock, user) -> None:
        wa, email, push = whatsapp_channel(), email_channel(), push_channel()
        dispatcher = AlertDispatcher(alert_store, [wa, email, push], clock=clock)
        message = AlertMessage(
            alert_type=AlertType.SIM_CHANGED,
            device_id="d1",
            timestamp=clock(),
            summary={"reason": "manual", "started": 1, "ended": 2, "points": 0},
        )
        outcomes = dispatcher.notify("u1", message, ("email", "push"))
        assert [o.channel for o in outcomes] == ["email", "push"]
        assert all(o.sent for o in outcomes)
        assert wa.calls == 0
        assert alert_store.last_send("u1", "whatsapp") is None

    def test_unknown_user(self, alert_store, clock) -> None:
        dispatcher = AlertDispatcher(alert_store, [push_channel()], clock=clock)
        message = AlertMessage(alert_type=AlertType.SIM_CHANGED, device_id="d1", timestamp=clock())
        with pytest.raises(UnrecoverableEventError):
            dispatcher.notify("ghost", message)
