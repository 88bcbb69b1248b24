"""
alerts/dispatcher.py -- Fan a security event out to every notification channel.

dispatch(event) decides, per configured channel, one of:

    already sent   -- an earlier dispatch of this event delivered it; not called again
    not_eligible   -- critical channel, non-critical alert type (push-only types)
    disabled       -- the user switched this channel off (globally or for this type)
    no_recipient   -- the user record has no address for this channel
    rate_limit     -- the channel's per-user window has not passed
    send           -- run it

Channels chosen to send run in parallel on a thread pool and share one bounded
wait. A channel still running when the wait ends is recorded as
error="timeout"; a channel that raises is recorded with its error. Neither
stops the others, and neither makes dispatch() raise. Only a structurally
broken event (no id, unknown user) raises UnrecoverableEventError.

New outcomes are appended to the event's audit trail before returning.
"""

import logging
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Optional

from alerts.channels import AlertMessage, Channel
from alerts.store import AlertStore
from core.clock import MS_PER_SECOND, Clock, now_ms
from core.errors import ChannelDeliveryError, UnrecoverableEventError
from core.models import CRITICAL_ALERT_TYPES, AlertType, NotificationOutcome, SecurityEvent, UserProfile

logger = logging.getLogger("securepower.dispatch")

DEFAULT_CHANNEL_TIMEOUT = 10.0  # seconds

SKIP_NOT_ELIGIBLE = "not_eligible"
SKIP_DISABLED = "disabled"
SKIP_NO_RECIPIENT = "no_recipient"
SKIP_RATE_LIMIT = "rate_limit"


def channel_disabled_for(user: UserProfile, channel: str, alert_type: AlertType) -> bool:
    """Apply the user's channel policy.

    settings["<channel>_notifications"] = False turns a channel off entirely;
    settings["disabled_channels"][<alert type>] lists channels off for one type.
    Anything not mentioned stays on.
    """
    if user.settings.get(f"{channel}_notifications") is False:
        return True
    per_type = user.settings.get("disabled_channels") or {}
    return channel in per_type.get(AlertType(alert_type).value, [])


class AlertDispatcher:
    def __init__(
        self,
        store: AlertStore,
        channels: Iterable[Channel],
        timeout_seconds: float = DEFAULT_CHANNEL_TIMEOUT,
        tracking_base_url: Optional[str] = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.channels = list(channels)
        self.timeout_seconds = timeout_seconds
        self.tracking_base_url = tracking_base_url.rstrip("/") if tracking_base_url else None
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_message(self, event: SecurityEvent) -> AlertMessage:
        device = self.store.get_device(event.device_id)
        tracking_url = None
        if event.session_id and self.tracking_base_url:
            tracking_url = f"{self.tracking_base_url}/{event.session_id}"
        return AlertMessage(
            alert_type=AlertType(event.type),
            device_id=event.device_id,
            timestamp=event.timestamp,
            event_id=event.event_id,
            device_name=device.name if device else "",
            session_id=event.session_id,
            tracking_url=tracking_url,
            location=event.location or (device.last_location if device else None),
            details=dict(event.details),
        )

    def dispatch(self, event: SecurityEvent) -> list[NotificationOutcome]:
        """Notify every channel about event. Returns one outcome per channel, in channel order."""
        if not event.event_id:
            raise UnrecoverableEventError("Event has no id; store it before dispatching.")
        user = self.store.get_user(event.user_id)
        if user is None:
            raise UnrecoverableEventError(f"User {event.user_id!r} not found for event {event.event_id}")

        alert_type = AlertType(event.type)
        already_sent = {o.channel: o for o in event.outcomes if o.sent}
        message = self.build_message(event)

        results: dict[str, NotificationOutcome] = {}
        jobs: list[tuple[Channel, list[str]]] = []
        claims: dict[str, tuple[int, Optional[int]]] = {}

        for channel in self.channels:
            if channel.name in already_sent:
                continue
            if channel.critical and alert_type not in CRITICAL_ALERT_TYPES:
                results[channel.name] = NotificationOutcome(channel.name, skipped_reason=SKIP_NOT_ELIGIBLE)
                continue
            if channel_disabled_for(user, channel.name, alert_type):
                results[channel.name] = NotificationOutcome(channel.name, skipped_reason=SKIP_DISABLED)
                continue
            recipients = channel.recipients(user)
            if not recipients:
                results[channel.name] = NotificationOutcome(channel.name, skipped_reason=SKIP_NO_RECIPIENT)
                continue
            if channel.min_interval_seconds > 0:
                now = self._clock()
                claimed, previous = self.store.claim_send_slot(
                    user.user_id, channel.name, now, channel.min_interval_seconds * MS_PER_SECOND
                )
                if not claimed:
                    logger.info(
                        "%s rate limit: skipping event %s for user %s", channel.name, event.event_id, user.user_id
                    )
                    results[channel.name] = NotificationOutcome(channel.name, skipped_reason=SKIP_RATE_LIMIT)
                    continue
                claims[channel.name] = (now, previous)
            jobs.append((channel, recipients))

        results.update(self._run(jobs, message))

        # A failed send gives its rate-limit slot back so the next event can
        # try again. A timeout keeps it: the provider may still deliver.
        for name, (claimed_at, previous) in claims.items():
            outcome = results[name]
            if not outcome.sent and outcome.error != "timeout":
                self.store.restore_send_slot(user.user_id, name, claimed_at, previous)

        new_outcomes = [results[c.name] for c in self.channels if c.name in results]
        self.store.add_outcomes(event.event_id, new_outcomes)
        for outcome in new_outcomes:
            if outcome.error:
                logger.warning("Channel %s failed for event %s: %s", outcome.channel, event.event_id, outcome.error)

        return [already_sent.get(c.name) or results[c.name] for c in self.channels]

    def notify(
        self,
        user_id: str,
        message: AlertMessage,
        channel_names: Optional[Iterable[str]] = None,
    ) -> list[NotificationOutcome]:
        """Send a message outside of event bookkeeping (session summaries).

        No rate limiting, no eligibility check and nothing persisted. Only
        the named channels run when channel_names is given.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise UnrecoverableEventError(f"User {user_id!r} not found")
        wanted = set(channel_names) if channel_names is not None else None
        jobs: list[tuple[Channel, list[str]]] = []
        for channel in self.channels:
            if wanted is not None and channel.name not in wanted:
                continue
            recipients = channel.recipients(user)
            if recipients:
                jobs.append((channel, recipients))
        results = self._run(jobs, message)
        return [results[c.name] for c in self.channels if c.name in results]

    # ------------------------------------------------------------------
    # Worker fan-out
    # ------------------------------------------------------------------

    def _run(self, jobs: list[tuple[Channel, list[str]]], message: AlertMessage) -> dict[str, NotificationOutcome]:
        if not jobs:
            return {}
        results: dict[str, NotificationOutcome] = {}
        executor = ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="dispatch")
        try:
            futures: dict[Future, Channel] = {
                executor.submit(self._deliver, channel, recipients, message): channel for channel, recipients in jobs
            }
            done, pending = wait(futures, timeout=self.timeout_seconds)
            for future in done:
                channel = futures[future]
                try:
                    results[channel.name] = future.result()
                except Exception as e:
                    logger.exception("Channel %s raised an unexpected error", channel.name)
                    results[channel.name] = NotificationOutcome(channel.name, error=f"{type(e).__name__}: {e}")
            for future in pending:
                channel = futures[future]
                logger.warning("Channel %s timed out after %.1fs", channel.name, self.timeout_seconds)
                results[channel.name] = NotificationOutcome(channel.name, error="timeout")
        finally:
            # Do not join a hung provider call; the outcome is already recorded.
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def _deliver(self, channel: Channel, recipients: list[str], message: AlertMessage) -> NotificationOutcome:
        """Send to every recipient of one channel. Sent if at least one accepted."""
        delivered: list[str] = []
        errors: list[str] = []
        for recipient in recipients:
            try:
                channel.send(recipient, message)
                delivered.append(recipient)
            except ChannelDeliveryError as e:
                errors.append(str(e))
        if delivered:
            if errors:
                logger.warning(
                    "Channel %s reached %d of %d recipient(s)", channel.name, len(delivered), len(recipients)
                )
            return NotificationOutcome(
                channel.name,
                sent=True,
                sent_at=self._clock(),
                recipients=delivered,
                error="; ".join(errors) or None,
            )
        return NotificationOutcome(channel.name, error="; ".join(errors) or "delivery failed", recipients=recipients)
