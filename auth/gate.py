"""
auth/gate.py -- The credential gate in front of power-off.

State machine per device, driven by verify():

    lockout active (now < lockout_until)  -> LockedOut(remaining)   no change
    no credential of that kind            -> NotConfigured          no change
    match                                 -> Success                reset to (0, None)
    mismatch, count <  threshold          -> Failed(count)
    mismatch, count == threshold          -> FailedAtThreshold(count)
    mismatch, count >  threshold          -> FailedWithAlert(count, lockout)  lock for LOCKOUT_SECONDS

The escalation hook fires once per threshold crossing (count == threshold + 1).
Failures after that, until the next success, keep re-arming the lockout but
do not raise a second event -- the security response is already running.

All reads and writes of one device's attempt state happen under that device's
lock so concurrent checks cannot both read count N and both write N + 1.
The hook runs after the lock is released, on the caller's thread, so it must
return quickly: the orchestrator records the event and defers the response
to its own worker.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from auth.models import (
    AuthOutcome,
    AuthStatus,
    CredentialKind,
    Escalation,
    Failed,
    FailedAtThreshold,
    FailedWithAlert,
    LockedOut,
    NotConfigured,
    Success,
)
from auth.store import CredentialStore
from core.clock import MS_PER_SECOND, Clock, now_ms
from core.locks import KeyedLock

logger = logging.getLogger("securepower.auth")

FAILED_ATTEMPT_THRESHOLD = 2
LOCKOUT_SECONDS = 30

EscalationHook = Callable[[Escalation], object]


class AuthGate:
    def __init__(
        self,
        store: CredentialStore,
        on_escalation: EscalationHook | None = None,
        threshold: int = FAILED_ATTEMPT_THRESHOLD,
        lockout_seconds: int = LOCKOUT_SECONDS,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.on_escalation = on_escalation
        self.threshold = threshold
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._locks = KeyedLock()

    def setup(self, device_id: str, kind: CredentialKind, raw: str) -> None:
        """Store a new credential. Raises InvalidCredentialFormat on bad input."""
        with self._locks.hold(device_id):
            self.store.setup(device_id, kind, raw)
        logger.info("Credential %s configured for device %s", kind.value, device_id)

    def verify(self, device_id: str, kind: CredentialKind, raw: str) -> AuthOutcome:
        escalation: Escalation | None = None
        with self._locks.hold(device_id):
            outcome, escalation = self._verify_locked(device_id, kind, raw)

        if escalation is not None:
            self._escalate(escalation)
        return outcome

    def _verify_locked(self, device_id: str, kind: CredentialKind, raw: str) -> tuple[AuthOutcome, Escalation | None]:
        now = self._clock()
        state = self.store.get_attempt_state(device_id)

        # Strict <: a check landing exactly on lockout_until is allowed through.
        if state.lockout_until is not None and now < state.lockout_until:
            return LockedOut((state.lockout_until - now) // MS_PER_SECOND), None

        if not self.store.is_configured(device_id, kind):
            return NotConfigured(), None

        if self.store.verify(device_id, kind, raw):
            if state.failed_count or state.lockout_until is not None:
                state.failed_count = 0
                state.lockout_until = None
                self.store.save_attempt_state(state)
            return Success(), None

        state.failed_count += 1
        state.last_attempt_at = now

        if state.failed_count > self.threshold:
            state.lockout_until = now + self.lockout_seconds * MS_PER_SECOND
            self.store.save_attempt_state(state)
            logger.warning(
                "Device %s locked for %ds after %d failed attempts",
                device_id,
                self.lockout_seconds,
                state.failed_count,
            )
            escalation = None
            if state.failed_count == self.threshold + 1:
                escalation = Escalation(
                    device_id=device_id,
                    failed_count=state.failed_count,
                    lockout_seconds=self.lockout_seconds,
                    timestamp=now,
                )
            return FailedWithAlert(state.failed_count, self.lockout_seconds), escalation

        self.store.save_attempt_state(state)
        if state.failed_count == self.threshold:
            return FailedAtThreshold(state.failed_count), None
        return Failed(state.failed_count), None

    def _escalate(self, escalation: Escalation) -> None:
        if self.on_escalation is None:
            logger.warning("Escalation for device %s has no handler attached", escalation.device_id)
            return
        try:
            self.on_escalation(escalation)
        except Exception:
            # The device user must still get their outcome.
            logger.exception("Escalation handler failed for device %s", escalation.device_id)

    def status(self, device_id: str) -> AuthStatus:
        now = self._clock()
        state = self.store.get_attempt_state(device_id)
        return AuthStatus(
            device_id=device_id,
            failed_count=state.failed_count,
            last_attempt_at=state.last_attempt_at,
            locked_out=state.lockout_until is not None and now < state.lockout_until,
            lockout_until=state.lockout_until,
            pin_configured=self.store.is_configured(device_id, CredentialKind.PIN),
            password_configured=self.store.is_configured(device_id, CredentialKind.PASSWORD),
        )

    def reset(self, device_id: str) -> None:
        """Clear credentials and counters (account recovery)."""
        with self._locks.hold(device_id):
            self.store.delete_credentials(device_id)
            self.store.reset_attempt_state(device_id)
        logger.info("Credentials and attempt state reset for device %s", device_id)
