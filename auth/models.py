"""
auth/models.py -- Domain dataclasses for the credential gate.

Pattern: Data class (pure data container, zero logic). Stores and the gate
do the work.

The AuthOutcome union is what AuthGate.verify() returns. Each variant is a
frozen dataclass; callers dispatch on the concrete type:

    outcome = gate.verify(device_id, CredentialKind.PIN, pin)
    if isinstance(outcome, Success): ...
    elif isinstance(outcome, LockedOut): ...

Layer rule: no imports from api/, alerts/, or tracking/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class CredentialKind(str, Enum):
    PIN = "PIN"
    PASSWORD = "PASSWORD"


@dataclass
class StoredCredential:
    """A salted PBKDF2 hash. The raw credential is never persisted.

    salt and hash are hex strings. iterations is stored per credential so a
    future increase in the work factor does not break existing hashes.
    """

    device_id: str
    kind: CredentialKind
    salt: str
    hash: str
    iterations: int
    created_at: int | None = None


@dataclass
class AttemptState:
    """Per-device failure counters.

    lockout_until is None or an epoch-ms instant that was in the future when
    set. Reset to (0, None) only by a successful verification.
    """

    device_id: str
    failed_count: int = 0
    last_attempt_at: int | None = None
    lockout_until: int | None = None


@dataclass
class ApiKey:
    """A long-lived credential for HTTP clients (device apps, operator tools).

    Security design:
    - key_hash is HMAC-SHA256(SECRET_KEY, raw_key). Deterministic hash lets the
      store do an O(1) lookup. Keys carry 256 bits of entropy, so a slow KDF
      buys nothing here.
    - key_prefix (first 12 chars of the raw key) is for display only.
    - device_id scopes a key to one device. None means an operator key.
    """

    name: str
    key_hash: str
    key_prefix: str
    device_id: str | None = None
    id: int | None = None
    created_at: str | None = None
    last_used: str | None = None
    is_active: bool = True

    @property
    def is_operator(self) -> bool:
        return self.device_id is None


@dataclass(frozen=True)
class Escalation:
    """Handed from AuthGate to the orchestrator when failures cross the threshold."""

    device_id: str
    failed_count: int
    lockout_seconds: int
    timestamp: int


@dataclass(frozen=True)
class AuthStatus:
    device_id: str
    failed_count: int
    last_attempt_at: int | None
    locked_out: bool
    lockout_until: int | None
    pin_configured: bool
    password_configured: bool


# ---------------------------------------------------------------------------
# Verification outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    pass


@dataclass(frozen=True)
class NotConfigured:
    pass


@dataclass(frozen=True)
class Failed:
    attempt_count: int


@dataclass(frozen=True)
class FailedAtThreshold:
    attempt_count: int


@dataclass(frozen=True)
class FailedWithAlert:
    attempt_count: int
    lockout_seconds: int


@dataclass(frozen=True)
class LockedOut:
    remaining_seconds: int


AuthOutcome = Union[Success, NotConfigured, Failed, FailedAtThreshold, FailedWithAlert, LockedOut]
