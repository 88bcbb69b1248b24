"""
auth/hashing.py -- Credential hashing, format rules, and API key utilities.

Security design decisions:
  Credentials: PBKDF2-HMAC-SHA256 via hashlib.pbkdf2_hmac, 32-byte random salt
       from secrets, 100,000+ iterations, 256-bit output. The iteration count
       is stored with each hash so it can be raised later without breaking
       existing credentials [K1].

  Comparison: hmac.compare_digest always walks the full digest. A plain ==
       can return early on the first differing byte, which leaks how much of
       a guess was right through response timing [C1].

  API keys: secrets.token_hex(32) gives 256 bits of entropy -- brute-force is
       computationally infeasible. We store HMAC-SHA256(SECRET_KEY, raw_key) so
       lookup is O(1).

Layer rule: no imports from api/, alerts/, or tracking/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from auth.models import CredentialKind
from core.config import MIN_PBKDF2_ITERATIONS, get_settings
from core.errors import InvalidCredentialFormat

SALT_BYTES = 32
HASH_BYTES = 32  # 256-bit derived key
_HASH_NAME = "sha256"

PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 6
PASSWORD_MIN_LENGTH = 8

# ---------------------------------------------------------------------------
# Format rules
# ---------------------------------------------------------------------------


def validate_credential(kind: CredentialKind, raw: str) -> None:
    """Raise InvalidCredentialFormat if raw does not satisfy the rules for kind.

    PIN: 4-6 ASCII decimal digits. str.isdigit() alone would accept
    superscripts and other Unicode digits, so the check is against "0"-"9".
    PASSWORD: at least 8 characters. No other policy.
    """
    if kind == CredentialKind.PIN:
        if not PIN_MIN_LENGTH <= len(raw) <= PIN_MAX_LENGTH or not all("0" <= ch <= "9" for ch in raw):
            raise InvalidCredentialFormat(f"PIN must be {PIN_MIN_LENGTH}-{PIN_MAX_LENGTH} digits.")
    elif kind == CredentialKind.PASSWORD:
        if len(raw) < PASSWORD_MIN_LENGTH:
            raise InvalidCredentialFormat(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
    else:
        raise InvalidCredentialFormat(f"Unknown credential kind: {kind!r}")


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_BYTES)


def derive_hash(raw: str, salt: bytes, iterations: int = MIN_PBKDF2_ITERATIONS) -> bytes:
    """Derive a 256-bit key from raw with PBKDF2-HMAC-SHA256.

    Deterministic for a given (raw, salt, iterations) triple.
    """
    return hashlib.pbkdf2_hmac(_HASH_NAME, raw.encode("utf-8"), salt, iterations, dklen=HASH_BYTES)


def hashes_match(candidate: bytes, stored: bytes) -> bool:
    """Constant-time digest comparison [C1]."""
    return hmac.compare_digest(candidate, stored)


# ---------------------------------------------------------------------------
# API key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key in the format: sp_<64 hex chars>."""
    return f"sp_{secrets.token_hex(32)}"


def hash_api_key(raw_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_key) as a hex string.

    Using SECRET_KEY as the HMAC key means an attacker who obtains the DB
    cannot test candidate keys offline without also knowing SECRET_KEY.
    """
    return hmac.new(
        get_settings().secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()
