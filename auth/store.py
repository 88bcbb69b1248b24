"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_credential / _row_to_attempt_state / _row_to_api_key are the mappers.
The gate and route code never touch SQL directly.

Holds three things per device: the salted credential hashes (one per kind),
the attempt/lockout counters, and the API keys used by HTTP clients.

Security:
  All queries use bound parameters. No f-strings in SQL.
  The raw credential never reaches this module's tables -- setup() derives
  the hash before the INSERT and verify() only reads salt and hash.
  UNIQUE(salt) makes salt reuse across kinds or devices a hard error rather
  than a silent weakness.

DB path: auth/securepower_auth.db unless a URL is passed in.

Layer rule: no imports from api/, alerts/, or tracking/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, Text, UniqueConstraint
from sqlalchemy.engine import Engine

from auth.hashing import derive_hash, generate_salt, hashes_match, validate_credential
from auth.models import ApiKey, AttemptState, CredentialKind, StoredCredential
from core.clock import Clock, now_ms
from core.config import MIN_PBKDF2_ITERATIONS
from core.db import create_store_engine

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'securepower_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_credentials = Table(
    "credentials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_id", String(128), nullable=False),
    Column("kind", String(16), nullable=False),  # "PIN" | "PASSWORD"
    Column("salt", String(64), nullable=False, unique=True),  # 32 bytes hex
    Column("hash", String(64), nullable=False),  # 32 bytes hex
    Column("iterations", Integer, nullable=False),
    Column("created_at", BigInteger, nullable=False),
    UniqueConstraint("device_id", "kind", name="uq_device_kind"),
)

_attempt_state = Table(
    "attempt_state",
    _metadata,
    Column("device_id", String(128), primary_key=True),
    Column("failed_count", Integer, nullable=False, server_default="0"),
    Column("last_attempt_at", BigInteger),
    Column("lockout_until", BigInteger),  # NULL = not locked
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # first 12 chars, display only
    Column("device_id", String(128)),  # NULL = operator key
    Column("created_at", String(32), nullable=False),
    Column("last_used", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for credentials, attempt state and API keys.

    Usage:
        store = CredentialStore()
        store.setup("device-1", CredentialKind.PIN, "1234")
        store.verify("device-1", CredentialKind.PIN, "1234")   # True
        store.close()
    """

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        iterations: int = MIN_PBKDF2_ITERATIONS,
        clock: Clock = now_ms,
    ) -> None:
        self.iterations = iterations
        self._clock = clock
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def setup(self, device_id: str, kind: CredentialKind, raw: str) -> None:
        """Validate, hash and store a credential, replacing any previous one of that kind.

        Raises InvalidCredentialFormat before touching the DB if raw breaks the
        format rules -- the existing credential (if any) is left intact.
        """
        validate_credential(kind, raw)
        salt = generate_salt()
        digest = derive_hash(raw, salt, self.iterations)
        with self.engine.connect() as conn:
            conn.execute(
                _credentials.delete().where(
                    (_credentials.c.device_id == device_id) & (_credentials.c.kind == kind.value)
                )
            )
            conn.execute(
                _credentials.insert().values(
                    device_id=device_id,
                    kind=kind.value,
                    salt=salt.hex(),
                    hash=digest.hex(),
                    iterations=self.iterations,
                    created_at=self._clock(),
                )
            )
            conn.commit()

    def get_credential(self, device_id: str, kind: CredentialKind) -> StoredCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where(
                    (_credentials.c.device_id == device_id) & (_credentials.c.kind == kind.value)
                )
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def is_configured(self, device_id: str, kind: CredentialKind) -> bool:
        return self.get_credential(device_id, kind) is not None

    def verify(self, device_id: str, kind: CredentialKind, raw: str) -> bool:
        """Return True if raw matches the stored credential of this kind.

        Re-derives with the stored salt and iteration count and compares in
        constant time. Returns False when nothing is configured; the gate
        checks is_configured() first to report NotConfigured distinctly.
        """
        stored = self.get_credential(device_id, kind)
        if stored is None:
            return False
        candidate = derive_hash(raw, bytes.fromhex(stored.salt), stored.iterations)
        return hashes_match(candidate, bytes.fromhex(stored.hash))

    def delete_credentials(self, device_id: str) -> int:
        """Remove every credential for the device. Returns the number deleted."""
        with self.engine.connect() as conn:
            result = conn.execute(_credentials.delete().where(_credentials.c.device_id == device_id))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Attempt state
    # ------------------------------------------------------------------

    def get_attempt_state(self, device_id: str) -> AttemptState:
        """Return the device's counters; a device never seen starts at (0, None)."""
        with self.engine.connect() as conn:
            row = conn.execute(_attempt_state.select().where(_attempt_state.c.device_id == device_id)).fetchone()
        return _row_to_attempt_state(row) if row is not None else AttemptState(device_id=device_id)

    def save_attempt_state(self, state: AttemptState) -> None:
        """Upsert the counters. Callers hold the per-device lock."""
        values = {
            "failed_count": state.failed_count,
            "last_attempt_at": state.last_attempt_at,
            "lockout_until": state.lockout_until,
        }
        with self.engine.connect() as conn:
            result = conn.execute(
                _attempt_state.update().where(_attempt_state.c.device_id == state.device_id).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(_attempt_state.insert().values(device_id=state.device_id, **values))
            conn.commit()

    def reset_attempt_state(self, device_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _attempt_state.update()
                .where(_attempt_state.c.device_id == device_id)
                .values(failed_count=0, lockout_until=None)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> int:
        """Insert a new API key record and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    device_id=api_key.device_id,
                    created_at=_now_iso(),
                    is_active=1,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up an active API key by its HMAC hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.key_hash == key_hash) & (_api_keys.c.is_active == 1))
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self) -> list[ApiKey]:
        """Return all active API keys (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select().where(_api_keys.c.is_active == 1).order_by(_api_keys.c.id.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def update_api_key_last_used(self, key_id: int) -> None:
        """Stamp last_used on a key after each successful API authentication."""
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used=_now_iso()))
            conn.commit()

    def revoke_api_key(self, key_id: int) -> bool:
        """Deactivate a key. Returns True if a key was revoked, False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(is_active=0))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_credential(row) -> StoredCredential:
    return StoredCredential(
        device_id=row.device_id,
        kind=CredentialKind(row.kind),
        salt=row.salt,
        hash=row.hash,
        iterations=row.iterations,
        created_at=row.created_at,
    )


def _row_to_attempt_state(row) -> AttemptState:
    return AttemptState(
        device_id=row.device_id,
        failed_count=row.failed_count,
        last_attempt_at=row.last_attempt_at,
        lockout_until=row.lockout_until,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        device_id=row.device_id,
        created_at=row.created_at,
        last_used=row.last_used,
        is_active=bool(row.is_active),
    )
