"""Unit tests for auth/store.py and auth/hashing.py -- credential persistence.

Covers:
- PIN and password format rules, including non-ASCII digits
- a rejected setup leaves the existing credential untouched
- salt is fresh per setup and never shared between kinds
- verify() re-derives with the stored salt and iteration count
- the raw credential never reaches the database
- attempt state defaults, upsert and reset
- API key create / lookup / revoke
"""

import pytest
from sqlalchemy import text

from auth.hashing import derive_hash, generate_api_key, hash_api_key, validate_credential
from auth.models import ApiKey, AttemptState, CredentialKind
from core.errors import InvalidCredentialFormat

PIN = CredentialKind.PIN
PASSWORD = CredentialKind.PASSWORD

# ---------------------------------------------------------------------------
# Format rules
# ---------------------------------------------------------------------------


class TestFormatRules:
    @pytest.mark.parametrize("raw", ["1234", "12345", "123456", "0000"])
    def test_valid_pins(self, raw: str) -> None:
        validate_credential(PIN, raw)

    @pytest.mark.parametrize("raw", ["123", "1234567", "12a4", "", "12 34", "١٢٣٤", "１２３４"])
    def test_invalid_pins(self, raw: str) -> None:
        """Length out of range, letters, spaces and non-ASCII digits are all rejected."""
        with pytest.raises(InvalidCredentialFormat):
            validate_credential(PIN, raw)

    def test_password_length_only(self) -> None:
        validate_credential(PASSWORD, "abcdefgh")
        validate_credential(PASSWORD, "        ")
        with pytest.raises(InvalidCredentialFormat):
            validate_credential(PASSWORD, "abcdefg")

    def test_invalid_format_is_value_error(self) -> None:
        assert issubclass(InvalidCredentialFormat, ValueError)


# ---------------------------------------------------------------------------
# Setup and verify
# ---------------------------------------------------------------------------


class TestSetupAndVerify:
    def test_setup_then_verify(self, credential_store) -> None:
        credential_store.setup("d1", PIN, "1234")
        assert credential_store.is_configured("d1", PIN)
        assert not credential_store.is_configured("d1", PASSWORD)
        assert credential_store.verify("d1", PIN, "1234") is True
        assert credential_store.verify("d1", PIN, "4321") is False

    def test_verify_unconfigured_is_false(self, credential_store) -> None:
        assert credential_store.verify("d1", PIN, "1234") is False

    def test_rejected_setup_keeps_previous_credential(self, credential_store) -> None:
        credential_store.setup("d1", PIN, "1234")
        before = credential_store.get_credential("d1", PIN)
        with pytest.raises(InvalidCredentialFormat):
            credential_store.setup("d1", PIN, "12")
        assert credential_store.get_credential("d1", PIN) == before
        assert credential_store.verify("d1", PIN, "1234")

    def test_setup_replaces_credential_with_fresh_salt(self, credential_store) -> None:
        credential_store.setup("d1", PIN, "1234")
        first = credential_store.get_credential("d1", PIN)
        credential_store.setup("d1", PIN, "5678")
        second = credential_store.get_credential("d1", PIN)
        assert first.salt != second.salt
        assert not credential_store.verify("d1", PIN, "1234")
        assert credential_store.verify("d1", PIN, "5678")

    def test_kinds_have_distinct_salts(self, credential_store) -> None:
        credential_store.setup("d1", PIN, "1234")
        credential_store.setup("d1", PASSWORD, "correct horse")
        pin = credential_store.get_credential("d1", PIN)
        password = credential_store.get_credential("d1", PASSWORD)
        assert pin.salt != password.salt
        assert len(bytes.fromhex(pin.salt)) == 32
        assert len(bytes.fromhex(pin.hash)) == 32

    def test_stored_hash_matches_pbkdf2(self, credential_store) -> None:
        """The stored digest is PBKDF2-HMAC-SHA256 over the stored salt and iteration count."""
        credential_store.setup("d1", PIN, "2468")
        stored = credential_store.get_credential("d1", PIN)
        assert stored.iterations == 100_000
        assert derive_hash("2468", bytes.fromhex(stored.salt), stored.iterations).hex() == stored.hash

    def test_raw_credential_not_persisted(self, credential_store) -> None:
        credential_store.setup("d1", PASSWORD, "hunter2hunter2")
        with credential_store.engine.connect() as conn:
            rows = conn.execute(text("SELECT * FROM credentials")).fetchall()
        dump = repr(rows)
        assert "hunter2hunter2" not in dump

    def test_verify_uses_stored_iterations(self, tmp_path, clock) -> None:
        """Raising the work factor later does not break credentials hashed before."""
        from auth.store import CredentialStore

        url = f"sqlite:///{tmp_path / 'iter.db'}"
        old = CredentialStore(db_url=url, iterations=100_000, clock=clock)
        old.setup("d1", PIN, "1357")
        old.close()
        new = CredentialStore(db_url=url, iterations=200_000, clock=clock)
        try:
            assert new.verify("d1", PIN, "1357")
        finally:
            new.close()

    def test_delete_credentials(self, credential_store) -> None:
        credential_store.setup("d1", PIN, "1234")
        credential_store.setup("d1", PASSWORD, "password1")
        assert credential_store.delete_credentials("d1") == 2
        assert not credential_store.is_configured("d1", PIN)
        assert not credential_store.is_configured("d1", PASSWORD)


# ---------------------------------------------------------------------------
# Attempt state
# ---------------------------------------------------------------------------


class TestAttemptState:
    def test_default_state(self, credential_store) -> None:
        state = credential_store.get_attempt_state("never-seen")
        assert state == AttemptState(device_id="never-seen")

    def test_save_and_reload(self, credential_store) -> None:
        credential_store.save_attempt_state(AttemptState("d1", failed_count=3, last_attempt_at=10, lockout_until=20))
        credential_store.save_attempt_state(AttemptState("d1", failed_count=4, last_attempt_at=11, lockout_until=21))
        assert credential_store.get_attempt_state("d1") == AttemptState("d1", 4, 11, 21)

    def test_reset(self, credential_store) -> None:
        credential_store.save_attempt_state(AttemptState("d1", failed_count=3, last_attempt_at=10, lockout_until=20))
        credential_store.reset_attempt_state("d1")
        state = credential_store.get_attempt_state("d1")
        assert state.failed_count == 0
        assert state.lockout_until is None


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class TestApiKeys:
    def test_generated_key_format(self) -> None:
        key = generate_api_key()
        assert key.startswith("sp_")
        assert len(key) == 3 + 64

    def test_hash_is_deterministic_hmac(self) -> None:
        key = generate_api_key()
        assert hash_api_key(key) == hash_api_key(key)
        assert hash_api_key(key) != hash_api_key(generate_api_key())
        assert key not in hash_api_key(key)

    def test_create_lookup_revoke(self, credential_store) -> None:
        raw = generate_api_key()
        key_id = credential_store.create_api_key(
            ApiKey(name="pixel", key_hash=hash_api_key(raw), key_prefix=raw[:12], device_id="d1")
        )
        found = credential_store.get_api_key_by_hash(hash_api_key(raw))
        assert found is not None
        assert found.id == key_id
        assert found.device_id == "d1"
        assert not found.is_operator

        credential_store.update_api_key_last_used(key_id)
        assert credential_store.get_api_key_by_hash(hash_api_key(raw)).last_used is not None

        assert credential_store.revoke_api_key(key_id) is True
        assert credential_store.get_api_key_by_hash(hash_api_key(raw)) is None
        assert credential_store.list_api_keys() == []

    def test_revoke_unknown_key(self, credential_store) -> None:
        assert credential_store.revoke_api_key(999) is False

    def test_operator_key(self, credential_store) -> None:
        raw = generate_api_key()
        credential_store.create_api_key(ApiKey(name="ops", key_hash=hash_api_key(raw), key_prefix=raw[:12]))
        assert credential_store.get_api_key_by_hash(hash_api_key(raw)).is_operator
