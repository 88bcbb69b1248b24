"""
tests/conftest.py -- Shared test fixtures for SecurePower.

This module provides:
  - FakeClock: an explicit epoch-ms clock every service accepts as `clock`
  - FakeChannel: an in-process Channel that records sends and can fail or hang
  - store fixtures backed by per-test SQLite files under tmp_path
  - api_client: TestClient over the real app with a patched lifespan

Design: the API fixture uses named shared-memory SQLite URIs (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit tests use files under tmp_path instead, which the
dispatcher's and the concurrency tests' worker threads can share freely.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import threading
import uuid
from collections.abc import Generator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# Integration tests make many requests from one client address.
os.environ.setdefault("VERIFY_RATE_LIMIT", "1000/minute")
os.environ.setdefault("API_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from alerts.channels import AlertMessage, Channel
from alerts.store import AlertStore
from api.main import _attach_services, app
from api.services import Services, build_services
from auth.hashing import generate_api_key, hash_api_key
from auth.models import ApiKey
from auth.store import CredentialStore
from core.config import get_settings
from core.errors import ChannelDeliveryError
from core.models import Device, UserProfile
from tracking.store import SessionStore

START_MS = 1_700_000_000_000


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 0, seconds: float = 0) -> int:
        self.now += ms + int(seconds * 1000)
        return self.now


class FakeChannel(Channel):
    """Records every send. fail=True raises ChannelDeliveryError; hang=True blocks until release().

    fail_for lists recipients that fail while the rest go through.
    """

    def __init__(
        self,
        name: str,
        field_name: str,
        critical: bool = False,
        min_interval_seconds: int = 0,
        fail: bool = False,
        hang: bool = False,
        fail_for: Iterable[str] = (),
    ) -> None:
        super().__init__(name, critical=critical, min_interval_seconds=min_interval_seconds)
        self.field_name = field_name
        self.fail = fail
        self.hang = hang
        self.fail_for = set(fail_for)
        self.sent: list[tuple[str, AlertMessage]] = []
        self.calls = 0
        self._lock = threading.Lock()
        self._released = threading.Event()

    def recipients(self, user: UserProfile) -> list[str]:
        value = getattr(user, self.field_name)
        if isinstance(value, list):
            return list(value)
        return [value] if value else []

    def send(self, recipient: str, message: AlertMessage) -> Optional[str]:
        with self._lock:
            self.calls += 1
        if self.hang:
            self._released.wait(timeout=5)
        if self.fail:
            raise ChannelDeliveryError(f"{self.name} provider unavailable")
        if recipient in self.fail_for:
            raise ChannelDeliveryError(f"{self.name} rejected {recipient}")
        with self._lock:
            self.sent.append((recipient, message))
            return f"{self.name}-{len(self.sent)}"

    def release(self) -> None:
        self._released.set()


def whatsapp_channel(**kwargs) -> FakeChannel:
    return FakeChannel("whatsapp", "trusted_number", critical=True, min_interval_seconds=300, **kwargs)


def email_channel(**kwargs) -> FakeChannel:
    return FakeChannel("email", "family_emails", critical=True, **kwargs)


def push_channel(**kwargs) -> FakeChannel:
    return FakeChannel("push", "fcm_tokens", **kwargs)


def make_user(user_id: str = "user-1", **overrides) -> UserProfile:
    values = {
        "user_id": user_id,
        "name": "Ana",
        "trusted_number": "+15550100",
        "family_emails": ["family@example.com"],
        "fcm_tokens": ["fcm-token-1"],
    }
    values.update(overrides)
    return UserProfile(**values)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credential_store(tmp_path, clock) -> Generator[CredentialStore, None, None]:
    store = CredentialStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}", clock=clock)
    yield store
    store.close()


@pytest.fixture
def alert_store(tmp_path, clock) -> Generator[AlertStore, None, None]:
    store = AlertStore(db_url=f"sqlite:///{tmp_path / 'alerts.db'}", clock=clock)
    yield store
    store.close()


@pytest.fixture
def session_store(tmp_path) -> Generator[SessionStore, None, None]:
    store = SessionStore(db_url=f"sqlite:///{tmp_path / 'tracking.db'}")
    yield store
    store.close()


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:test_{name}_{uuid.uuid4().hex[:8]}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service graph into app.state so TestClient
    routes see isolated test DBs and fake channels. The sweep_task is a
    long-sleeping coroutine so shutdown can cancel it like the real one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        _attach_services(app, services)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


def _issue_key(store: CredentialStore, name: str, device_id: Optional[str]) -> str:
    raw = generate_api_key()
    store.create_api_key(ApiKey(name=name, key_hash=hash_api_key(raw), key_prefix=raw[:12], device_id=device_id))
    return raw


@dataclass
class ApiHarness:
    client: TestClient
    services: Services
    operator: dict[str, str]
    device: dict[str, str]
    other_device: dict[str, str]
    channels: dict[str, FakeChannel] = field(default_factory=dict)


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    Keys: operator (any device), device (scoped to "device-1"),
    other_device (scoped to "device-2"). "user-1" owns "device-1" and has
    one address for every fake channel.
    """
    channels = {"email": email_channel(), "push": push_channel()}
    services = build_services(
        get_settings(),
        channels=list(channels.values()),
        db_urls={"auth": _memory_url("auth"), "alerts": _memory_url("alerts"), "tracking": _memory_url("tracking")},
    )
    services.alert_store.save_user(make_user("user-1"))
    services.alert_store.save_device(Device(device_id="device-1", user_id="user-1", name="Pixel 7"))

    operator = {"X-API-Key": _issue_key(services.credential_store, "operator", None)}
    device = {"X-API-Key": _issue_key(services.credential_store, "device-1", "device-1")}
    other = {"X-API-Key": _issue_key(services.credential_store, "device-2", "device-2")}

    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield ApiHarness(client, services, operator, device, other, channels)

    services.close()
