"""
api/services.py -- Construct and wire the engine's stores and services.

One place builds the object graph so the API lifespan, the CLI and the test
fixtures get identical wiring:

    CredentialStore -> AuthGate --(on_escalation)--> SecurityOrchestrator
    AlertStore -> AlertDispatcher(channels)     ----^        |
    SessionStore -> TrackingService <--(on_close, on_location)

No module-level singletons: each call returns a fresh graph.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from alerts.channels import Channel, build_channels
from alerts.dispatcher import AlertDispatcher
from alerts.orchestrator import SecurityOrchestrator
from alerts.store import AlertStore
from auth.gate import AuthGate
from auth.store import CredentialStore
from core.clock import Clock, now_ms
from core.config import Settings
from tracking.sessions import TrackingService
from tracking.store import SessionStore


@dataclass
class Services:
    credential_store: CredentialStore
    alert_store: AlertStore
    session_store: SessionStore
    gate: AuthGate
    dispatcher: AlertDispatcher
    tracking: TrackingService
    orchestrator: SecurityOrchestrator

    def close(self) -> None:
        self.orchestrator.close()
        self.credential_store.close()
        self.alert_store.close()
        self.session_store.close()


def build_services(
    settings: Settings,
    channels: Iterable[Channel] | None = None,
    clock: Clock = now_ms,
    db_urls: dict[str, str] | None = None,
) -> Services:
    """Build the full service graph from settings.

    channels defaults to build_channels(settings). db_urls overrides the
    database per store ("auth", "alerts", "tracking"); otherwise
    settings.database_url is shared, or each store uses its own SQLite file.
    """
    urls = dict(db_urls or {})

    def _url_kwargs(name: str) -> dict:
        url = urls.get(name) or settings.database_url
        return {"db_url": url} if url else {}

    credential_store = CredentialStore(iterations=settings.pbkdf2_iterations, clock=clock, **_url_kwargs("auth"))
    alert_store = AlertStore(clock=clock, **_url_kwargs("alerts"))
    session_store = SessionStore(**_url_kwargs("tracking"))

    dispatcher = AlertDispatcher(
        alert_store,
        build_channels(settings) if channels is None else channels,
        timeout_seconds=settings.channel_timeout_seconds,
        tracking_base_url=settings.tracking_base_url,
        clock=clock,
    )
    tracking = TrackingService(
        session_store,
        retention_cap=settings.location_retention_cap,
        max_age_hours=settings.session_max_age_hours,
        clock=clock,
    )
    orchestrator = SecurityOrchestrator(alert_store, dispatcher, tracking, clock=clock)
    gate = AuthGate(
        credential_store,
        on_escalation=orchestrator.handle_escalation,
        threshold=settings.failed_attempt_threshold,
        lockout_seconds=settings.lockout_seconds,
        clock=clock,
    )
    return Services(
        credential_store=credential_store,
        alert_store=alert_store,
        session_store=session_store,
        gate=gate,
        dispatcher=dispatcher,
        tracking=tracking,
        orchestrator=orchestrator,
    )
