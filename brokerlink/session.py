"""Session manager wiring configured broker profiles to the establisher."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .config import AppConfig, BrokerProfileConfig
from .connections import BrokerConnectionError, ConnectionEstablisher
from .handshake import EstablishedConnection, Handshake
from .models import Address
from .transport import AsyncioSocketDialer, Dialer, build_tls_context

LOG = logging.getLogger(__name__)

SessionListener = Callable[["SessionState"], None]
DialerFactory = Callable[[BrokerProfileConfig], Dialer]


@dataclass(frozen=True, slots=True)
class SessionState:
    """Current session snapshot (active profile + connection outcome)."""

    profile: BrokerProfileConfig
    connected: bool
    address: Address | None = None
    connected_at: datetime | None = None
    latency_ms: int | None = None
    last_error: str | None = None


class SessionManager:
    """Keeps at most one open broker connection for the selected profile."""

    def __init__(
        self,
        config: AppConfig,
        *,
        handshake: Handshake,
        dialer_factory: DialerFactory | None = None,
    ) -> None:
        self._config = config
        self._handshake = handshake
        self._dialer_factory = dialer_factory or socket_dialer_for
        self._profiles = tuple(config.profiles)
        self._establishers: dict[str, ConnectionEstablisher] = {}
        self._listeners: set[SessionListener] = set()
        self._state: SessionState | None = None
        self._connection: EstablishedConnection | None = None

    @property
    def profiles(self) -> tuple[BrokerProfileConfig, ...]:
        """Profiles available in the current config."""

        return self._profiles

    @property
    def state(self) -> SessionState | None:
        return self._state

    @property
    def connection(self) -> EstablishedConnection | None:
        return self._connection

    @property
    def active_profile_name(self) -> str | None:
        """Name of the profile behind the current state, if any."""

        if self._state:
            return self._state.profile.name
        return None

    def connect(self, name: str | None = None) -> SessionState:
        """Open a connection for ``name`` (or the configured active profile)."""

        profile = self._profile_by_name(name or self._default_profile_name())
        self._close_connection()
        establisher = self._establisher_for(profile)
        started = time.perf_counter()
        try:
            connection = establisher.establish(profile.parsed_addresses(), profile.max_redirects)
        except BrokerConnectionError as exc:
            LOG.warning("Profile connection failed", extra={"profile": profile.name, "error": str(exc)})
            self._update_state(SessionState(profile=profile, connected=False, last_error=str(exc)))
            raise
        self._connection = connection
        latency_ms = int((time.perf_counter() - started) * 1000)
        LOG.info(
            "Profile connected",
            extra={"profile": profile.name, "address": str(connection.address), "latency_ms": latency_ms},
        )
        self._update_state(
            SessionState(
                profile=profile,
                connected=True,
                address=connection.address,
                connected_at=datetime.now(tz=timezone.utc),
                latency_ms=latency_ms,
            )
        )
        return self._state

    def disconnect(self) -> None:
        """Close the open connection, keeping the profile selected."""

        self._close_connection()
        if self._state and self._state.connected:
            self._update_state(SessionState(profile=self._state.profile, connected=False))

    def shutdown(self) -> None:
        """Disconnect and stop every dialer created for the profiles."""

        self.disconnect()
        for establisher in self._establishers.values():
            dialer = establisher.dialer
            if isinstance(dialer, AsyncioSocketDialer):
                dialer.shutdown()
        self._establishers.clear()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        if self._state:
            listener(self._state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _default_profile_name(self) -> str:
        if self._config.active_profile:
            return self._config.active_profile
        if not self._profiles:
            raise ValueError("No broker profiles configured.")
        return self._profiles[0].name

    def _profile_by_name(self, name: str) -> BrokerProfileConfig:
        for profile in self._profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' not found.")

    def _establisher_for(self, profile: BrokerProfileConfig) -> ConnectionEstablisher:
        establisher = self._establishers.get(profile.name)
        if establisher is None:
            establisher = ConnectionEstablisher(
                profile.to_parameters(),
                handshake=self._handshake,
                dialer=self._dialer_factory(profile),
            )
            self._establishers[profile.name] = establisher
        return establisher

    def _close_connection(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        connection.close()

    def _update_state(self, state: SessionState) -> None:
        self._state = state
        for listener in tuple(self._listeners):
            listener(state)


def socket_dialer_for(profile: BrokerProfileConfig) -> AsyncioSocketDialer:
    """Build the socket dialer matching a profile's timeout and TLS settings."""

    tls_context = build_tls_context(verify=profile.tls_verify) if profile.tls else None
    return AsyncioSocketDialer(connect_timeout=profile.connect_timeout, tls_context=tls_context)


__all__ = [
    "SessionManager",
    "SessionState",
    "socket_dialer_for",
]
