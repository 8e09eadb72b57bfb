"""Shared value types used across the establisher, transports and sessions."""

from __future__ import annotations

from dataclasses import dataclass, replace

UNSET_PORT = -1
DEFAULT_PORT = 5672
DEFAULT_TLS_PORT = 5671

DEFAULT_USERNAME = "guest"
DEFAULT_PASSWORD = "guest"
DEFAULT_VIRTUAL_HOST = "/"


@dataclass(frozen=True, slots=True)
class Address:
    """Host/port pair identifying a candidate broker endpoint.

    The port keeps the unset sentinel until dial time, so ``Address("h")`` and
    ``Address("h", 5672)`` are different keys in a redirect budget.
    """

    host: str
    port: int = UNSET_PORT

    @property
    def has_port(self) -> bool:
        return self.port != UNSET_PORT

    def with_default_port(self, default: int) -> Address:
        """Return a copy with the unset sentinel replaced by ``default``."""

        if self.has_port:
            return self
        return replace(self, port=default)

    @classmethod
    def parse(cls, text: str) -> Address:
        """Parse ``host``, ``host:port`` or ``[v6-literal]:port``."""

        value = text.strip()
        if not value:
            raise ValueError("Address must not be empty.")
        if value.startswith("["):
            host, sep, rest = value[1:].partition("]")
            if not sep or not host:
                raise ValueError(f"Malformed IPv6 address '{text}'.")
            if not rest:
                return cls(host)
            if not rest.startswith(":"):
                raise ValueError(f"Malformed IPv6 address '{text}'.")
            return cls(host, _parse_port(rest[1:], text))
        if value.count(":") > 1:
            # Bare IPv6 literal without brackets carries no port.
            return cls(value)
        host, sep, port = value.partition(":")
        if not host:
            raise ValueError(f"Address '{text}' has no host.")
        if not sep:
            return cls(host)
        return cls(host, _parse_port(port, text))

    @classmethod
    def parse_many(cls, text: str) -> tuple[Address, ...]:
        """Parse a comma-separated address list, skipping blank entries."""

        return tuple(cls.parse(chunk) for chunk in text.split(",") if chunk.strip())

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if not self.has_port:
            return host
        return f"{host}:{self.port}"


RedirectAttemptBudget = dict[Address, int]


@dataclass(frozen=True, slots=True)
class RedirectSignal:
    """Server instruction to retry elsewhere, plus other endpoints worth trying."""

    next_address: Address
    known_addresses: tuple[Address, ...] = ()


@dataclass(frozen=True, slots=True)
class ConnectionParameters:
    """Credentials and negotiation limits requested during the handshake.

    Zero limits mean "unlimited" (channel/frame max) or "none" (heartbeat).
    """

    username: str = DEFAULT_USERNAME
    password: str = DEFAULT_PASSWORD
    virtual_host: str = DEFAULT_VIRTUAL_HOST
    requested_channel_max: int = 0
    requested_frame_max: int = 0
    requested_heartbeat: int = 0


def _parse_port(value: str, text: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ValueError(f"Invalid port in address '{text}'.") from None
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in address '{text}'.")
    return port


__all__ = [
    "Address",
    "ConnectionParameters",
    "DEFAULT_PASSWORD",
    "DEFAULT_PORT",
    "DEFAULT_TLS_PORT",
    "DEFAULT_USERNAME",
    "DEFAULT_VIRTUAL_HOST",
    "RedirectAttemptBudget",
    "RedirectSignal",
    "UNSET_PORT",
]
