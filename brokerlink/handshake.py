"""Handshake capability, its outcomes, and an in-memory demo broker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol, Union

from .models import DEFAULT_PORT, Address, ConnectionParameters, RedirectSignal
from .transport import TransportHandle


class EstablishedConnection:
    """Open broker connection; owns its transport until closed."""

    def __init__(
        self,
        address: Address,
        transport: TransportHandle,
        parameters: ConnectionParameters,
    ) -> None:
        self.address = address
        self.transport = transport
        self.parameters = parameters
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.transport.close()

    def __enter__(self) -> EstablishedConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"<EstablishedConnection {self.address} vhost={self.parameters.virtual_host!r} {state}>"


@dataclass(frozen=True, slots=True)
class HandshakeSuccess:
    connection: EstablishedConnection


@dataclass(frozen=True, slots=True)
class HandshakeRedirect:
    signal: RedirectSignal


HandshakeOutcome = Union[HandshakeSuccess, HandshakeRedirect]


class Handshake(Protocol):
    """Performs the protocol handshake over an already-dialed transport.

    ``insist`` asks the peer not to redirect. Transport-level problems during
    the exchange surface as ``OSError``.
    """

    def __call__(
        self,
        transport: TransportHandle,
        parameters: ConnectionParameters,
        insist: bool,
    ) -> HandshakeOutcome: ...


@dataclass(frozen=True, slots=True)
class DemoNode:
    """Behaviour of one simulated broker endpoint."""

    action: str = "accept"
    redirect_to: str | None = None
    known: tuple[str, ...] = ()
    misbehave_on_insist: bool = False

    @classmethod
    def redirect(cls, to: str, *known: str, misbehave_on_insist: bool = False) -> DemoNode:
        return cls("redirect", to, tuple(known), misbehave_on_insist)


DEMO_TOPOLOGIES: Mapping[str, Mapping[str, DemoNode | str]] = {
    "single": {
        "localhost": "accept",
    },
    "failover": {
        "primary:5672": "refuse",
        "secondary:5672": "accept",
    },
    "cluster": {
        "node-a:5672": DemoNode.redirect("node-b:5672", "node-c:5672"),
        "node-b:5672": "refuse",
        "node-c:5672": "accept",
    },
}

_ACTIONS = frozenset({"accept", "refuse", "redirect", "reset"})


class DemoTransport:
    """Transport handed out by :class:`DemoBroker`; only tracks closure."""

    def __init__(self, address: Address) -> None:
        self.address = address
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def __repr__(self) -> str:
        return f"<DemoTransport {self.address} {'closed' if self.closed else 'open'}>"


class DemoBroker:
    """Simulated broker cluster exposing both dial and handshake capabilities.

    Records every dial attempt, every handshake (with its ``insist`` flag) and
    every transport handed out, so callers can check ordering and cleanup.
    """

    def __init__(
        self,
        topology: Mapping[str, DemoNode | str] | str = "cluster",
        *,
        default_port: int = DEFAULT_PORT,
    ) -> None:
        source = DEMO_TOPOLOGIES[topology] if isinstance(topology, str) else topology
        self._default_port = default_port
        self._nodes: dict[Address, DemoNode] = {
            self._key(Address.parse(name)): self._coerce(node)
            for name, node in source.items()
        }
        self.dialed: list[Address] = []
        self.handshakes: list[tuple[Address, bool]] = []
        self.transports: list[DemoTransport] = []

    def dial(self, address: Address) -> DemoTransport:
        self.dialed.append(address)
        target = self._key(address)
        node = self._nodes.get(target)
        if node is None or node.action == "refuse":
            raise ConnectionRefusedError(f"Connection refused by {target}")
        transport = DemoTransport(target)
        self.transports.append(transport)
        return transport

    def handshake(
        self,
        transport: TransportHandle,
        parameters: ConnectionParameters,
        insist: bool,
    ) -> HandshakeOutcome:
        node = self._nodes[self._key(transport.address)]
        self.handshakes.append((transport.address, insist))
        if node.action == "reset":
            raise ConnectionResetError(f"Connection reset by {transport.address} during handshake")
        if node.action == "redirect" and (not insist or node.misbehave_on_insist):
            assert node.redirect_to is not None
            signal = RedirectSignal(
                next_address=Address.parse(node.redirect_to),
                known_addresses=tuple(Address.parse(item) for item in node.known),
            )
            return HandshakeRedirect(signal)
        return HandshakeSuccess(EstablishedConnection(transport.address, transport, parameters))

    @property
    def open_transports(self) -> tuple[DemoTransport, ...]:
        return tuple(transport for transport in self.transports if not transport.closed)

    def _key(self, address: Address) -> Address:
        return address.with_default_port(self._default_port)

    @staticmethod
    def _coerce(node: DemoNode | str) -> DemoNode:
        if isinstance(node, str):
            node = DemoNode(node)
        if node.action not in _ACTIONS:
            raise ValueError(f"Unknown demo node action '{node.action}'.")
        if node.action == "redirect" and not node.redirect_to:
            raise ValueError("Redirecting demo nodes need a target address.")
        return node


__all__ = [
    "DEMO_TOPOLOGIES",
    "DemoBroker",
    "DemoNode",
    "DemoTransport",
    "EstablishedConnection",
    "Handshake",
    "HandshakeOutcome",
    "HandshakeRedirect",
    "HandshakeSuccess",
]
