"""Connection establishment across candidate brokers, redirects and fallbacks."""

from __future__ import annotations

import logging
import ssl
from typing import Sequence

from .handshake import EstablishedConnection, Handshake, HandshakeSuccess
from .models import UNSET_PORT, Address, ConnectionParameters, RedirectAttemptBudget, RedirectSignal
from .transport import AsyncioSocketDialer, Dialer, TransportHandle, build_tls_context

LOG = logging.getLogger(__name__)


class BrokerConnectionError(OSError):
    """Raised when no broker connection could be established."""


class DialError(BrokerConnectionError):
    """Network-level failure reaching one address; the next candidate is tried."""

    _template = "Failed to connect to {address}: {reason}"

    def __init__(self, address: Address, reason: str) -> None:
        super().__init__(self._template.format(address=address, reason=reason))
        self.address = address
        self.reason = reason


class HandshakeError(DialError):
    """Transport failure during the handshake exchange."""

    _template = "Handshake with {address} failed: {reason}"


class ProtocolViolation(BrokerConnectionError):
    """Peer redirected although it was asked to insist; aborts establishment."""

    def __init__(self, address: Address) -> None:
        super().__init__(f"Broker at {address} ignored the no-redirect (insist) request")
        self.address = address


class NoAddressesError(BrokerConnectionError):
    """No candidate address produced a recordable failure."""


class ConnectionEstablisher:
    """Opens a broker connection from an ordered list of candidate addresses.

    Redirects are followed per address until that address has used up
    ``max_redirects`` hops. The redirect budget is shared by every nested
    attempt of one ``establish`` call, so recursion into redirect-supplied
    address lists never multiplies the number of hops allowed.
    """

    def __init__(
        self,
        parameters: ConnectionParameters | None = None,
        *,
        handshake: Handshake,
        dialer: Dialer | None = None,
        connect_timeout: float = 3.0,
    ) -> None:
        self._parameters = parameters or ConnectionParameters()
        self._handshake = handshake
        self._connect_timeout = connect_timeout
        self._owns_dialer = dialer is None
        self._dialer: Dialer = dialer or AsyncioSocketDialer(connect_timeout=connect_timeout)

    @property
    def parameters(self) -> ConnectionParameters:
        return self._parameters

    @parameters.setter
    def parameters(self, value: ConnectionParameters) -> None:
        self._parameters = value

    @property
    def dialer(self) -> Dialer:
        return self._dialer

    @dialer.setter
    def dialer(self, value: Dialer) -> None:
        self._release_owned_dialer()
        self._dialer = value

    def use_tls(self, context: ssl.SSLContext | None = None, *, verify: bool = True) -> None:
        """Dial through TLS from now on, using ``context`` or a fresh client context."""

        if context is None:
            context = build_tls_context(verify=verify)
        self._release_owned_dialer()
        self._dialer = AsyncioSocketDialer(connect_timeout=self._connect_timeout, tls_context=context)
        self._owns_dialer = True

    def shutdown(self) -> None:
        """Stop the dialer this establisher created for itself, if any."""

        self._release_owned_dialer()

    def connect(self, host: str, port: int = UNSET_PORT) -> EstablishedConnection:
        """Connect to a single endpoint without following redirects."""

        return self.establish((Address(host, port),))

    def establish(
        self,
        addresses: Sequence[Address],
        max_redirects: int = 0,
        *,
        budget: RedirectAttemptBudget | None = None,
    ) -> EstablishedConnection:
        """Connect to the first reachable candidate, following redirects.

        ``budget`` may be supplied to inspect redirect counts afterwards; it
        must not be shared with a concurrent call.
        """

        if max_redirects < 0:
            raise ValueError("max_redirects must be >= 0")
        return self._establish(tuple(addresses), max_redirects, {} if budget is None else budget)

    def _establish(
        self,
        addresses: tuple[Address, ...],
        max_redirects: int,
        budget: RedirectAttemptBudget,
    ) -> EstablishedConnection:
        last_error: BrokerConnectionError | None = None
        for candidate in addresses:
            known: tuple[Address, ...] = ()
            address = candidate
            try:
                while True:
                    result = self._attempt(address, max_redirects, budget)
                    if isinstance(result, EstablishedConnection):
                        return result
                    budget[address] = budget.get(address, 0) + 1
                    LOG.info(
                        "Following broker redirect",
                        extra={
                            "address": str(address),
                            "redirect_to": str(result.next_address),
                            "redirects": budget[address],
                        },
                    )
                    known = result.known_addresses
                    address = result.next_address
            except DialError as exc:
                last_error = exc
                LOG.warning("Broker address unreachable", extra={"address": str(address), "error": str(exc)})
                # An empty list would only replace this error with a generic one.
                if not known:
                    continue
                LOG.debug(
                    "Trying addresses known to redirecting broker",
                    extra={"addresses": [str(item) for item in known]},
                )
                try:
                    return self._establish(known, max_redirects, budget)
                except (DialError, NoAddressesError) as nested:
                    # TODO: the nested error wins even when the outer dial error is more telling.
                    last_error = nested
        if last_error is None:
            raise NoAddressesError("Unable to connect: no candidate addresses")
        raise last_error

    def _attempt(
        self,
        address: Address,
        max_redirects: int,
        budget: RedirectAttemptBudget,
    ) -> EstablishedConnection | RedirectSignal:
        transport = self._dial(address)
        allow_redirects = budget.get(address, 0) < max_redirects
        handed_off = False
        try:
            try:
                outcome = self._handshake(transport, self._parameters, not allow_redirects)
            except BrokerConnectionError:
                raise
            except OSError as exc:
                raise HandshakeError(address, _describe(exc)) from exc
            if isinstance(outcome, HandshakeSuccess):
                handed_off = True
                LOG.debug("Broker connection established", extra={"address": str(address)})
                return outcome.connection
            if not allow_redirects:
                raise ProtocolViolation(address)
            return outcome.signal
        finally:
            if not handed_off:
                _close_quietly(transport)

    def _dial(self, address: Address) -> TransportHandle:
        LOG.debug("Dialing broker", extra={"address": str(address)})
        try:
            return self._dialer.dial(address)
        except BrokerConnectionError:
            raise
        except OSError as exc:
            raise DialError(address, _describe(exc)) from exc

    def _release_owned_dialer(self) -> None:
        if self._owns_dialer and isinstance(self._dialer, AsyncioSocketDialer):
            self._dialer.shutdown()
        self._owns_dialer = False


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _close_quietly(transport: TransportHandle) -> None:
    try:
        transport.close()
    except Exception:
        LOG.exception("Failed to close transport", extra={"address": str(transport.address)})


__all__ = [
    "BrokerConnectionError",
    "ConnectionEstablisher",
    "DialError",
    "HandshakeError",
    "NoAddressesError",
    "ProtocolViolation",
]
