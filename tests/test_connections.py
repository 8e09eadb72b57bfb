"""Tests for the connection establisher."""

from __future__ import annotations

import logging
import ssl

import pytest

from brokerlink.connections import (
    ConnectionEstablisher,
    DialError,
    HandshakeError,
    NoAddressesError,
    ProtocolViolation,
)
from brokerlink.handshake import DemoBroker, DemoNode, EstablishedConnection, HandshakeSuccess
from brokerlink.models import Address, ConnectionParameters
from brokerlink.transport import AsyncioSocketDialer


def _establisher(broker: DemoBroker, parameters: ConnectionParameters | None = None) -> ConnectionEstablisher:
    return ConnectionEstablisher(parameters, handshake=broker.handshake, dialer=broker)


A = Address("a", 5672)
B = Address("b", 5672)
C = Address("c", 5672)
D = Address("d", 5672)


def test_single_address_connects_with_one_dial() -> None:
    broker = DemoBroker("single")

    connection = _establisher(broker).establish([Address("localhost")])

    assert connection.is_open
    assert broker.dialed == [Address("localhost")]
    assert connection.address == Address("localhost", 5672)
    # No redirects allowed, so the broker is asked to insist.
    assert broker.handshakes == [(Address("localhost", 5672), True)]


def test_failed_addresses_are_tried_in_order_until_one_succeeds() -> None:
    broker = DemoBroker({"a:1": "refuse", "b:2": "refuse", "c:3": "accept"})
    addresses = [Address("a", 1), Address("b", 2), Address("c", 3)]

    connection = _establisher(broker).establish(addresses)

    assert broker.dialed == addresses
    assert connection.address == Address("c", 3)


def test_redirect_is_followed_before_next_candidate() -> None:
    broker = DemoBroker({"a:5672": DemoNode.redirect("b:5672"), "b:5672": "accept", "d:5672": "accept"})
    budget: dict[Address, int] = {}

    connection = _establisher(broker).establish([A, D], max_redirects=1, budget=budget)

    assert connection.address == B
    assert broker.dialed == [A, B]
    assert budget == {A: 1}
    assert broker.handshakes == [(A, False), (B, False)]
    assert broker.open_transports == (connection.transport,)


def test_well_behaved_broker_honours_insist_without_redirect_budget() -> None:
    broker = DemoBroker({"a:5672": DemoNode.redirect("b:5672"), "b:5672": "accept"})

    connection = _establisher(broker).establish([A], max_redirects=0)

    assert connection.address == A
    assert broker.dialed == [A]


def test_redirect_despite_insist_is_a_protocol_violation() -> None:
    broker = DemoBroker(
        {
            "a:5672": DemoNode.redirect("b:5672", misbehave_on_insist=True),
            "b:5672": "accept",
            "d:5672": "accept",
        }
    )

    with pytest.raises(ProtocolViolation) as excinfo:
        _establisher(broker).establish([A, D], max_redirects=0)

    assert excinfo.value.address == A
    assert broker.dialed == [A]
    assert broker.open_transports == ()


def test_known_addresses_are_tried_when_redirect_target_is_unreachable() -> None:
    broker = DemoBroker(
        {
            "a:5672": DemoNode.redirect("b:5672", "c:5672"),
            "b:5672": "refuse",
            "c:5672": "accept",
            "d:5672": "accept",
        }
    )

    connection = _establisher(broker).establish([A, D], max_redirects=1)

    assert connection.address == C
    assert broker.dialed == [A, B, C]


def test_last_dial_error_is_surfaced_when_everything_fails() -> None:
    broker = DemoBroker({"a:1": "refuse", "b:2": "refuse"})

    with pytest.raises(DialError) as excinfo:
        _establisher(broker).establish([Address("a", 1), Address("b", 2)])

    assert excinfo.value.address == Address("b", 2)
    assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)
    assert "b:2" in str(excinfo.value)


def test_empty_address_list_raises_no_addresses_error() -> None:
    broker = DemoBroker("single")

    with pytest.raises(NoAddressesError):
        _establisher(broker).establish([])

    assert broker.dialed == []


def test_negative_redirect_limit_is_rejected() -> None:
    with pytest.raises(ValueError):
        _establisher(DemoBroker("single")).establish([Address("localhost")], max_redirects=-1)


def test_redirect_budget_caps_hops_from_one_address() -> None:
    broker = DemoBroker({"a:5672": DemoNode.redirect("a:5672")})
    budget: dict[Address, int] = {}

    connection = _establisher(broker).establish([A], max_redirects=2, budget=budget)

    assert connection.address == A
    assert broker.dialed == [A, A, A]
    assert [insist for _, insist in broker.handshakes] == [False, False, True]
    assert budget == {A: 2}


def test_redirect_budget_is_shared_with_nested_attempts() -> None:
    broker = DemoBroker({"a:5672": DemoNode.redirect("b:5672", "a:5672"), "b:5672": "refuse"})
    budget: dict[Address, int] = {}

    connection = _establisher(broker).establish([A], max_redirects=1, budget=budget)

    assert connection.address == A
    assert broker.dialed == [A, B, A]
    # The nested attempt sees the hop already spent and insists.
    assert broker.handshakes == [(A, False), (A, True)]
    assert budget == {A: 1}


def test_nested_failure_replaces_outer_dial_error() -> None:
    broker = DemoBroker(
        {
            "a:5672": DemoNode.redirect("b:5672", "c:5672"),
            "b:5672": "refuse",
            "c:5672": "refuse",
        }
    )

    with pytest.raises(DialError) as excinfo:
        _establisher(broker).establish([A], max_redirects=1)

    assert excinfo.value.address == C
    assert broker.dialed == [A, B, C]


def test_redirect_without_known_addresses_moves_to_next_candidate() -> None:
    broker = DemoBroker({"a:5672": DemoNode.redirect("b:5672"), "b:5672": "refuse", "d:5672": "accept"})

    connection = _establisher(broker).establish([A, D], max_redirects=1)

    assert connection.address == D
    assert broker.dialed == [A, B, D]


def test_handshake_transport_failure_closes_transport_and_continues() -> None:
    broker = DemoBroker({"a:5672": "reset", "d:5672": "accept"})

    connection = _establisher(broker).establish([A, D])

    assert connection.address == D
    assert broker.transports[0].closed is True
    assert broker.open_transports == (connection.transport,)


def test_handshake_failure_is_reported_as_handshake_error() -> None:
    broker = DemoBroker({"a:5672": "reset"})

    with pytest.raises(HandshakeError) as excinfo:
        _establisher(broker).establish([A])

    assert isinstance(excinfo.value, DialError)
    assert isinstance(excinfo.value.__cause__, ConnectionResetError)


def test_parameters_reach_the_handshake() -> None:
    broker = DemoBroker("single")
    parameters = ConnectionParameters(username="app", password="secret", virtual_host="orders")

    connection = _establisher(broker, parameters).establish([Address("localhost")])

    assert connection.parameters == parameters


def test_connect_wraps_single_host() -> None:
    broker = DemoBroker({"localhost": DemoNode.redirect("elsewhere:5672"), "other:5673": "accept"})
    establisher = _establisher(broker)

    connection = establisher.connect("localhost")
    assert connection.address == Address("localhost", 5672)
    assert broker.handshakes[-1] == (Address("localhost", 5672), True)

    connection = establisher.connect("other", 5673)
    assert connection.address == Address("other", 5673)
    assert broker.dialed == [Address("localhost"), Address("other", 5673)]


def test_closing_connection_releases_transport() -> None:
    broker = DemoBroker("single")

    with _establisher(broker).establish([Address("localhost")]) as connection:
        assert connection.is_open

    assert connection.is_open is False
    assert broker.open_transports == ()


class _BrokenCloseTransport:
    def __init__(self, address: Address) -> None:
        self.address = address

    def close(self) -> None:
        raise RuntimeError("close exploded")


class _BrokenCloseDialer:
    def dial(self, address: Address) -> _BrokenCloseTransport:
        return _BrokenCloseTransport(address)


def test_close_failures_are_logged_and_do_not_mask_errors(caplog: pytest.LogCaptureFixture) -> None:
    def _reset(transport, parameters, insist):  # type: ignore[no-untyped-def]
        raise ConnectionResetError("gone")

    establisher = ConnectionEstablisher(handshake=_reset, dialer=_BrokenCloseDialer())

    with caplog.at_level(logging.ERROR, logger="brokerlink.connections"):
        with pytest.raises(HandshakeError):
            establisher.establish([A])

    assert "Failed to close transport" in caplog.text


def test_custom_handshake_success_is_returned_untouched() -> None:
    seen: list[bool] = []

    def _accept(transport, parameters, insist):  # type: ignore[no-untyped-def]
        seen.append(insist)
        return HandshakeSuccess(EstablishedConnection(transport.address, transport, parameters))

    broker = DemoBroker("single")
    establisher = ConnectionEstablisher(handshake=_accept, dialer=broker)

    connection = establisher.establish([Address("localhost")], max_redirects=3)

    assert seen == [False]
    assert connection.transport is broker.transports[0]


def test_use_tls_installs_tls_dialer() -> None:
    establisher = ConnectionEstablisher(handshake=DemoBroker("single").handshake, dialer=DemoBroker("single"))

    establisher.use_tls(verify=False)

    try:
        dialer = establisher.dialer
        assert isinstance(dialer, AsyncioSocketDialer)
        assert dialer.default_port == 5671
        assert dialer.tls_context is not None
        assert dialer.tls_context.verify_mode == ssl.CERT_NONE
    finally:
        establisher.shutdown()


def test_protocol_violation_in_nested_attempt_aborts_everything() -> None:
    broker = DemoBroker(
        {
            "a:5672": DemoNode.redirect("b:5672", "a:5672", misbehave_on_insist=True),
            "b:5672": "refuse",
            "d:5672": "accept",
        }
    )

    with pytest.raises(ProtocolViolation) as excinfo:
        _establisher(broker).establish([A, D], max_redirects=1)

    assert excinfo.value.address == A
    assert broker.dialed == [A, B, A]
    assert D not in broker.dialed
    assert broker.open_transports == ()


def test_establish_after_shutdown_fails_instead_of_hanging() -> None:
    establisher = ConnectionEstablisher(handshake=DemoBroker("single").handshake)
    establisher.shutdown()

    with pytest.raises(DialError) as excinfo:
        establisher.establish([Address("127.0.0.1", 1)])

    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert "shut down" in str(excinfo.value)
