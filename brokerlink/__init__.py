"""Broker connection establishment with redirect and fallback handling."""

from __future__ import annotations

from .connections import (
    BrokerConnectionError,
    ConnectionEstablisher,
    DialError,
    HandshakeError,
    NoAddressesError,
    ProtocolViolation,
)
from .handshake import EstablishedConnection, HandshakeRedirect, HandshakeSuccess
from .models import Address, ConnectionParameters, RedirectSignal

__version__ = "0.1.0"

__all__ = [
    "Address",
    "BrokerConnectionError",
    "ConnectionEstablisher",
    "ConnectionParameters",
    "DialError",
    "EstablishedConnection",
    "HandshakeError",
    "HandshakeRedirect",
    "HandshakeSuccess",
    "NoAddressesError",
    "ProtocolViolation",
    "RedirectSignal",
    "__version__",
]
