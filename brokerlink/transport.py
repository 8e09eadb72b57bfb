"""Dial capability: turns an address into an open transport handle."""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl
import threading
from typing import Any, Protocol, runtime_checkable

from .models import DEFAULT_PORT, DEFAULT_TLS_PORT, Address

LOG = logging.getLogger(__name__)


@runtime_checkable
class TransportHandle(Protocol):
    """Open byte stream to a broker; closing it must be safe to repeat."""

    address: Address

    def close(self) -> None: ...


@runtime_checkable
class Dialer(Protocol):
    """Opens transports; raises ``OSError`` on refusal, timeout or DNS failure."""

    def dial(self, address: Address) -> TransportHandle: ...


class StreamTransport:
    """Transport backed by an asyncio stream pair living on a dialer loop."""

    def __init__(
        self,
        address: Address,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.address = address
        self.reader = reader
        self.writer = writer
        self._loop = loop
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._loop.is_running():
            # Dialer loop is gone; tear the connection down from this thread.
            raw = self.writer.get_extra_info("socket")
            if raw is not None:
                try:
                    raw.shutdown(socket.SHUT_RDWR)
                except OSError:
                    LOG.debug("Socket already disconnected", extra={"address": str(self.address)})
            self.writer.transport.close()
            return
        future = asyncio.run_coroutine_threadsafe(self._close(), self._loop)
        future.result(timeout=1)

    async def _close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            # Peer already reset the stream; the socket is released either way.
            LOG.debug("Stream reset while closing", extra={"address": str(self.address)})

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<StreamTransport {self.address} {state}>"


class AsyncioSocketDialer:
    """Blocking TCP/TLS dialer running asyncio on a background thread."""

    def __init__(
        self,
        *,
        connect_timeout: float = 3.0,
        tls_context: ssl.SSLContext | None = None,
        default_port: int | None = None,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._tls_context = tls_context
        if default_port is None:
            default_port = DEFAULT_TLS_PORT if tls_context is not None else DEFAULT_PORT
        self._default_port = default_port
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="brokerlink-dialer",
            daemon=True,
        )
        self._loop_thread.start()

    @property
    def default_port(self) -> int:
        return self._default_port

    @property
    def tls_context(self) -> ssl.SSLContext | None:
        return self._tls_context

    def dial(self, address: Address) -> StreamTransport:
        if not self._loop.is_running():
            raise ConnectionError(f"Dialer is shut down; cannot connect to {address}")
        target = address.with_default_port(self._default_port)
        LOG.debug("Opening socket", extra={"address": str(target), "tls": self._tls_context is not None})
        future = asyncio.run_coroutine_threadsafe(self._open(target), self._loop)
        reader, writer = future.result()
        return StreamTransport(target, reader, writer, self._loop)

    def shutdown(self) -> None:
        """Stop the background event loop."""

        if not self._loop.is_running():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def __del__(self) -> None:  # pragma: no cover - best effort cleanup
        try:
            self.shutdown()
        except Exception:
            pass

    async def _open(self, target: Address) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        kwargs: dict[str, Any] = {}
        if self._tls_context is not None:
            kwargs["ssl"] = self._tls_context
            kwargs["server_hostname"] = target.host
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(target.host, target.port, **kwargs),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"Timed out after {self._connect_timeout}s connecting to {target}") from exc


def build_tls_context(*, verify: bool = True, cafile: str | None = None) -> ssl.SSLContext:
    """Client TLS context; ``verify=False`` trusts any peer certificate."""

    context = ssl.create_default_context(cafile=cafile)
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


__all__ = [
    "AsyncioSocketDialer",
    "Dialer",
    "StreamTransport",
    "TransportHandle",
    "build_tls_context",
]
