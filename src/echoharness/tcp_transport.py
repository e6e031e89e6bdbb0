"""Raw TCP transport built on ``asyncio`` protocols.

The event loop's readiness callbacks (``data_received``,
``connection_lost``) are the reactor: each one is forwarded straight into
the connection's pipeline.
"""

from __future__ import annotations

import asyncio
import logging

from echoharness.channel import Connection, Role
from echoharness.config import TransportKind
from echoharness.error import ConnectionClosedError
from echoharness.reactor import CompletionHandle
from echoharness.transport import ChannelInitializer, ListenHandle, Transport

logger = logging.getLogger(__name__)


class TcpConnection(Connection, asyncio.Protocol):
    """A TCP stream endpoint; also the ``asyncio.Protocol`` feeding it."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        role: Role,
        initializer: ChannelInitializer,
    ) -> None:
        super().__init__(loop, role)
        self._initializer = initializer
        self._transport: asyncio.Transport | None = None

    # -- asyncio.Protocol -------------------------------------------------

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        self._initializer(self)
        self._activate()

    def data_received(self, data: bytes) -> None:
        self._deliver(data)

    def eof_received(self) -> bool:
        # Returning False lets asyncio close our side once the peer is done.
        logger.debug("%r received EOF", self)
        return False

    def connection_lost(self, exc: Exception | None) -> None:
        self._connection_lost(exc)

    # -- Connection -------------------------------------------------------

    def abort(self) -> None:
        if self._transport is not None:
            self._run_on_loop(self._transport.abort)

    def _transmit(self, batch: list[tuple[bytes, CompletionHandle]]) -> None:
        transport = self._transport
        if transport is None or transport.is_closing():
            cause = ConnectionClosedError(f"{self!r} is closing")
            for _, handle in batch:
                self._fail_write(handle, cause)
            return
        for data, handle in batch:
            transport.write(data)
            handle.set_success()

    def _start_close(self) -> None:
        if self._transport is None:
            self._close_handle.set_success()
            return
        # Flushes buffered bytes before the socket is closed.
        self._transport.close()


class TcpListenHandle(ListenHandle):
    """Wraps the ``asyncio.Server`` returned by ``create_server``."""

    def __init__(self, server: asyncio.Server) -> None:
        self._server = server
        sockname = server.sockets[0].getsockname()
        self._address = (sockname[0], sockname[1])
        self._close_handle = CompletionHandle()
        self._closing = False

    @property
    def address(self) -> tuple[str, int]:
        return self._address

    def close(self) -> CompletionHandle:
        if not self._closing:
            self._closing = True
            asyncio.run_coroutine_threadsafe(self._close(), self._server.get_loop())
        return self._close_handle

    async def _close(self) -> None:
        try:
            self._server.close()
            await self._server.wait_closed()
        except Exception as exc:
            self._close_handle.set_failure(exc)
        else:
            logger.debug("TCP listener on %s:%d closed", *self._address)
            self._close_handle.set_success()


class TcpTransport(Transport):
    """Listens and dials plain TCP sockets."""

    kind = TransportKind.TCP

    async def bind(
        self, host: str, port: int, child_initializer: ChannelInitializer
    ) -> TcpListenHandle:
        loop = asyncio.get_running_loop()
        server = await loop.create_server(
            lambda: TcpConnection(loop, Role.ACCEPTING, child_initializer),
            host,
            port,
        )
        handle = TcpListenHandle(server)
        logger.info("TCP listener bound to %s:%d", *handle.address)
        return handle

    async def connect(
        self, address: tuple[str, int], initializer: ChannelInitializer
    ) -> TcpConnection:
        loop = asyncio.get_running_loop()
        _, connection = await loop.create_connection(
            lambda: TcpConnection(loop, Role.ORIGINATING, initializer),
            *address,
        )
        logger.debug("TCP connection to %s:%d established", *address)
        return connection
