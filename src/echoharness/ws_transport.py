"""WebSocket transport built on aiohttp.

Each flushed write becomes one binary frame. The listening side is an aiohttp
web application served from a pre-bound socket, so port 0 yields an
ephemeral port that can be read back before any client connects.
"""

from __future__ import annotations

import asyncio
import logging
import socket

import aiohttp
from aiohttp import web

from echoharness.channel import Connection, Role
from echoharness.config import TransportKind
from echoharness.error import ConnectionClosedError
from echoharness.reactor import CompletionHandle
from echoharness.transport import ChannelInitializer, ListenHandle, Transport

logger = logging.getLogger(__name__)

# Sentinel queued behind the last pending write when the connection closes.
_STOP = None


class WebSocketConnection(Connection):
    """A WebSocket endpoint carrying raw bytes in binary frames.

    ``run()`` is the read loop; it owns the end of the connection's life and
    completes the close handle once the socket, the writer task and (for
    originating connections) the client session are all shut down.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        role: Role,
        ws: web.WebSocketResponse | aiohttp.ClientWebSocketResponse,
        session: aiohttp.ClientSession | None = None,
        raw_transport: asyncio.BaseTransport | None = None,
    ) -> None:
        super().__init__(loop, role)
        self._ws = ws
        self._session = session
        self._raw_transport = raw_transport
        self._send_queue: asyncio.Queue[tuple[bytes, CompletionHandle] | None] = asyncio.Queue()
        self._writer = loop.create_task(self._write_loop())
        self._read_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None

    async def run(self) -> None:
        """Deliver inbound frames until the stream ends."""
        self._read_task = asyncio.current_task()
        error: BaseException | None = None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.BINARY:
                    self._deliver(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = self._ws.exception() or ConnectionResetError("WebSocket error")
                    break
                else:
                    error = ValueError(f"Unexpected message type: {msg.type}")
                    break
        except asyncio.CancelledError:
            error = ConnectionAbortedError(f"{self!r} aborted")
        except Exception as e:
            error = e
        await self._finish(error)

    def abort(self) -> None:
        self._run_on_loop(self._abort)

    # -- Connection hooks -------------------------------------------------

    def _transmit(self, batch: list[tuple[bytes, CompletionHandle]]) -> None:
        for item in batch:
            self._send_queue.put_nowait(item)

    def _start_close(self) -> None:
        if self._close_task is None:
            self._close_task = self._loop.create_task(self._close())

    # -- internals ------------------------------------------------------------

    async def _write_loop(self) -> None:
        while True:
            item = await self._send_queue.get()
            if item is _STOP:
                return
            data, handle = item
            try:
                await self._ws.send_bytes(data)
            except Exception as e:
                self._fail_write(handle, e)
            else:
                handle.set_success()

    async def _close(self) -> None:
        # Everything flushed before close() goes out ahead of the close frame.
        self._send_queue.put_nowait(_STOP)
        await self._writer
        await self._ws.close()

    def _abort(self) -> None:
        self._closing = True
        if self._raw_transport is not None:
            self._raw_transport.abort()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()

    async def _finish(self, error: BaseException | None) -> None:
        try:
            if self._close_task is not None:
                await self._close_task
            elif not self._ws.closed:
                await self._ws.close()
        except Exception as e:
            logger.warning("Closing %r failed: %r", self, e)
            self._close_handle.set_failure(e)

        if not self._writer.done():
            self._writer.cancel()
        while not self._send_queue.empty():
            item = self._send_queue.get_nowait()
            if item is not _STOP:
                self._fail_write(item[1], ConnectionClosedError(f"{self!r} closed"))

        if self._session is not None:
            await self._session.close()
        self._connection_lost(error)


class WebSocketListenHandle(ListenHandle):
    """A running aiohttp app and the site serving it."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        runner: web.AppRunner,
        site: web.SockSite,
        address: tuple[str, int],
    ) -> None:
        self._loop = loop
        self._runner = runner
        self._site = site
        self._address = address
        self._close_handle = CompletionHandle()
        self._closing = False

    @property
    def address(self) -> tuple[str, int]:
        return self._address

    def close(self) -> CompletionHandle:
        if not self._closing:
            self._closing = True
            asyncio.run_coroutine_threadsafe(self._close(), self._loop)
        return self._close_handle

    async def _close(self) -> None:
        try:
            await self._site.stop()
            await self._runner.cleanup()
        except Exception as e:
            self._close_handle.set_failure(e)
        else:
            logger.debug("WebSocket listener on %s:%d closed", *self._address)
            self._close_handle.set_success()


class WebSocketTransport(Transport):
    """Listens and dials WebSocket endpoints at ``path``."""

    kind = TransportKind.WEBSOCKET

    def __init__(self, path: str = "/echo") -> None:
        self.path = path

    async def bind(
        self, host: str, port: int, child_initializer: ChannelInitializer
    ) -> WebSocketListenHandle:
        loop = asyncio.get_running_loop()

        async def handle_ws(request: web.Request) -> web.WebSocketResponse:
            ws = web.WebSocketResponse()
            await ws.prepare(request)

            connection = WebSocketConnection(
                loop, Role.ACCEPTING, ws, raw_transport=request.transport
            )
            child_initializer(connection)
            connection._activate()
            await connection.run()
            return ws

        app = web.Application()
        app.router.add_get(self.path, handle_ws)

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        bound_host, bound_port = sock.getsockname()[:2]

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.SockSite(runner, sock)
        await site.start()

        handle = WebSocketListenHandle(loop, runner, site, (bound_host, bound_port))
        logger.info("WebSocket listener bound to ws://%s:%d%s", bound_host, bound_port, self.path)
        return handle

    async def connect(
        self, address: tuple[str, int], initializer: ChannelInitializer
    ) -> WebSocketConnection:
        loop = asyncio.get_running_loop()
        url = f"http://{address[0]}:{address[1]}{self.path}"

        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(url)
        except Exception:
            await session.close()
            raise

        connection = WebSocketConnection(loop, Role.ORIGINATING, ws, session=session)
        initializer(connection)
        connection._activate()
        connection._read_task = loop.create_task(connection.run())
        logger.debug("WebSocket connection to %s established", url)
        return connection
