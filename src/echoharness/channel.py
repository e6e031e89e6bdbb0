"""Connection endpoints and the handler pipeline that drives them.

A ``Connection`` is one side of an established byte stream. Transports feed
it inbound bytes and lifecycle events on the reactor thread; its ``Pipeline``
forwards those events to handlers, either on the reactor thread itself or on
an executor chosen when the handler is added.

Outbound writes are buffered until ``flush()`` and may be issued from any
thread. Calls made off the reactor thread are marshalled onto it in the order
they were made.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Protocol

from echoharness.error import ConnectionClosedError
from echoharness.reactor import VOID_HANDLE, CompletionHandle, EventLoopGroup, Executor

logger = logging.getLogger(__name__)


class Role(Enum):
    """Which side of a connection an endpoint is."""

    ORIGINATING = "originating"  # dialed out
    ACCEPTING = "accepting"  # produced by a listener


class ChannelHandler(Protocol):
    """Callbacks a pipeline delivers to each of its handlers."""

    def on_activate(self, endpoint: Connection) -> None:
        ...

    def on_receive(self, chunk: bytes) -> None:
        ...

    def on_receive_batch_complete(self) -> None:
        ...

    def on_failure(self, cause: BaseException) -> None:
        ...

    def on_inactive(self) -> None:
        ...


class Pipeline:
    """Ordered handlers attached to one connection.

    A handler added with an executor has all of its callbacks run there; a
    handler added without one runs on the connection's reactor thread. An
    exception raised by a callback is delivered to the same handler's
    ``on_failure``.
    """

    __slots__ = ("_connection", "_entries")

    def __init__(self, connection: Connection) -> None:
        self._connection = connection
        self._entries: list[tuple[ChannelHandler, Executor | None]] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def handlers(self) -> list[ChannelHandler]:
        return [handler for handler, _ in self._entries]

    def add_last(
        self,
        handler: ChannelHandler,
        executor: EventLoopGroup | Executor | None = None,
    ) -> Pipeline:
        """Append ``handler``, optionally pinned to an executor.

        Passing an ``EventLoopGroup`` pins the handler to the next thread of
        the group.
        """
        if isinstance(executor, EventLoopGroup):
            executor = executor.next()
        self._entries.append((handler, executor))
        return self

    def fire_active(self) -> None:
        for handler, executor in self._entries:
            self._invoke(handler, executor, handler.on_activate, self._connection)

    def fire_receive(self, chunk: bytes) -> None:
        for handler, executor in self._entries:
            self._invoke(handler, executor, handler.on_receive, chunk)

    def fire_receive_batch_complete(self) -> None:
        for handler, executor in self._entries:
            self._invoke(handler, executor, handler.on_receive_batch_complete)

    def fire_failure(self, cause: BaseException) -> None:
        for handler, executor in self._entries:
            self._invoke(handler, executor, handler.on_failure, cause)

    def fire_inactive(self) -> None:
        for handler, executor in self._entries:
            self._invoke(handler, executor, handler.on_inactive)

    def _invoke(
        self,
        handler: ChannelHandler,
        executor: Executor | None,
        callback: Any,
        *args: Any,
    ) -> None:
        if executor is None:
            self._call(handler, callback, *args)
            return
        try:
            executor.execute(self._call, handler, callback, *args)
        except RuntimeError:
            logger.warning(
                "Dropping %s for %r: executor is shut down",
                callback.__name__, self._connection,
            )

    @staticmethod
    def _call(handler: ChannelHandler, callback: Any, *args: Any) -> None:
        try:
            callback(*args)
        except Exception as exc:
            if callback == handler.on_failure:
                logger.exception("Failure handler of %r raised", handler)
                return
            try:
                handler.on_failure(exc)
            except Exception:
                logger.exception("Failure handler of %r raised", handler)


class Connection(ABC):
    """One endpoint of an established bidirectional byte stream.

    Subclasses attach to a concrete transport and call ``_deliver``,
    ``_deliver_batch_complete`` and ``_connection_lost`` from the reactor
    thread. They implement ``_transmit`` to hand flushed bytes to the
    transport and ``_start_close``/``abort`` to shut the stream down.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, role: Role) -> None:
        self.role = role
        self.pipeline = Pipeline(self)
        self._loop = loop
        self._outbound: list[tuple[bytes, CompletionHandle]] = []
        self._close_handle = CompletionHandle()
        self._active = False
        self._closing = False
        self._batch_pending = False
        self.bytes_received = 0
        self.bytes_sent = 0

    def __repr__(self) -> str:
        state = "active" if self.is_active else "closed"
        return f"<{type(self).__name__} {self.role.value} {state}>"

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def is_active(self) -> bool:
        return self._active and not self._closing

    @property
    def void_handle(self) -> CompletionHandle:
        """The shared fire-and-forget handle."""
        return VOID_HANDLE

    @property
    def close_handle(self) -> CompletionHandle:
        """Completes once the connection is fully closed."""
        return self._close_handle

    # -- outbound ---------------------------------------------------------

    def write(self, data: bytes, handle: CompletionHandle | None = None) -> CompletionHandle:
        """Buffer ``data`` until the next flush.

        Returns ``handle`` if given (including the void handle), else a new
        one. It completes once the flushed bytes are handed to the transport
        (buffered by the TCP transport, or sent as a WebSocket frame), not
        when the peer has them.
        """
        if handle is None:
            handle = CompletionHandle()
        self._run_on_loop(self._enqueue, bytes(data), handle)
        return handle

    def flush(self) -> None:
        """Transmit everything written so far."""
        self._run_on_loop(self._flush_outbound)

    def write_and_flush(
        self, data: bytes, handle: CompletionHandle | None = None
    ) -> CompletionHandle:
        handle = self.write(data, handle)
        self.flush()
        return handle

    def close(self) -> CompletionHandle:
        """Flush pending writes and close; returns the close handle."""
        self._run_on_loop(self._begin_close)
        return self._close_handle

    @abstractmethod
    def abort(self) -> None:
        """Drop the connection immediately, discarding unsent data."""

    # -- transport hooks --------------------------------------------------

    @abstractmethod
    def _transmit(self, batch: list[tuple[bytes, CompletionHandle]]) -> None:
        """Send flushed writes, completing each handle. Reactor thread only."""

    @abstractmethod
    def _start_close(self) -> None:
        """Begin an orderly close. Reactor thread only."""

    def _activate(self) -> None:
        self._active = True
        logger.debug("%r active", self)
        self.pipeline.fire_active()

    def _deliver(self, chunk: bytes) -> None:
        self.bytes_received += len(chunk)
        self.pipeline.fire_receive(chunk)
        # Everything delivered in one loop iteration is one receive batch.
        if not self._batch_pending:
            self._batch_pending = True
            self._loop.call_soon(self._deliver_batch_complete)

    def _deliver_batch_complete(self) -> None:
        self._batch_pending = False
        self.pipeline.fire_receive_batch_complete()

    def _connection_lost(self, exc: BaseException | None) -> None:
        was_active = self._active
        self._active = False
        self._closing = True
        self._fail_outbound(ConnectionClosedError(f"{self!r} closed"))
        if exc is not None:
            logger.debug("%r lost: %r", self, exc)
            self.pipeline.fire_failure(exc)
        self._close_handle.set_success()
        if was_active:
            self.pipeline.fire_inactive()

    def _fail_write(self, handle: CompletionHandle, cause: BaseException) -> None:
        if handle.is_void:
            self.pipeline.fire_failure(cause)
        else:
            handle.set_failure(cause)

    # -- reactor-side implementations ---------------------------------------

    def _run_on_loop(self, callback: Any, *args: Any) -> None:
        if self._in_loop():
            callback(*args)
        else:
            self._loop.call_soon_threadsafe(callback, *args)

    def _in_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _enqueue(self, data: bytes, handle: CompletionHandle) -> None:
        if self._closing:
            self._fail_write(handle, ConnectionClosedError(f"write on closed {self!r}"))
            return
        self._outbound.append((data, handle))

    def _flush_outbound(self) -> None:
        if not self._outbound:
            return
        batch, self._outbound = self._outbound, []
        for data, _ in batch:
            self.bytes_sent += len(data)
        self._transmit(batch)

    def _fail_outbound(self, cause: BaseException) -> None:
        batch, self._outbound = self._outbound, []
        for _, handle in batch:
            self._fail_write(handle, cause)

    def _begin_close(self) -> None:
        if self._closing:
            return
        self._flush_outbound()
        self._closing = True
        logger.debug("Closing %r", self)
        self._start_close()
