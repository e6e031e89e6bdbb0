"""Listener and dialer interface shared by the concrete transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING

from echoharness.config import HarnessSettings, TransportKind

if TYPE_CHECKING:
    from echoharness.channel import Connection
    from echoharness.reactor import CompletionHandle

# Called with each new connection before it becomes active.
ChannelInitializer = Callable[["Connection"], None]


class ListenHandle(ABC):
    """A bound listening endpoint."""

    @property
    @abstractmethod
    def address(self) -> tuple[str, int]:
        """The ``(host, port)`` the listener is bound to."""

    @abstractmethod
    def close(self) -> CompletionHandle:
        """Stop accepting connections; the handle completes once closed."""


class Transport(ABC):
    """Creates listeners and outbound connections of one kind.

    ``bind`` and ``connect`` are coroutines that must run on the reactor
    loop; the connections they produce are driven by that loop.
    """

    kind: TransportKind

    @abstractmethod
    async def bind(
        self, host: str, port: int, child_initializer: ChannelInitializer
    ) -> ListenHandle:
        """Listen on ``(host, port)``; port 0 picks an ephemeral port.

        ``child_initializer`` runs for every accepted connection before it
        is activated.
        """

    @abstractmethod
    async def connect(
        self, address: tuple[str, int], initializer: ChannelInitializer
    ) -> Connection:
        """Dial ``address`` and return the established, active connection."""


def create_transport(kind: TransportKind, settings: HarnessSettings | None = None) -> Transport:
    """Return the transport implementation for ``kind``."""
    settings = settings or HarnessSettings()

    if kind is TransportKind.TCP:
        from echoharness.tcp_transport import TcpTransport

        return TcpTransport()
    if kind is TransportKind.WEBSOCKET:
        from echoharness.ws_transport import WebSocketTransport

        return WebSocketTransport(path=settings.ws_path)
    raise ValueError(f"Unsupported transport: {kind}")
