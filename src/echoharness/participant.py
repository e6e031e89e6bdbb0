"""Echo participant: the handler attached to each end of the echo connection.

The same class runs on both ends. It verifies every received byte against
the payload at the stream offset it has reached; only the end whose
connection came from a listener sends the bytes back.

Both participants of a scenario share one ``threading.Condition``. Counter
and failure updates happen under it and notify it, which is how the
completion monitor on the control thread learns about progress.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from echoharness.channel import Role

if TYPE_CHECKING:
    from echoharness.channel import Connection
    from echoharness.payload import Payload

logger = logging.getLogger(__name__)


class FailureSlot:
    """Keeps the first failure offered to it; later ones are kept aside.

    Example:
        ```python
        slot = FailureSlot()
        slot.offer(VerificationFailure("bad byte"))  # True, recorded
        slot.offer(ConnectionResetError())  # False, kept in slot.suppressed
        ```
    """

    __slots__ = ("_lock", "_first", "_suppressed")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._first: BaseException | None = None
        self._suppressed: list[BaseException] = []

    def __bool__(self) -> bool:
        return self.is_set()

    def offer(self, cause: BaseException) -> bool:
        """Record ``cause`` if the slot is empty. Returns True if it was."""
        with self._lock:
            if self._first is None:
                self._first = cause
                return True
            self._suppressed.append(cause)
            return False

    def is_set(self) -> bool:
        with self._lock:
            return self._first is not None

    def get(self) -> BaseException | None:
        with self._lock:
            return self._first

    @property
    def suppressed(self) -> tuple[BaseException, ...]:
        """Failures observed after the first, oldest first."""
        with self._lock:
            return tuple(self._suppressed)


class EchoParticipant:
    """Verifies an inbound stream against the payload and echoes it if accepting.

    Attributes:
        payload: The bytes this participant expects to receive, in order
        name: Label used in log messages
        progress: Condition shared with the other participant and the monitor
        failure: First-failure-wins slot for this participant
    """

    def __init__(
        self,
        payload: Payload,
        progress: threading.Condition | None = None,
        name: str = "participant",
    ) -> None:
        self.payload = payload
        self.name = name
        self.progress = progress or threading.Condition()
        self.failure = FailureSlot()
        self._counter = 0
        self._endpoint: Connection | None = None
        self._inactive = False

    def __repr__(self) -> str:
        return f"<EchoParticipant {self.name} counter={self.counter}>"

    @property
    def counter(self) -> int:
        """Bytes received and verified so far."""
        with self.progress:
            return self._counter

    @property
    def endpoint(self) -> Connection | None:
        with self.progress:
            return self._endpoint

    @property
    def is_inactive(self) -> bool:
        with self.progress:
            return self._inactive

    # -- pipeline callbacks ---------------------------------------------------

    def on_activate(self, endpoint: Connection) -> None:
        with self.progress:
            if self._endpoint is not None:
                raise RuntimeError(f"{self.name} is already bound to {self._endpoint!r}")
            self._endpoint = endpoint
            self.progress.notify_all()
        logger.debug("%s activated on %r", self.name, endpoint)

    def on_receive(self, chunk: bytes) -> None:
        endpoint = self._endpoint
        if endpoint is None:
            raise RuntimeError(f"{self.name} received data before activation")
        if self.failure.is_set():
            logger.debug("%s dropping %d bytes after failure", self.name, len(chunk))
            return

        self.payload.verify(chunk, self._counter)

        match endpoint.role:
            case Role.ACCEPTING:
                endpoint.write(chunk)
            case Role.ORIGINATING:
                pass

        with self.progress:
            self._counter += len(chunk)
            self.progress.notify_all()

    def on_receive_batch_complete(self) -> None:
        if self._endpoint is not None:
            self._endpoint.flush()

    def on_failure(self, cause: BaseException) -> None:
        with self.progress:
            recorded = self.failure.offer(cause)
            self.progress.notify_all()

        if not recorded:
            logger.debug("%s ignoring later failure: %r", self.name, cause)
            return

        logger.warning("%s captured failure: %r", self.name, cause)
        if self._endpoint is not None:
            self._endpoint.close()

    def on_inactive(self) -> None:
        with self.progress:
            self._inactive = True
            self.progress.notify_all()
        logger.debug("%s inactive after %d bytes", self.name, self._counter)
