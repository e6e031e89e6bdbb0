"""Error kinds raised and captured by the echo harness.

Every failure a scenario can report is a ``HarnessError`` carrying an
``ErrorKind``. Connection-level errors arrive from the transport as plain
``OSError``/aiohttp exceptions; the orchestrator wraps the ones it reports in
``TransportFailure`` and keeps the original as ``__cause__``.
"""

from __future__ import annotations

from enum import Enum

import aiohttp


class ErrorKind(Enum):
    """Root-cause category of a scenario failure."""

    VERIFICATION = "verification"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    TEARDOWN = "teardown"
    SEND_MODE = "send_mode"


class HarnessError(Exception):
    """Base class for failures reported by the harness."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value}: {self.message!r})"


class VerificationFailure(HarnessError):
    """A received byte did not match the payload at its stream offset."""

    kind = ErrorKind.VERIFICATION

    def __init__(
        self,
        message: str,
        offset: int | None = None,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        super().__init__(message)
        self.offset = offset
        self.expected = expected
        self.actual = actual

    @classmethod
    def mismatch(cls, offset: int, expected: int, actual: int) -> VerificationFailure:
        return cls(
            f"byte mismatch at offset {offset}: expected 0x{expected:02x}, got 0x{actual:02x}",
            offset=offset,
            expected=expected,
            actual=actual,
        )

    @classmethod
    def overrun(cls, offset: int, length: int, total: int) -> VerificationFailure:
        return cls(
            f"received {length} bytes at offset {offset}, past the end of a {total}-byte payload",
            offset=offset,
        )


class TransportFailure(HarnessError):
    """Connection-level I/O error that ended a scenario."""

    kind = ErrorKind.TRANSPORT


class TimeoutFailure(HarnessError):
    """The scenario deadline passed before both sides finished."""

    kind = ErrorKind.TIMEOUT


class TeardownFailure(HarnessError):
    """A resource failed to close during teardown."""

    kind = ErrorKind.TEARDOWN


class SendModeViolation(HarnessError):
    """A write returned the wrong kind of completion handle for its send mode."""

    kind = ErrorKind.SEND_MODE


class ConnectionClosedError(ConnectionError):
    """Write or flush issued on a connection that is already closed."""


# Errors a peer legitimately sees while the other side is being torn down.
TRANSIENT_IO_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionResetError,
    ConnectionAbortedError,
    BrokenPipeError,
    ConnectionClosedError,
    aiohttp.ClientConnectionError,
)


def is_expected_transient(exc: BaseException) -> bool:
    """Return True if ``exc`` is an I/O error expected during a teardown race."""
    if isinstance(exc, HarnessError):
        return False
    return isinstance(exc, TRANSIENT_IO_ERRORS)


def as_harness_error(exc: BaseException) -> HarnessError:
    """Wrap a captured exception for reporting, preserving it as the cause."""
    if isinstance(exc, HarnessError):
        return exc
    wrapped = TransportFailure(f"{type(exc).__name__}: {exc}")
    wrapped.__cause__ = exc
    return wrapped
