"""Ordered, blocking shutdown of a scenario's connections and listener."""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from echoharness.error import TeardownFailure

if TYPE_CHECKING:
    from echoharness.reactor import CompletionHandle

logger = logging.getLogger(__name__)

# Constants
DEFAULT_CLOSE_TIMEOUT_SECONDS = 10.0


class Closeable(Protocol):
    """Anything teardown can close: connections and listen handles."""

    def close(self) -> CompletionHandle:
        ...


@dataclass(frozen=True, slots=True)
class TeardownStep:
    """Outcome of closing one resource."""

    name: str
    closed: bool
    error: TeardownFailure | None = None


@dataclass
class TeardownReport:
    """Every step teardown ran, in the order it ran them."""

    steps: list[TeardownStep] = field(default_factory=list)

    @property
    def failures(self) -> list[TeardownFailure]:
        return [step.error for step in self.steps if step.error is not None]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def order(self) -> list[str]:
        return [step.name for step in self.steps]


class TeardownSequencer:
    """Closes accepted side, originating side, then listener, one at a time.

    Each close is waited on for at most ``timeout`` seconds. A close that
    fails or times out is reported (and aborted, if the resource supports
    it) and the next step still runs.
    """

    STEP_NAMES = ("accepted connection", "originating connection", "listener")

    def __init__(self, timeout: float = DEFAULT_CLOSE_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout

    def teardown(
        self,
        accepted: Closeable | None,
        originating: Closeable | None,
        listener: Closeable | None,
    ) -> TeardownReport:
        report = TeardownReport()
        for name, resource in zip(self.STEP_NAMES, (accepted, originating, listener)):
            report.steps.append(self._close(name, resource))
        if report.ok:
            logger.debug("Teardown finished cleanly")
        return report

    def _close(self, name: str, resource: Closeable | None) -> TeardownStep:
        if resource is None:
            error = TeardownFailure(f"{name} was never established")
            logger.warning("Teardown: %s", error.message)
            return TeardownStep(name, closed=False, error=error)

        try:
            resource.close().sync(self.timeout)
        except (concurrent.futures.TimeoutError, TimeoutError):
            error = TeardownFailure(f"{name} did not close within {self.timeout:.1f}s")
            logger.warning("Teardown: %s; aborting", error.message)
            self._abort(name, resource)
            return TeardownStep(name, closed=False, error=error)
        except Exception as e:
            error = TeardownFailure(f"closing {name} failed: {e!r}")
            error.__cause__ = e
            logger.warning("Teardown: %s", error.message)
            return TeardownStep(name, closed=True, error=error)

        logger.debug("Teardown: %s closed", name)
        return TeardownStep(name, closed=True)

    @staticmethod
    def _abort(name: str, resource: Closeable) -> None:
        abort = getattr(resource, "abort", None)
        if abort is None:
            return
        try:
            abort()
        except Exception:
            logger.exception("Teardown: aborting %s failed", name)
