"""Drives complete echo scenarios across the configuration matrix.

``EchoHarness`` runs on the caller's thread and blocks while the reactor
thread (and, for offloaded dispatch, the worker pool) moves bytes. One
scenario is:

1. two fresh participants sharing a progress condition;
2. a listener and a dialed connection, each getting one participant;
3. the payload written to the originating side in random slices;
4. a bounded wait for both sides to verify every byte;
5. ordered teardown, always;
6. selection of the root-cause failure, if any.

Example:
    ```python
    with EchoHarness() as harness:
        for result in harness.run_matrix():
            result.raise_for_failure()
    ```
"""

from __future__ import annotations

import concurrent.futures
import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import aiohttp

from echoharness.channel import Connection
from echoharness.config import (
    DispatchMode,
    HarnessSettings,
    RunConfiguration,
    SendMode,
    configuration_matrix,
)
from echoharness.error import (
    HarnessError,
    SendModeViolation,
    TimeoutFailure,
    VerificationFailure,
    as_harness_error,
    is_expected_transient,
)
from echoharness.monitor import Completion, await_completion
from echoharness.participant import EchoParticipant
from echoharness.payload import Payload, plan_slices, shared_payload
from echoharness.reactor import EventLoopGroup, EventLoopThread
from echoharness.teardown import TeardownReport, TeardownSequencer
from echoharness.transport import ListenHandle, create_transport

logger = logging.getLogger(__name__)

ParticipantFactory = Callable[[Payload, threading.Condition, str], EchoParticipant]


def default_participant_factory(
    payload: Payload, progress: threading.Condition, name: str
) -> EchoParticipant:
    return EchoParticipant(payload, progress, name)


@dataclass
class ScenarioResult:
    """Outcome of one scenario.

    Attributes:
        config: The configuration that was run
        completion: How the completion wait ended; None if it never ran or timed out
        error: Root-cause failure, or None if the scenario passed
        accepted_count: Bytes verified by the accepting participant
        originating_count: Bytes verified by the originating participant
        writes: Slices written to the originating connection
        teardown: Report of the teardown steps
        suppressed: Transient I/O errors ignored because both sides finished
    """

    config: RunConfiguration
    completion: Completion | None = None
    error: HarnessError | None = None
    accepted_count: int = 0
    originating_count: int = 0
    writes: int = 0
    teardown: TeardownReport = field(default_factory=TeardownReport)
    suppressed: list[BaseException] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.error is None

    def raise_for_failure(self) -> None:
        """Raise the root-cause error if the scenario failed."""
        if self.error is not None:
            raise self.error

    def summary(self) -> str:
        if self.passed:
            return f"{self.config.label}: passed ({self.writes} writes)"
        return f"{self.config.label}: failed [{self.error.kind.value}] {self.error.message}"


class EchoHarness:
    """Runs echo scenarios and owns the threads they need.

    The reactor thread starts with the harness. The offloaded-dispatch worker
    pool is created on first use and reused by every later offloaded
    scenario; both are disposed of by ``close()``.
    """

    def __init__(
        self,
        settings: HarnessSettings | None = None,
        payload: Payload | None = None,
    ) -> None:
        self.settings = settings or HarnessSettings()
        self.payload = payload or shared_payload(self.settings.seed, self.settings.payload_size)
        self._rng = random.Random(self.settings.slice_seed)
        self._reactor = EventLoopThread("echo-reactor").start()
        self._workers: EventLoopGroup | None = None
        self._teardown = TeardownSequencer(self.settings.teardown_timeout)
        self._closed = False

    def __enter__(self) -> EchoHarness:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Dispose of the worker pool and stop the reactor."""
        if self._closed:
            return
        self._closed = True
        if self._workers is not None:
            self._workers.shutdown_gracefully()
            self._workers = None
        self._reactor.shutdown()

    @property
    def workers(self) -> EventLoopGroup | None:
        """The offloaded-dispatch pool, if one has been created."""
        return self._workers

    def run_matrix(
        self, configs: Iterable[RunConfiguration] | None = None
    ) -> list[ScenarioResult]:
        """Run every configuration in order; defaults to the four TCP scenarios."""
        configs = list(configs) if configs is not None else configuration_matrix()
        results = [self.run_scenario(config) for config in configs]
        failed = [r for r in results if not r.passed]
        logger.info("Matrix finished: %d passed, %d failed", len(results) - len(failed), len(failed))
        return results

    def run_scenario(
        self,
        config: RunConfiguration,
        participant_factory: ParticipantFactory | None = None,
    ) -> ScenarioResult:
        """Run one scenario to completion, teardown included."""
        if self._closed:
            raise RuntimeError("harness is closed")

        factory = participant_factory or default_participant_factory
        progress = threading.Condition()
        accepted = factory(self.payload, progress, "accepting")
        originating = factory(self.payload, progress, "originating")
        result = ScenarioResult(config=config)

        executor = self._worker_group() if config.dispatch_mode is DispatchMode.OFFLOADED else None
        transport = create_transport(config.transport, self.settings)
        deadline = time.monotonic() + self.settings.deadline
        total = len(self.payload)

        listener: ListenHandle | None = None
        connection: Connection | None = None
        accepted_connections: list[Connection] = []
        failure: HarnessError | None = None

        logger.info("Scenario %s starting", config.label)
        try:
            listener = self._reactor.run(
                transport.bind(
                    self.settings.host,
                    0,
                    lambda conn: self._accept(conn, accepted, executor, accepted_connections),
                ),
                self.settings.connect_timeout,
            )
            connection = self._reactor.run(
                transport.connect(
                    listener.address,
                    lambda conn: conn.pipeline.add_last(originating, executor),
                ),
                self.settings.connect_timeout,
            )
            self._await_activation(accepted, originating, deadline)
            result.writes = self._stream_payload(connection, config.send_mode)
            result.completion = await_completion(
                originating,
                accepted,
                total,
                poll_interval=self.settings.poll_interval,
                deadline=deadline,
            )
        except (TimeoutFailure, SendModeViolation) as e:
            failure = e
        except concurrent.futures.TimeoutError:
            failure = TimeoutFailure(
                f"bind/connect did not finish within {self.settings.connect_timeout:.1f}s"
            )
        except (OSError, aiohttp.ClientError) as e:
            failure = as_harness_error(e)
        finally:
            # Close what the listener accepted; the participant may not be active yet.
            accepted_connection = accepted_connections[0] if accepted_connections else None
            result.teardown = self._teardown.teardown(accepted_connection, connection, listener)

        result.accepted_count = accepted.counter
        result.originating_count = originating.counter
        result.error, result.suppressed = select_root_cause(accepted, originating, failure)

        if result.passed:
            logger.info("Scenario %s passed", config.label)
        else:
            logger.warning("Scenario %s failed: %r", config.label, result.error)
        return result

    # -- steps -------------------------------------------------------------

    @staticmethod
    def _accept(
        connection: Connection,
        participant: EchoParticipant,
        executor: EventLoopGroup | None,
        accepted_connections: list[Connection],
    ) -> None:
        accepted_connections.append(connection)
        connection.pipeline.add_last(participant, executor)

    def _worker_group(self) -> EventLoopGroup:
        if self._workers is None:
            self._workers = EventLoopGroup(self.settings.worker_threads, name="echo-worker")
        return self._workers

    def _await_activation(
        self, accepted: EchoParticipant, originating: EchoParticipant, deadline: float
    ) -> None:
        progress = accepted.progress
        with progress:
            ready = progress.wait_for(
                lambda: accepted.endpoint is not None and originating.endpoint is not None,
                timeout=max(0.0, deadline - time.monotonic()),
            )
        if not ready:
            raise TimeoutFailure("connection endpoints were not activated before the deadline")

    def _stream_payload(self, connection: Connection, send_mode: SendMode) -> int:
        void = connection.void_handle
        data = self.payload.data
        writes = 0

        for offset, length in plan_slices(len(data), self.settings.max_slice, self._rng):
            chunk = data[offset:offset + length]
            if send_mode is SendMode.FIRE_AND_FORGET:
                handle = connection.write_and_flush(chunk, void)
                if handle is not void:
                    raise SendModeViolation(
                        f"fire-and-forget write at offset {offset} returned {handle!r}"
                    )
            else:
                handle = connection.write_and_flush(chunk)
                if handle is void:
                    raise SendModeViolation(
                        f"acknowledged write at offset {offset} returned the void handle"
                    )
            writes += 1

        logger.debug("Wrote %d bytes in %d slices", len(data), writes)
        return writes


def select_root_cause(
    accepted: EchoParticipant,
    originating: EchoParticipant,
    failure: HarnessError | None = None,
) -> tuple[HarnessError | None, list[BaseException]]:
    """Pick the error a scenario reports, accepting side examined first.

    Precedence:

    1. a ``VerificationFailure`` captured by either participant;
    2. any other captured error that is not an expected transient I/O error;
    3. ``failure``, raised by the orchestrator itself (timeout, setup);
    4. a transient I/O error, if either side fell short of the full payload.

    Transient errors seen after both sides verified the full payload are
    teardown races: they are returned in the suppressed list instead.

    Returns:
        ``(root_cause, suppressed)``; ``root_cause`` is None for a pass
    """
    captured = [
        (p.name, cause)
        for p in (accepted, originating)
        if (cause := p.failure.get()) is not None
    ]

    for _, cause in captured:
        if isinstance(cause, VerificationFailure):
            return cause, []

    for _, cause in captured:
        if not is_expected_transient(cause):
            return as_harness_error(cause), []

    if failure is not None:
        return failure, []

    complete = (
        accepted.counter >= len(accepted.payload)
        and originating.counter >= len(originating.payload)
    )
    suppressed: list[BaseException] = []
    for name, cause in captured:
        if not complete:
            return as_harness_error(cause), []
        logger.info("Suppressing transient error on %s after full echo: %r", name, cause)
        suppressed.append(cause)
    return None, suppressed
