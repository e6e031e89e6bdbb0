"""Pytest configuration for all tests."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterator

import pytest

from echoharness.channel import Role
from echoharness.config import HarnessSettings
from echoharness.orchestrator import EchoHarness
from echoharness.payload import Payload, generate_payload, shared_payload
from echoharness.reactor import VOID_HANDLE, CompletionHandle


class FakeEndpoint:
    """In-memory endpoint that records what a handler does to it."""

    def __init__(self, role: Role = Role.ORIGINATING) -> None:
        self.role = role
        self.void_handle = VOID_HANDLE
        self.writes: list[bytes] = []
        self.handles: list[CompletionHandle] = []
        self.flushes = 0
        self.closes = 0

    def write(self, data: bytes, handle: CompletionHandle | None = None) -> CompletionHandle:
        handle = handle if handle is not None else CompletionHandle()
        self.writes.append(bytes(data))
        self.handles.append(handle)
        return handle

    def flush(self) -> None:
        self.flushes += 1

    def write_and_flush(
        self, data: bytes, handle: CompletionHandle | None = None
    ) -> CompletionHandle:
        handle = self.write(data, handle)
        self.flush()
        return handle

    def close(self) -> CompletionHandle:
        self.closes += 1
        handle = CompletionHandle()
        handle.set_success()
        return handle

    @property
    def written(self) -> bytes:
        return b"".join(self.writes)


async def wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    """Poll ``predicate`` from inside an event loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def small_payload() -> Payload:
    """A few kilobytes of payload for unit tests."""
    return generate_payload(seed=7, size=4096)


@pytest.fixture(scope="session")
def full_payload() -> Payload:
    """The process-wide 1 MiB payload."""
    return shared_payload()


@pytest.fixture(scope="module")
def harness(full_payload: Payload) -> Iterator[EchoHarness]:
    """One harness per test module, so offloaded runs share a worker pool."""
    with EchoHarness(HarnessSettings(slice_seed=1234), payload=full_payload) as h:
        yield h
