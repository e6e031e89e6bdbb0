"""Event-loop threads and completion handles.

The reactor is an ``asyncio`` loop running in a dedicated thread; transports
do all their I/O there. An ``EventLoopGroup`` is a small pool of the same
threads that connection pipelines can hand their callbacks to instead of
running them on the reactor.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import logging
import threading
from collections.abc import Callable, Coroutine, Generator
from typing import Any, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Constants
THREAD_START_TIMEOUT_SECONDS = 5.0
THREAD_STOP_TIMEOUT_SECONDS = 5.0


class CompletionHandle:
    """Outcome of one write or close issued on a connection.

    Thread safe: it may be completed on the reactor thread and waited on from
    any other thread, or awaited from any event loop.
    """

    __slots__ = ("_future",)

    def __init__(self) -> None:
        self._future: concurrent.futures.Future[None] = concurrent.futures.Future()

    @property
    def is_void(self) -> bool:
        return False

    def set_success(self) -> None:
        if not self._future.done():
            self._future.set_result(None)

    def set_failure(self, cause: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(cause)

    def done(self) -> bool:
        return self._future.done()

    def cause(self) -> BaseException | None:
        """The failure, or None if the operation is pending or succeeded."""
        if not self._future.done():
            return None
        return self._future.exception()

    def add_listener(self, callback: Callable[[CompletionHandle], None]) -> None:
        """Call ``callback(self)`` once the handle completes."""
        self._future.add_done_callback(lambda _: callback(self))

    def sync(self, timeout: float | None = None) -> CompletionHandle:
        """Block until the operation finishes, re-raising its failure.

        Raises:
            TimeoutError: if ``timeout`` passes first
        """
        self._future.result(timeout)
        return self

    def __await__(self) -> Generator[Any, None, None]:
        return asyncio.wrap_future(self._future).__await__()

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return f"<{type(self).__name__} {state}>"


class VoidCompletionHandle(CompletionHandle):
    """Shared handle for fire-and-forget writes.

    Does no per-write bookkeeping: it is always done and never records an
    outcome. Connections report failed void writes through their pipeline.
    """

    __slots__ = ()

    @property
    def is_void(self) -> bool:
        return True

    def set_success(self) -> None:
        pass

    def set_failure(self, cause: BaseException) -> None:
        pass

    def done(self) -> bool:
        return True

    def cause(self) -> BaseException | None:
        return None

    def add_listener(self, callback: Callable[[CompletionHandle], None]) -> None:
        raise TypeError("listeners cannot be added to the void completion handle")

    def sync(self, timeout: float | None = None) -> CompletionHandle:
        return self

    def __await__(self) -> Generator[Any, None, None]:
        return asyncio.sleep(0).__await__()


VOID_HANDLE = VoidCompletionHandle()


class Executor(Protocol):
    """Something that runs callbacks on an event loop thread."""

    def execute(self, callback: Callable[..., object], *args: Any) -> None:
        ...


class EventLoopThread:
    """An ``asyncio`` event loop running forever in its own thread.

    Example:
        ```python
        reactor = EventLoopThread("reactor").start()
        listener = reactor.run(transport.bind("127.0.0.1", 0, init), timeout=5)
        ...
        reactor.shutdown()
        ```
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._started = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive() and not self._loop.is_closed()

    def start(self) -> EventLoopThread:
        """Start the thread and wait for its loop to run."""
        self._thread.start()
        if not self._started.wait(THREAD_START_TIMEOUT_SECONDS):
            raise RuntimeError(f"event loop thread {self.name} did not start")
        return self

    def in_event_loop(self) -> bool:
        return threading.current_thread() is self._thread

    def execute(self, callback: Callable[..., object], *args: Any) -> None:
        """Schedule ``callback(*args)`` on this loop, in submission order."""
        self._loop.call_soon_threadsafe(callback, *args)

    def submit(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run ``coro`` on this loop and block for its result."""
        if self.in_event_loop():
            raise RuntimeError("run() would deadlock when called from its own loop thread")
        future = self.submit(coro)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def shutdown(self, timeout: float = THREAD_STOP_TIMEOUT_SECONDS) -> None:
        """Stop the loop, cancel leftover tasks and join the thread."""
        if not self._thread.is_alive():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Event loop thread %s did not stop within %.1fs", self.name, timeout)

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._started.set)
        try:
            self._loop.run_forever()
        finally:
            self._cancel_pending()
            self._loop.close()
            logger.debug("Event loop thread %s stopped", self.name)

    def _cancel_pending(self) -> None:
        pending = asyncio.all_tasks(self._loop)
        for task in pending:
            task.cancel()
        if pending:
            self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        self._loop.run_until_complete(self._loop.shutdown_asyncgens())


class EventLoopGroup:
    """Fixed pool of event-loop threads handed out round-robin.

    A pipeline pins itself to the thread returned by ``next()``, so callbacks
    for one connection keep their order.
    """

    def __init__(self, size: int = 2, name: str = "echo-worker") -> None:
        if size < 1:
            raise ValueError(f"group size must be at least 1, got {size}")
        self._threads = [EventLoopThread(f"{name}-{i}").start() for i in range(size)]
        self._cycle = itertools.cycle(self._threads)
        self._lock = threading.Lock()
        self._shut_down = False

    def __len__(self) -> int:
        return len(self._threads)

    def __enter__(self) -> EventLoopGroup:
        return self

    def __exit__(self, *args: object) -> None:
        self.shutdown_gracefully()

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def next(self) -> EventLoopThread:
        with self._lock:
            if self._shut_down:
                raise RuntimeError("event loop group is shut down")
            return next(self._cycle)

    def shutdown_gracefully(self, timeout: float = THREAD_STOP_TIMEOUT_SECONDS) -> None:
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
        for thread in self._threads:
            thread.shutdown(timeout)
        logger.debug("Event loop group of %d threads shut down", len(self._threads))
