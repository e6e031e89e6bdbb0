"""Completion detection for a running echo scenario."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import TYPE_CHECKING

from echoharness.error import TimeoutFailure

if TYPE_CHECKING:
    from echoharness.participant import EchoParticipant

logger = logging.getLogger(__name__)

# Constants
DEFAULT_POLL_INTERVAL_SECONDS = 0.05


class Completion(Enum):
    """How a wait for completion ended."""

    COMPLETE = "complete"  # both counters reached the target
    FAILED = "failed"  # a failure slot was filled first


def await_completion(
    a: EchoParticipant,
    b: EchoParticipant,
    total_length: int,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    deadline: float,
) -> Completion:
    """Block until both participants have verified ``total_length`` bytes.

    Waits on the participants' shared progress condition, waking at least
    every ``poll_interval`` seconds. Returns early as soon as either failure
    slot holds an error, since a failed run never reaches the full count.

    Args:
        a: One participant
        b: The other participant, sharing ``a.progress``
        total_length: Byte count each participant must reach
        poll_interval: Longest single wait, in seconds
        deadline: Absolute ``time.monotonic()`` value to give up at

    Returns:
        ``Completion.COMPLETE`` or ``Completion.FAILED``

    Raises:
        TimeoutFailure: if the deadline passes first
        ValueError: if the participants do not share a progress condition
    """
    if a.progress is not b.progress:
        raise ValueError("participants must share one progress condition")
    progress = a.progress

    with progress:
        while True:
            if a.failure.is_set() or b.failure.is_set():
                logger.debug("Completion wait ended by failure (%d/%d, %d/%d)",
                             a.counter, total_length, b.counter, total_length)
                return Completion.FAILED
            if a.counter >= total_length and b.counter >= total_length:
                return Completion.COMPLETE

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutFailure(
                    f"timed out with {a.name} at {a.counter}/{total_length} bytes "
                    f"and {b.name} at {b.counter}/{total_length} bytes"
                )
            progress.wait(min(poll_interval, remaining))
