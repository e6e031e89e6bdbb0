"""Deterministic echo payload and the slice plan used to stream it."""

from __future__ import annotations

import functools
import logging
import random
from collections.abc import Iterator
from dataclasses import dataclass

from echoharness.error import VerificationFailure

logger = logging.getLogger(__name__)

PAYLOAD_SIZE = 1024 * 1024
MAX_SLICE = 64 * 1024
DEFAULT_SEED = 0x5EED_EC40


@dataclass(frozen=True, slots=True)
class Payload:
    """Immutable byte buffer both participants verify against.

    ``bytes`` is immutable, so a single instance is shared by every scenario
    and every thread without locking.
    """

    data: bytes
    seed: int

    def __len__(self) -> int:
        return len(self.data)

    def expected(self, offset: int, length: int) -> bytes:
        """Return the bytes a peer should deliver at ``offset``."""
        return self.data[offset:offset + length]

    def verify(self, chunk: bytes, offset: int) -> None:
        """Check ``chunk`` against the payload starting at ``offset``.

        Raises:
            VerificationFailure: on the first mismatching byte, or when the
                chunk runs past the end of the payload.
        """
        length = len(chunk)
        if offset + length > len(self.data):
            raise VerificationFailure.overrun(offset, length, len(self.data))

        expected = self.data[offset:offset + length]
        if chunk == expected:
            return

        for i, (want, got) in enumerate(zip(expected, chunk)):
            if want != got:
                raise VerificationFailure.mismatch(offset + i, want, got)

    def with_corruption(self, offset: int) -> Payload:
        """Return a copy whose byte at ``offset`` is flipped.

        Fault injection for tests only: handing the copy to one participant
        forces a verification failure on that side of a scenario. Never use
        it to build a payload that is actually sent.
        """
        if not 0 <= offset < len(self.data):
            raise IndexError(f"offset {offset} outside payload of {len(self.data)} bytes")
        corrupted = bytearray(self.data)
        corrupted[offset] ^= 0xFF
        return Payload(data=bytes(corrupted), seed=self.seed)


def generate_payload(seed: int = DEFAULT_SEED, size: int = PAYLOAD_SIZE) -> Payload:
    """Generate ``size`` pseudo-random bytes from ``seed``."""
    if size <= 0:
        raise ValueError(f"payload size must be positive, got {size}")
    rng = random.Random(seed)
    return Payload(data=rng.randbytes(size), seed=seed)


@functools.lru_cache(maxsize=None)
def shared_payload(seed: int = DEFAULT_SEED, size: int = PAYLOAD_SIZE) -> Payload:
    """Process-wide payload for ``(seed, size)``, generated on first use."""
    logger.debug("Generating %d-byte payload from seed %#x", size, seed)
    return generate_payload(seed, size)


def plan_slices(
    total: int,
    max_slice: int = MAX_SLICE,
    rng: random.Random | None = None,
) -> Iterator[tuple[int, int]]:
    """Yield contiguous ``(offset, length)`` slices covering ``[0, total)``.

    Each length is drawn independently from ``[1, max_slice]`` and clamped to
    what is left.
    """
    if max_slice < 1:
        raise ValueError(f"max_slice must be at least 1, got {max_slice}")
    rng = rng or random.Random()

    offset = 0
    while offset < total:
        length = min(rng.randint(1, max_slice), total - offset)
        yield offset, length
        offset += length
