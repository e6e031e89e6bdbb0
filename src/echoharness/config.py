"""Pydantic configuration models for the echo harness.

These are only used when a scenario is set up. The per-chunk paths
(verification, counters, writes) never touch them.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from itertools import product

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from echoharness.payload import DEFAULT_SEED, MAX_SLICE, PAYLOAD_SIZE


class DispatchMode(str, Enum):
    """Where participant callbacks run."""

    INLINE = "inline"  # on the reactor thread that owns the connection
    OFFLOADED = "offloaded"  # on a worker pool shared by both endpoints


class SendMode(str, Enum):
    """How the orchestrator issues its writes."""

    ACKNOWLEDGED = "acknowledged"
    FIRE_AND_FORGET = "fire_and_forget"


class TransportKind(str, Enum):
    """Wire transport carrying the echo stream."""

    TCP = "tcp"
    WEBSOCKET = "websocket"


class RunConfiguration(BaseModel):
    """One cell of the scenario matrix.

    Attributes:
        dispatch_mode: Inline or offloaded handler dispatch
        send_mode: Acknowledged or fire-and-forget writes
        transport: Transport the stream runs over
    """

    model_config = ConfigDict(frozen=True)

    dispatch_mode: DispatchMode = DispatchMode.INLINE
    send_mode: SendMode = SendMode.ACKNOWLEDGED
    transport: TransportKind = TransportKind.TCP

    @property
    def label(self) -> str:
        """Short identifier, suitable for test ids and log lines."""
        return f"{self.transport.value}-{self.dispatch_mode.value}-{self.send_mode.value}"


def configuration_matrix(
    transports: Iterable[TransportKind] = (TransportKind.TCP,),
) -> list[RunConfiguration]:
    """Every dispatch/send combination for each of ``transports``."""
    return [
        RunConfiguration(dispatch_mode=dispatch, send_mode=send, transport=transport)
        for transport, dispatch, send in product(transports, DispatchMode, SendMode)
    ]


class HarnessSettings(BaseModel):
    """Settings shared by every scenario an ``EchoHarness`` runs.

    Attributes:
        payload_size: Number of bytes streamed in each direction
        seed: Seed for the payload generator
        max_slice: Largest slice written in one call
        slice_seed: Seed for slice sizes; None draws fresh sizes per harness
        poll_interval: Longest single wait of the completion monitor, seconds
        deadline: Per-scenario time limit, seconds
        connect_timeout: Limit for bind and connect, seconds
        teardown_timeout: Limit for each close during teardown, seconds
        host: Loopback address to bind and connect to
        worker_threads: Size of the offloaded dispatch pool
        ws_path: Endpoint path used by the WebSocket transport
    """

    model_config = ConfigDict(frozen=True)

    payload_size: int = Field(default=PAYLOAD_SIZE, gt=0, description="Bytes per direction")
    seed: int = Field(default=DEFAULT_SEED, description="Payload seed")
    max_slice: int = Field(default=MAX_SLICE, gt=0, description="Largest slice per write")
    slice_seed: int | None = Field(default=None, description="Seed for slice sizes")
    poll_interval: float = Field(default=0.05, gt=0, description="Monitor wait slice")
    deadline: float = Field(default=30.0, gt=0, description="Per-scenario limit")
    connect_timeout: float = Field(default=10.0, gt=0, description="Bind/connect limit")
    teardown_timeout: float = Field(default=10.0, gt=0, description="Per-close limit")
    host: str = Field(default="127.0.0.1", description="Loopback host")
    worker_threads: int = Field(default=2, gt=0, description="Offloaded pool size")
    ws_path: str = Field(default="/echo", description="WebSocket endpoint path")

    @field_validator("ws_path")
    @classmethod
    def validate_ws_path(cls, v: str) -> str:
        """Validate the WebSocket path is absolute."""
        if not v.startswith("/"):
            raise ValueError("ws_path must start with '/'")
        return v

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        if not v:
            raise ValueError("host cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_slice_size(self) -> HarnessSettings:
        if self.max_slice > self.payload_size:
            raise ValueError(
                f"max_slice ({self.max_slice}) cannot exceed payload_size ({self.payload_size})"
            )
        return self
