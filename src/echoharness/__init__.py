"""Echo Harness - bidirectional stream correctness harness

This package streams a deterministic payload from a client to the peer it
connects to, has the peer echo every byte back, and verifies both directions
byte for byte across a matrix of dispatch modes, send modes and transports.
"""

from echoharness.channel import Connection, Pipeline, Role
from echoharness.config import (
    DispatchMode,
    HarnessSettings,
    RunConfiguration,
    SendMode,
    TransportKind,
    configuration_matrix,
)
from echoharness.error import (
    ConnectionClosedError,
    ErrorKind,
    HarnessError,
    SendModeViolation,
    TeardownFailure,
    TimeoutFailure,
    TransportFailure,
    VerificationFailure,
    is_expected_transient,
)
from echoharness.monitor import Completion, await_completion
from echoharness.orchestrator import EchoHarness, ScenarioResult, select_root_cause
from echoharness.participant import EchoParticipant, FailureSlot
from echoharness.payload import Payload, generate_payload, plan_slices, shared_payload
from echoharness.reactor import (
    VOID_HANDLE,
    CompletionHandle,
    EventLoopGroup,
    EventLoopThread,
)
from echoharness.teardown import TeardownReport, TeardownSequencer
from echoharness.transport import ListenHandle, Transport, create_transport

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "EchoHarness",
    "ScenarioResult",
    "select_root_cause",
    # Configuration (Pydantic models)
    "RunConfiguration",
    "HarnessSettings",
    "DispatchMode",
    "SendMode",
    "TransportKind",
    "configuration_matrix",
    # Payload
    "Payload",
    "generate_payload",
    "shared_payload",
    "plan_slices",
    # Participants and completion
    "EchoParticipant",
    "FailureSlot",
    "Completion",
    "await_completion",
    "TeardownSequencer",
    "TeardownReport",
    # Errors
    "ErrorKind",
    "HarnessError",
    "VerificationFailure",
    "TransportFailure",
    "TimeoutFailure",
    "TeardownFailure",
    "SendModeViolation",
    "ConnectionClosedError",
    "is_expected_transient",
    # Transport layer
    "Role",
    "Connection",
    "Pipeline",
    "Transport",
    "ListenHandle",
    "create_transport",
    "CompletionHandle",
    "VOID_HANDLE",
    "EventLoopThread",
    "EventLoopGroup",
]
