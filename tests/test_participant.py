"""Tests for EchoParticipant and FailureSlot.

These run the participant against an in-memory endpoint, both directly and
through a Pipeline, without any sockets.
"""

import threading

import pytest

from echoharness.channel import Pipeline, Role
from echoharness.error import VerificationFailure
from echoharness.participant import EchoParticipant, FailureSlot

from tests.conftest import FakeEndpoint


class TestFailureSlot:
    """Tests for first-failure-wins capture."""

    def test_empty(self) -> None:
        slot = FailureSlot()
        assert not slot
        assert slot.get() is None
        assert slot.suppressed == ()

    def test_first_offer_wins(self) -> None:
        slot = FailureSlot()
        first = VerificationFailure("first")
        second = ConnectionResetError("second")
        third = ValueError("third")

        assert slot.offer(first) is True
        assert slot.offer(second) is False
        assert slot.offer(third) is False

        assert slot.get() is first
        assert slot.suppressed == (second, third)

    def test_concurrent_offers_keep_exactly_one(self) -> None:
        slot = FailureSlot()
        barrier = threading.Barrier(8)
        results: list[bool] = []

        def offer(i: int) -> None:
            barrier.wait()
            results.append(slot.offer(RuntimeError(str(i))))

        threads = [threading.Thread(target=offer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert len(slot.suppressed) == 7


class TestEchoParticipantReceive:
    """Verification, counting and role-based echo."""

    def test_originating_verifies_without_echo(self, small_payload) -> None:
        endpoint = FakeEndpoint(Role.ORIGINATING)
        participant = EchoParticipant(small_payload)
        participant.on_activate(endpoint)

        participant.on_receive(small_payload.expected(0, 1000))

        assert participant.counter == 1000
        assert endpoint.writes == []

    def test_accepting_echoes_verbatim(self, small_payload) -> None:
        endpoint = FakeEndpoint(Role.ACCEPTING)
        participant = EchoParticipant(small_payload)
        participant.on_activate(endpoint)

        participant.on_receive(small_payload.expected(0, 1000))
        participant.on_receive(small_payload.expected(1000, 24))

        assert endpoint.writes == [small_payload.expected(0, 1000), small_payload.expected(1000, 24)]
        assert participant.counter == 1024

    def test_counter_tracks_offset_across_chunks(self, small_payload) -> None:
        participant = EchoParticipant(small_payload)
        participant.on_activate(FakeEndpoint())

        offset = 0
        for size in (1, 7, 300, 2000, 1788):
            participant.on_receive(small_payload.expected(offset, size))
            offset += size

        assert participant.counter == len(small_payload) == offset

    def test_mismatch_raises_and_does_not_echo(self, small_payload) -> None:
        endpoint = FakeEndpoint(Role.ACCEPTING)
        participant = EchoParticipant(small_payload)
        participant.on_activate(endpoint)
        participant.on_receive(small_payload.expected(0, 100))

        bad = bytearray(small_payload.expected(100, 100))
        bad[45] ^= 0xFF
        with pytest.raises(VerificationFailure) as exc_info:
            participant.on_receive(bytes(bad))

        assert exc_info.value.offset == 145
        assert participant.counter == 100
        assert len(endpoint.writes) == 1

    def test_receive_before_activation_is_a_defect(self, small_payload) -> None:
        participant = EchoParticipant(small_payload)
        with pytest.raises(RuntimeError, match="before activation"):
            participant.on_receive(small_payload.expected(0, 10))

    def test_activation_happens_once(self, small_payload) -> None:
        participant = EchoParticipant(small_payload)
        participant.on_activate(FakeEndpoint())
        with pytest.raises(RuntimeError, match="already bound"):
            participant.on_activate(FakeEndpoint())

    def test_batch_complete_flushes_once_per_batch(self, small_payload) -> None:
        endpoint = FakeEndpoint(Role.ACCEPTING)
        participant = EchoParticipant(small_payload)
        participant.on_activate(endpoint)

        participant.on_receive(small_payload.expected(0, 10))
        participant.on_receive(small_payload.expected(10, 10))
        assert endpoint.flushes == 0

        participant.on_receive_batch_complete()
        assert endpoint.flushes == 1


class TestEchoParticipantFailure:
    """Failure capture and its effect on the endpoint."""

    def test_first_failure_closes_endpoint_once(self, small_payload) -> None:
        endpoint = FakeEndpoint()
        participant = EchoParticipant(small_payload)
        participant.on_activate(endpoint)

        first = ConnectionResetError("reset")
        participant.on_failure(first)
        participant.on_failure(ValueError("later"))

        assert participant.failure.get() is first
        assert endpoint.closes == 1
        assert len(participant.failure.suppressed) == 1

    def test_chunks_dropped_after_failure(self, small_payload) -> None:
        endpoint = FakeEndpoint(Role.ACCEPTING)
        participant = EchoParticipant(small_payload)
        participant.on_activate(endpoint)
        participant.on_failure(ConnectionResetError())

        participant.on_receive(small_payload.expected(0, 10))

        assert participant.counter == 0
        assert endpoint.writes == []

    def test_failure_before_activation_is_recorded(self, small_payload) -> None:
        participant = EchoParticipant(small_payload)
        participant.on_failure(OSError("bind"))
        assert isinstance(participant.failure.get(), OSError)

    def test_failure_notifies_progress(self, small_payload) -> None:
        progress = threading.Condition()
        participant = EchoParticipant(small_payload, progress)
        participant.on_activate(FakeEndpoint())

        timer = threading.Timer(0.05, participant.on_failure, args=(ConnectionResetError(),))
        timer.start()
        with progress:
            assert progress.wait_for(participant.failure.is_set, timeout=5.0)
        timer.join()


class TestPipelineDispatch:
    """The participant driven through a Pipeline."""

    def test_verification_failure_routed_to_on_failure(self, small_payload) -> None:
        endpoint = FakeEndpoint(Role.ACCEPTING)
        participant = EchoParticipant(small_payload)
        pipeline = Pipeline(endpoint)  # type: ignore[arg-type]
        pipeline.add_last(participant)

        pipeline.fire_active()
        bad = bytearray(small_payload.expected(0, 64))
        bad[3] ^= 0x10
        pipeline.fire_receive(bytes(bad))
        pipeline.fire_receive(small_payload.expected(0, 64))

        error = participant.failure.get()
        assert isinstance(error, VerificationFailure)
        assert error.offset == 3
        assert participant.failure.suppressed == ()
        assert endpoint.closes == 1
        assert endpoint.writes == []

    def test_events_reach_handlers_in_order(self, small_payload) -> None:
        endpoint = FakeEndpoint(Role.ORIGINATING)
        first = EchoParticipant(small_payload, name="first")
        second = EchoParticipant(small_payload, name="second")
        pipeline = Pipeline(endpoint)  # type: ignore[arg-type]
        pipeline.add_last(first).add_last(second)

        pipeline.fire_active()
        pipeline.fire_receive(small_payload.expected(0, 512))
        pipeline.fire_receive_batch_complete()
        pipeline.fire_inactive()

        assert len(pipeline) == 2
        assert first.counter == second.counter == 512
        assert first.is_inactive and second.is_inactive
        assert endpoint.flushes == 2
