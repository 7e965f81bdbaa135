"""
Tests for the MessageBatcher.
"""

from unittest.mock import MagicMock

import pytest

from tradefeed.batcher import MessageBatcher
from tradefeed.config import StreamConfig
from tradefeed.types import OutboundFrame


@pytest.fixture
def writes():
    return []


@pytest.fixture
def batcher(writes, scheduler):
    return MessageBatcher(
        write=writes.append,
        scheduler=scheduler,
        interval_ms=50,
        max_batch_size=3,
        no_batch_types={"authenticate"},
    )


class TestBatchWindow:

    def test_single_frame_written_unwrapped(self, batcher, writes, scheduler):
        batcher.enqueue(OutboundFrame.subscribe("a"))

        assert writes == []
        scheduler.advance(0.05)

        assert writes == [{"type": "subscribe", "topic": "a"}]

    def test_frames_in_window_coalesce_in_order(self, batcher, writes, scheduler):
        batcher.enqueue(OutboundFrame.subscribe("a"))
        batcher.enqueue(OutboundFrame.payload("a", {"n": 1}))
        scheduler.advance(0.05)

        assert writes == [{
            "type": "batch",
            "messages": [
                {"type": "subscribe", "topic": "a"},
                {"type": "message", "topic": "a", "data": {"n": 1}},
            ]
        }]
        assert batcher.writes == 1
        assert batcher.frames_written == 2

    def test_three_frames_in_window_flush_on_timer(self, writes, scheduler):
        batcher = MessageBatcher(write=writes.append, scheduler=scheduler, interval_ms=50, max_batch_size=100)
        batcher.enqueue(OutboundFrame.payload("a", "A"))
        batcher.enqueue(OutboundFrame.payload("b", "B"))
        batcher.enqueue(OutboundFrame.payload("c", "C"))

        scheduler.advance(0.04)
        assert writes == []
        assert batcher.pending_count == 3

        scheduler.advance(0.02)

        assert writes == [{
            "type": "batch",
            "messages": [
                {"type": "message", "topic": "a", "data": "A"},
                {"type": "message", "topic": "b", "data": "B"},
                {"type": "message", "topic": "c", "data": "C"},
            ]
        }]
        assert batcher.writes == 1

    def test_full_queue_flushes_immediately(self, batcher, writes):
        for n in range(3):
            batcher.enqueue(OutboundFrame.payload("a", n))

        assert len(writes) == 1
        assert [m["data"] for m in writes[0]["messages"]] == [0, 1, 2]
        assert batcher.pending_count == 0

    def test_explicit_flush_cancels_timer(self, batcher, writes, scheduler):
        batcher.enqueue(OutboundFrame.payload("a", 1))

        assert batcher.flush() == 1
        scheduler.advance(1.0)

        assert len(writes) == 1
        assert batcher.flush() == 0


class TestBypass:

    def test_pong_is_always_immediate(self, writes, scheduler):
        batcher = MessageBatcher(write=writes.append, scheduler=scheduler, no_batch_types=())
        batcher.enqueue(OutboundFrame.pong())

        assert writes == [{"type": "pong"}]

    def test_bypass_flushes_pending_first(self, batcher, writes):
        batcher.enqueue(OutboundFrame.payload("a", 1))
        batcher.enqueue(OutboundFrame.authenticate("tok"))

        assert writes == [
            {"type": "message", "topic": "a", "data": 1},
            {"type": "authenticate", "token": "tok"},
        ]

    def test_configured_types_match_case_insensitively(self, writes, scheduler):
        batcher = MessageBatcher(write=writes.append, scheduler=scheduler, no_batch_types=["SUBSCRIBE"])

        assert batcher.bypasses(OutboundFrame.subscribe("a"))
        assert not batcher.bypasses(OutboundFrame.payload("a", 1))

    def test_payload_kind_name_bypasses_window(self, writes, scheduler):
        config = StreamConfig.from_options({"url": "ws://feed.test/ws", "noBatchTypes": ["payload"]})
        batcher = MessageBatcher(
            write=writes.append,
            scheduler=scheduler,
            no_batch_types=config.batch.no_batch_types,
        )

        batcher.enqueue(OutboundFrame.payload("a", 1))

        assert writes == [{"type": "message", "topic": "a", "data": 1}]
        assert batcher.pending_count == 0

    def test_unknown_kind_rejected(self, writes, scheduler):
        with pytest.raises(ValueError):
            MessageBatcher(write=writes.append, scheduler=scheduler, no_batch_types=["trade"])


class TestDiscardAndStop:

    def test_discard_drops_pending(self, batcher, writes, scheduler):
        batcher.enqueue(OutboundFrame.payload("a", 1))
        batcher.enqueue(OutboundFrame.payload("a", 2))

        assert batcher.discard() == 2
        scheduler.advance(1.0)

        assert writes == []

    def test_stopped_batcher_ignores_frames(self, batcher, writes, scheduler):
        batcher.stop()
        batcher.enqueue(OutboundFrame.pong())
        batcher.enqueue(OutboundFrame.payload("a", 1))
        scheduler.advance(1.0)

        assert batcher.is_stopped
        assert writes == []

    def test_write_errors_do_not_propagate(self, scheduler):
        write = MagicMock(side_effect=RuntimeError("socket gone"))
        batcher = MessageBatcher(write=write, scheduler=scheduler)

        batcher.enqueue(OutboundFrame.pong())

        write.assert_called_once_with({"type": "pong"})

    def test_rejects_zero_batch_size(self, scheduler):
        with pytest.raises(ValueError):
            MessageBatcher(write=print, scheduler=scheduler, max_batch_size=0)
