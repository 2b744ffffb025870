"""Tests for the delivery sinks."""

import asyncio

import pytest

from mailwatch.core import Message
from mailwatch.watch import CallbackSink, QueueSink


class TestQueueSink:
    """Tests for the bounded queue sink."""

    def test_rejects_non_positive_capacity(self) -> None:
        with pytest.raises(ValueError):
            QueueSink(maxsize=0)

    def test_rejects_unbounded_queue(self) -> None:
        with pytest.raises(ValueError):
            QueueSink(queue=asyncio.Queue())

    @pytest.mark.asyncio
    async def test_delivers_in_order(self) -> None:
        sink = QueueSink(maxsize=3)

        for uid in (1, 2, 3):
            await sink.deliver(Message(uid=uid))

        assert sink.full()
        assert [(await sink.get()).uid for _ in range(3)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_full_sink_blocks_instead_of_dropping(self) -> None:
        """A second delivery into a full capacity-1 sink waits for the consumer."""
        sink = QueueSink(maxsize=1)
        await sink.deliver(Message(uid=1))

        second = asyncio.create_task(sink.deliver(Message(uid=2)))
        await asyncio.sleep(0.05)

        assert not second.done()
        assert sink.qsize() == 1

        assert (await sink.get()).uid == 1
        await asyncio.wait_for(second, timeout=1)
        assert (await sink.get()).uid == 2


class TestCallbackSink:
    """Tests for the direct-callback sink."""

    @pytest.mark.asyncio
    async def test_calls_sync_handler(self) -> None:
        received = []
        sink = CallbackSink(received.append)

        await sink.deliver(Message(uid=7))

        assert [m.uid for m in received] == [7]

    @pytest.mark.asyncio
    async def test_awaits_async_handler(self) -> None:
        received = []

        async def handler(message):
            await asyncio.sleep(0)
            received.append(message.uid)

        await CallbackSink(handler).deliver(Message(uid=8))

        assert received == [8]

    @pytest.mark.asyncio
    async def test_handler_errors_propagate(self) -> None:
        def handler(message):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await CallbackSink(handler).deliver(Message(uid=9))
