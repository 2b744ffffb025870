# =============================================================================
# Delivery Sinks
# =============================================================================
# Where the watch engine hands off newly arrived messages. Two strategies:
#   - QueueSink: a bounded asyncio.Queue the caller reads from
#   - CallbackSink: calls a handler directly on the polling task
#
# A full QueueSink makes deliver() wait until the consumer drains it, so a
# slow consumer slows the polling loop down instead of losing messages.
# =============================================================================

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from mailwatch.core import Message

logger = logging.getLogger(__name__)

# Handler type for callback delivery; may be sync or async
MessageHandler = Callable[[Message], Awaitable[None] | None]


class DeliverySink(ABC):
    """Destination for messages the watch engine decided to deliver."""

    @abstractmethod
    async def deliver(self, message: Message) -> None:
        """Hand one message to the consumer, waiting if it is busy."""


class QueueSink(DeliverySink):
    """
    Bounded push channel of messages.

    Usage:
        >>> sink = QueueSink(maxsize=1)
        >>> task = asyncio.create_task(engine.watch(sink, interval=30))
        >>> message = await sink.get()
    """

    def __init__(self, maxsize: int = 1, *, queue: asyncio.Queue | None = None) -> None:
        if queue is None:
            if maxsize < 1:
                raise ValueError(f"Sink capacity must be positive, got {maxsize}")
            queue = asyncio.Queue(maxsize=maxsize)
        elif queue.maxsize < 1:
            raise ValueError("Sink queue must be bounded")
        self._queue: asyncio.Queue[Message] = queue

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    async def deliver(self, message: Message) -> None:
        if self._queue.full():
            logger.debug(f"Sink full, waiting for consumer before delivering {message.uid}")
        await self._queue.put(message)

    async def get(self) -> Message:
        """Wait for and return the next delivered message."""
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()


class CallbackSink(DeliverySink):
    """
    Delivers by calling a handler on the delivering task.

    The handler runs to completion before deliver() returns, so it is never
    invoked concurrently with itself. Coroutine functions are awaited.
    """

    def __init__(self, handler: MessageHandler) -> None:
        self.handler = handler

    async def deliver(self, message: Message) -> None:
        result = self.handler(message)
        if inspect.isawaitable(result):
            await result
