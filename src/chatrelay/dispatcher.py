"""
Dispatcher: the single consumer of the inbound message queue.

Producers (HTTP submit path and every connection's read loop) enqueue
Messages; the dispatcher takes them one at a time in arrival order and
tries live delivery to the recipient's registered connection.

Delivery is at most once. If the recipient is not connected, the message is
dropped here; the mailbox is the delivery guarantee of record. If the write
fails, the dead connection is closed and evicted from the registry and the
message is dropped without retry.

Backpressure: the queue is unbounded by default. With maxsize > 0 producers
block in enqueue() until the dispatcher frees a slot; nothing is discarded.
"""

import asyncio
import logging
from typing import Optional

from chatrelay.connection import ConnectionRegistry
from chatrelay.types import Message

logger = logging.getLogger(__name__)


class Dispatcher:
    """FIFO dispatcher between the inbound queue and the connection registry."""

    def __init__(self, registry: ConnectionRegistry, *, maxsize: int = 0) -> None:
        self._registry = registry
        self._queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=max(0, maxsize))
        self._task: Optional[asyncio.Task] = None

    @property
    def queue(self) -> asyncio.Queue[Message]:
        """The inbound queue (for tests or custom producers)."""
        return self._queue

    async def enqueue(self, message: Message) -> None:
        """Queue message for dispatch. Blocks only when the queue is bounded and full."""
        await self._queue.put(message)

    async def dispatch_one(self, message: Message) -> bool:
        """
        Attempt live delivery of one message.
        Returns True if it was written to the recipient's connection.
        """
        handle = self._registry.lookup(message.recipient)
        if handle is None:
            logger.debug(
                "dispatch: %s not connected, dropping message from %s",
                message.recipient,
                message.sender,
            )
            return False
        try:
            await handle.send(message.serialize())
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning(
                "dispatch: write to %s failed, evicting connection: %s",
                message.recipient,
                e,
            )
            self._registry.unregister(message.recipient, handle)
            try:
                await handle.close()
            except Exception as close_err:  # pylint: disable=broad-exception-caught
                logger.debug("dispatch: close after failed write: %s", close_err)
            return False
        logger.debug("dispatch: %s -> %s delivered", message.sender, message.recipient)
        return True

    async def run(self) -> None:
        """Drain the queue forever. Cancel the task to stop."""
        while True:
            message = await self._queue.get()
            try:
                await self.dispatch_one(message)
            finally:
                self._queue.task_done()

    def start(self) -> "Dispatcher":
        """Start the consumer task if it is not running."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self

    async def stop(self) -> None:
        """Cancel the consumer task. Messages still queued are dropped."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if not self._queue.empty():
            logger.info(
                "dispatcher stopped with %d undelivered messages", self._queue.qsize()
            )

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
