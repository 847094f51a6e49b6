"""
Change channel: carries ChangeEvents from the data service to the session loop.

Service callbacks may fire on any thread (SQLite writes run in worker
threads, webhooks arrive on HTTP threads). Everything is handed to the
loop's queue so the store and overlay are only ever touched on the loop.
"""
import asyncio
import logging
from typing import Optional

from .schema import ChangeEvent

logger = logging.getLogger(__name__)


class ChangeChannel:
    """Single-consumer queue of ChangeEvents bound to one event loop."""

    def __init__(self):
        self._queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.closed = False

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def publish(self, event: ChangeEvent) -> None:
        """Enqueue from the loop thread."""
        if self.closed:
            logger.debug(f"Channel closed, dropping {event.kind.name} for {event.entity_id}")
            return
        self._queue.put_nowait(event)

    def publish_threadsafe(self, event: ChangeEvent) -> None:
        """Enqueue from any thread. Used as the service subscription callback."""
        if self._loop is None:
            raise RuntimeError("ChangeChannel is not bound to an event loop")
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.publish, event)

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every published event has been handled."""
        await self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self.closed = True
