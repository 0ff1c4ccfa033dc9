"""Server-Sent Events publisher for a supervised requote run."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from app.schemas.requote import TERMINAL_EVENT_TYPES, ProgressEvent, RequoteRun

logger = logging.getLogger(__name__)

_CLOSE = object()


def format_sse(event: ProgressEvent) -> str:
    payload = event.model_dump(mode="json", exclude_none=True)
    return f"data: {json.dumps(payload)}\n\n"


class ProgressStreamPublisher:
    """
    Applies each event to the run summary and queues it as one SSE frame.

    The queue is unbounded so publishing never waits on the HTTP client.
    If the subscriber goes away, frames simply accumulate until the run
    finishes and the publisher is dropped.
    """

    def __init__(self, run: RequoteRun | None = None):
        self.run = run or RequoteRun()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.terminal_sent = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent):
        if self._closed:
            logger.debug(f"Dropping {event.type} event published after close")
            return
        if self.terminal_sent:
            logger.warning(f"Dropping {event.type} event after terminal event")
            return

        self.run.apply(event)
        self._queue.put_nowait(format_sse(event))
        if event.type in TERMINAL_EVENT_TYPES:
            self.terminal_sent = True

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield item
