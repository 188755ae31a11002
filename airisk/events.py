"""Server-sent event framing and the queue that carries orchestrator events to a response.

Orchestrators never write to a response directly. They receive an ``emit``
callable and an ``is_cancelled`` check; :class:`EventChannel` supplies both,
buffers events in an :class:`asyncio.Queue` and renders them as
``event: <name>\\ndata: <json>\\n\\n`` frames for :class:`StreamingResponse`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

log = logging.getLogger(__name__)

Emit = Callable[[str, dict[str, Any]], None]
CancelCheck = Callable[[], bool]

# Canonical event names
PROGRESS = "progress"
BATCH_START = "batch_start"
COMPANY_START = "company_start"
COMPANY_COMPLETE = "company_complete"
COMPANY_ERROR = "company_error"
BATCH_COMPLETE = "batch_complete"
COMPLETE = "complete"
EXISTING_ADDED = "existing_added"
ERROR = "error"

_CLOSE = object()

# Strong references to in-flight runs; the event loop only keeps weak ones.
_running: set[asyncio.Task] = set()


def sse_frame(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def discard(event: str, data: dict[str, Any]) -> None:
    """Emit sink for callers that do not stream."""


def never_cancelled() -> bool:
    return False


class EventChannel:
    """Single-producer event queue with a cooperative cancellation flag."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: str, data: dict[str, Any]) -> None:
        if self._closed:
            return
        self._queue.put_nowait((event, data))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSE)

    def cancel(self) -> None:
        self._cancelled = True

    def is_cancelled(self) -> bool:
        return self._cancelled

    async def events(self) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield item

    async def frames(self) -> AsyncIterator[str]:
        async for event, data in self.events():
            yield sse_frame(event, data)


async def drive(channel: EventChannel, run: Callable[[EventChannel], Awaitable[Any]]) -> None:
    """Run an orchestrator against *channel*; a run-level failure becomes an ``error`` event."""
    try:
        await run(channel)
    except Exception as exc:
        log.exception("Streamed run failed")
        channel.emit(ERROR, {"message": str(exc) or exc.__class__.__name__})
    finally:
        channel.close()


async def stream(run: Callable[[EventChannel], Awaitable[Any]]) -> AsyncIterator[str]:
    """Start *run* in a task and yield its SSE frames.

    When the consumer goes away (client disconnect) the channel is flagged as
    cancelled; the task keeps going until the orchestrator notices the flag
    between items, so whatever it already committed stays committed.
    """
    channel = EventChannel()
    task = asyncio.create_task(drive(channel, run))
    _running.add(task)
    task.add_done_callback(_running.discard)
    try:
        async for frame in channel.frames():
            yield frame
    finally:
        if not task.done():
            log.info("Event stream consumer went away; cancelling run between items")
            channel.cancel()
