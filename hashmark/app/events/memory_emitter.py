from __future__ import annotations

import asyncio
from typing import AsyncIterator

from hashmark.app.events.models import TERMINAL_EVENT_TYPES, WorkflowEvent
from hashmark.app.events.emitter import WorkflowEventEmitter


class MemoryQueueEventEmitter(WorkflowEventEmitter):
    """
    In-memory async event emitter.

    Properties:
    - single-consumer
    - non-blocking for the workflow execution path
    - deterministic ordering
    - terminates cleanly once the workflow confirms or fails
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[WorkflowEvent | None] = asyncio.Queue()
        self._closed = False

    async def emit(self, event: WorkflowEvent) -> None:
        if self._closed:
            return

        try:
            await self._queue.put(event)
        except Exception:
            # Fail-safe: never let observability break the workflow
            return

        if event.event_type in TERMINAL_EVENT_TYPES:
            await self.close()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    async def stream(self) -> AsyncIterator[WorkflowEvent]:
        """
        Async generator yielding emitted events in order.
        """
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event
