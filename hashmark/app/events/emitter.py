from __future__ import annotations

from typing import Protocol

from hashmark.app.events.models import WorkflowEvent


class WorkflowEventEmitter(Protocol):
    """
    Interface for broadcasting workflow observations.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not change a workflow outcome)
    - observational only
    """

    async def emit(self, event: WorkflowEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used when:
    - nobody is listening (plain HTTP requests)
    - tests that do not care about events
    """

    async def emit(self, event: WorkflowEvent) -> None:
        return
