from .models import WorkflowEvent, WorkflowEventType
from .emitter import WorkflowEventEmitter, NullEventEmitter
from .memory_emitter import MemoryQueueEventEmitter

__all__ = [
    "WorkflowEvent",
    "WorkflowEventType",
    "WorkflowEventEmitter",
    "NullEventEmitter",
    "MemoryQueueEventEmitter",
]
