from __future__ import annotations

from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4, UUID

from pydantic import BaseModel, Field, ConfigDict


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class WorkflowEventType(str, Enum):
    """
    Progression events emitted by the authentication workflow.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve observational semantics.
    """

    # ------------------------------------------------------------------
    # Global Workflow Lifecycle
    # ------------------------------------------------------------------
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_CONFIRMED = "workflow_confirmed"
    WORKFLOW_FAILED = "workflow_failed"

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------
    HASHING_STARTED = "hashing_started"
    DIGEST_READY = "digest_ready"

    # ------------------------------------------------------------------
    # Signing capability
    # ------------------------------------------------------------------
    AWAITING_SIGNING_CAPABILITY = "awaiting_signing_capability"
    SIGNING_CAPABILITY_ACQUIRED = "signing_capability_acquired"

    # ------------------------------------------------------------------
    # Ledger interaction
    # ------------------------------------------------------------------
    SUBMISSION_STARTED = "submission_started"
    TRANSACTION_BROADCAST = "transaction_broadcast"


TERMINAL_EVENT_TYPES = frozenset(
    {
        WorkflowEventType.WORKFLOW_CONFIRMED,
        WorkflowEventType.WORKFLOW_FAILED,
    }
)


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class WorkflowEvent(BaseModel):
    """
    An immutable observation of a state transition within a workflow.

    Events are:
    - strictly observational
    - transport-agnostic
    - not authoritative
    """

    event_id: UUID = Field(default_factory=uuid4)
    workflow_id: str = Field(..., description="The workflow instance identifier")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: WorkflowEventType

    digest: Optional[str] = None

    # Optional contextual metadata (tx hash, failure reason, etc.)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    def to_sse_payload(self) -> str:
        """
        Server-Sent Events frame: the event type names the SSE event and
        the JSON-serialized model is the data line.
        """
        return f"event: {self.event_type.value}\ndata: {self.model_dump_json()}\n\n"
