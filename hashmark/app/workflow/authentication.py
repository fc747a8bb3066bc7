"""
Authentication workflow.

IMPORTANT:
The workflow is an ORCHESTRATOR, not an authority.

It MUST NOT:
- decide whether a digest is already registered (the ledger does)
- retry writes
- fabricate a record for a digest it did not confirm

Its sole responsibilities are:
- enforcing state order
    IDLE -> HASHING -> AWAITING_SIGNING_CAPABILITY -> SUBMITTING
         -> AWAITING_CONFIRMATION -> CONFIRMED
  with FAILED reachable from every non-terminal state
- classifying ledger failures into failure reasons
- emitting observational events on each transition
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from hashmark.app.core.errors import (
    DuplicateProof,
    LedgerError,
    NetworkUnavailable,
    SigningRejected,
    Unauthorized,
    translate_ledger_error,
)
from hashmark.app.events import (
    NullEventEmitter,
    WorkflowEvent,
    WorkflowEventEmitter,
    WorkflowEventType,
)
from hashmark.app.schemas.proofs import PendingProof, ProofRecord
from hashmark.app.services.ledger import LedgerGateway
from hashmark.app.utils.hashing import (
    EmptyInputError,
    compute_digest,
    compute_raw_digest,
    normalize_digest,
)
from hashmark.app.workflow.signing import SigningCapabilitySource

logger = logging.getLogger("hashmark.workflow")


class WorkflowState(str, Enum):
    IDLE = "idle"
    HASHING = "hashing"
    AWAITING_SIGNING_CAPABILITY = "awaiting_signing_capability"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({WorkflowState.CONFIRMED, WorkflowState.FAILED})


class FailureReason(str, Enum):
    ALREADY_AUTHENTICATED = "already_authenticated"
    UNAUTHORIZED = "unauthorized"
    SIGNING_REJECTED = "signing_rejected"
    NETWORK_UNAVAILABLE = "network_unavailable"
    # Caller deadline elapsed after broadcast. Outcome unknown, not failed.
    CONFIRMATION_PENDING = "confirmation_pending"
    INVALID_INPUT = "invalid_input"
    UNCLASSIFIED = "unclassified"


def failure_reason_for(error: LedgerError) -> FailureReason:
    if isinstance(error, DuplicateProof):
        return FailureReason.ALREADY_AUTHENTICATED
    if isinstance(error, Unauthorized):
        return FailureReason.UNAUTHORIZED
    if isinstance(error, SigningRejected):
        return FailureReason.SIGNING_REJECTED
    if isinstance(error, NetworkUnavailable):
        return FailureReason.NETWORK_UNAVAILABLE
    return FailureReason.UNCLASSIFIED


class AuthenticationOutcome(BaseModel):
    """
    Terminal result of one workflow run.

    ``broadcast`` is True once a transaction has left this process. From
    that point the transaction id is always reported, whatever the final
    state, because a broadcast transaction cannot be recalled.
    """

    state: WorkflowState
    digest: Optional[str] = None
    record: Optional[ProofRecord] = None
    failure_reason: Optional[FailureReason] = None
    detail: Optional[str] = None
    transaction_id: Optional[str] = None
    broadcast: bool = False

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    @property
    def confirmed(self) -> bool:
        return self.state == WorkflowState.CONFIRMED

    @property
    def already_authenticated(self) -> bool:
        return self.failure_reason == FailureReason.ALREADY_AUTHENTICATED


class WorkflowAlreadyStarted(RuntimeError):
    pass


class AuthenticationWorkflow:
    """
    Single-use state machine for registering one digest.

    Concurrent workflows for the same digest are safe: the ledger admits
    exactly one write, and the loser lands in
    FAILED(ALREADY_AUTHENTICATED).
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        capabilities: SigningCapabilitySource,
        *,
        emitter: Optional[WorkflowEventEmitter] = None,
        workflow_id: Optional[str] = None,
    ) -> None:
        self._gateway = gateway
        self._capabilities = capabilities
        self._emitter = emitter or NullEventEmitter()
        self.workflow_id = workflow_id or uuid4().hex

        self._state = WorkflowState.IDLE
        self._transitions: List[Tuple[WorkflowState, WorkflowState]] = []
        self._digest: Optional[str] = None
        self._pending: Optional[PendingProof] = None

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def transitions(self) -> Tuple[Tuple[WorkflowState, WorkflowState], ...]:
        return tuple(self._transitions)

    @property
    def pending(self) -> Optional[PendingProof]:
        return self._pending

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        *,
        data: Optional[Union[bytes, bytearray, memoryview]] = None,
        raw_value: Optional[str] = None,
        digest: Optional[str] = None,
        confirmation_timeout: Optional[float] = None,
        wait_for_capability: bool = True,
    ) -> AuthenticationOutcome:
        """
        Drive the workflow to a terminal state.

        Exactly one of ``data``, ``raw_value`` or ``digest`` must be given.

        With ``wait_for_capability=True`` the workflow parks until the
        capability source provides a signer. With False, a missing signer
        fails the run immediately with UNAUTHORIZED.

        ``confirmation_timeout`` bounds only the confirmation wait. When it
        elapses the outcome is FAILED(CONFIRMATION_PENDING) with the
        transaction id: the transaction may still be included later.
        """
        if sum(value is not None for value in (data, raw_value, digest)) != 1:
            raise ValueError("Exactly one of data, raw_value or digest is required.")

        if self._state != WorkflowState.IDLE:
            raise WorkflowAlreadyStarted(
                f"Workflow {self.workflow_id} already ran ({self._state.value})."
            )

        await self._emit(WorkflowEventType.WORKFLOW_STARTED)

        # --------------------------------------------------------------
        # 1. Hashing
        # --------------------------------------------------------------
        self._transition(WorkflowState.HASHING)
        await self._emit(WorkflowEventType.HASHING_STARTED)

        try:
            if data is not None:
                self._digest = compute_digest(data)
            elif raw_value is not None:
                self._digest = compute_raw_digest(raw_value)
            else:
                self._digest = normalize_digest(digest)
        except (EmptyInputError, TypeError) as exc:
            return await self._fail(FailureReason.INVALID_INPUT, str(exc))

        await self._emit(WorkflowEventType.DIGEST_READY)

        # --------------------------------------------------------------
        # 2. Signing capability
        # --------------------------------------------------------------
        self._transition(WorkflowState.AWAITING_SIGNING_CAPABILITY)

        capability = self._capabilities.current()
        if capability is None:
            if not wait_for_capability:
                return await self._fail(
                    FailureReason.UNAUTHORIZED,
                    "No signing capability is configured.",
                )
            await self._emit(WorkflowEventType.AWAITING_SIGNING_CAPABILITY)
            capability = await self._capabilities.acquire()

        await self._emit(
            WorkflowEventType.SIGNING_CAPABILITY_ACQUIRED,
            {"signer_address": capability.address},
        )

        # --------------------------------------------------------------
        # 3. Submission
        # --------------------------------------------------------------
        self._transition(WorkflowState.SUBMITTING)
        await self._emit(WorkflowEventType.SUBMISSION_STARTED)

        try:
            self._pending = await self._gateway.broadcast_proof(
                self._digest,
                capability,
            )
        except Exception as exc:
            return await self._fail_from_error(exc)

        self._transition(WorkflowState.AWAITING_CONFIRMATION)
        await self._emit(
            WorkflowEventType.TRANSACTION_BROADCAST,
            {"tx_hash": self._pending.transaction_id},
        )

        # --------------------------------------------------------------
        # 4. Confirmation
        # --------------------------------------------------------------
        try:
            confirmation = self._gateway.await_confirmation(self._pending)
            if confirmation_timeout is None:
                record = await confirmation
            else:
                record = await asyncio.wait_for(
                    confirmation,
                    timeout=confirmation_timeout,
                )
        except asyncio.TimeoutError:
            return await self._fail(
                FailureReason.CONFIRMATION_PENDING,
                "Transaction broadcast but not yet confirmed.",
            )
        except asyncio.CancelledError:
            logger.warning(
                "workflow_cancelled_after_broadcast",
                extra={
                    "workflow_id": self.workflow_id,
                    "digest": self._digest,
                    "tx_hash": self._pending.transaction_id,
                    "note": "broadcast transaction cannot be recalled",
                },
            )
            raise
        except Exception as exc:
            return await self._fail_from_error(exc)

        self._transition(WorkflowState.CONFIRMED)
        await self._emit(
            WorkflowEventType.WORKFLOW_CONFIRMED,
            {
                "tx_hash": record.transaction_id,
                "block_number": record.block_height,
            },
        )

        return AuthenticationOutcome(
            state=WorkflowState.CONFIRMED,
            digest=self._digest,
            record=record,
            transaction_id=record.transaction_id or self._pending.transaction_id,
            broadcast=True,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _transition(self, target: WorkflowState) -> None:
        if self._state in TERMINAL_STATES:
            raise RuntimeError(
                f"Illegal transition from terminal state {self._state.value}"
            )

        self._transitions.append((self._state, target))
        logger.debug(
            "workflow_transition",
            extra={
                "workflow_id": self.workflow_id,
                "from_state": self._state.value,
                "to_state": target.value,
            },
        )
        self._state = target

    async def _fail_from_error(self, exc: Exception) -> AuthenticationOutcome:
        error = translate_ledger_error(exc)
        reason = failure_reason_for(error)

        if reason == FailureReason.UNCLASSIFIED:
            logger.error(
                "workflow_unclassified_failure",
                exc_info=exc,
                extra={
                    "workflow_id": self.workflow_id,
                    "digest": self._digest,
                    "detail": error.detail,
                },
            )

        return await self._fail(reason, str(error))

    async def _fail(
        self,
        reason: FailureReason,
        detail: str,
    ) -> AuthenticationOutcome:
        self._transition(WorkflowState.FAILED)

        transaction_id = self._pending.transaction_id if self._pending else None

        # Duplicates and wallet rejections are expected outcomes.
        level = (
            logging.INFO
            if reason
            in {FailureReason.ALREADY_AUTHENTICATED, FailureReason.SIGNING_REJECTED}
            else logging.WARNING
        )
        logger.log(
            level,
            "workflow_failed",
            extra={
                "workflow_id": self.workflow_id,
                "digest": self._digest,
                "failure_reason": reason.value,
                "tx_hash": transaction_id,
            },
        )

        await self._emit(
            WorkflowEventType.WORKFLOW_FAILED,
            {"failure_reason": reason.value, "tx_hash": transaction_id},
        )

        return AuthenticationOutcome(
            state=WorkflowState.FAILED,
            digest=self._digest,
            failure_reason=reason,
            detail=detail,
            transaction_id=transaction_id,
            broadcast=self._pending is not None,
        )

    async def _emit(
        self,
        event_type: WorkflowEventType,
        details: Optional[dict] = None,
    ) -> None:
        try:
            await self._emitter.emit(
                WorkflowEvent(
                    workflow_id=self.workflow_id,
                    event_type=event_type,
                    digest=self._digest,
                    details=details,
                )
            )
        except Exception:
            # Observability must never change a workflow outcome.
            logger.warning(
                "workflow_event_emit_failed",
                extra={
                    "workflow_id": self.workflow_id,
                    "event_type": event_type.value,
                },
            )
