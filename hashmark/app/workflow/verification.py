"""
Verification workflow.

Hash an input (or accept a digest), read the ledger once, classify.

Both input paths converge on the same ``read_proof`` call. The only retry
is the one the Ledger Gateway performs on its read path. A transport
failure is reported as ERROR, never as NOT_FOUND.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from hashmark.app.core.errors import LedgerError
from hashmark.app.schemas.proofs import VerificationResult
from hashmark.app.services.ledger import LedgerGateway
from hashmark.app.utils.hashing import compute_digest, normalize_digest
from hashmark.app.workflow.authentication import FailureReason, failure_reason_for

logger = logging.getLogger("hashmark.workflow")


class VerificationStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class VerificationOutcome(BaseModel):
    status: VerificationStatus
    digest: str
    result: Optional[VerificationResult] = None
    error: Optional[FailureReason] = None
    detail: Optional[str] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    @property
    def found(self) -> bool:
        return self.status == VerificationStatus.FOUND


class VerificationWorkflow:
    def __init__(self, gateway: LedgerGateway) -> None:
        self._gateway = gateway

    async def verify(
        self,
        *,
        data: Optional[Union[bytes, bytearray, memoryview]] = None,
        digest: Optional[str] = None,
    ) -> VerificationOutcome:
        """
        Exactly one of ``data`` or ``digest`` must be given.

        A blank digest raises ``EmptyInputError`` before the ledger is
        contacted.
        """
        if (data is None) == (digest is None):
            raise ValueError("Exactly one of data or digest is required.")

        if data is not None:
            digest = compute_digest(data)
        else:
            digest = normalize_digest(digest)

        try:
            result = await self._gateway.read_proof(digest)
        except LedgerError as exc:
            reason = failure_reason_for(exc)
            extra = {
                "digest": digest,
                "error_type": exc.kind,
                "detail": exc.detail,
            }
            if reason == FailureReason.UNCLASSIFIED:
                logger.exception("verification_failed", extra=extra)
            else:
                logger.warning("verification_failed", extra=extra)
            return VerificationOutcome(
                status=VerificationStatus.ERROR,
                digest=digest,
                error=reason,
                detail=str(exc),
            )

        return VerificationOutcome(
            status=(
                VerificationStatus.FOUND
                if result.found
                else VerificationStatus.NOT_FOUND
            ),
            digest=digest,
            result=result,
        )

    async def verify_bytes(
        self,
        data: Union[bytes, bytearray, memoryview],
    ) -> VerificationOutcome:
        return await self.verify(data=data)

    async def verify_digest(self, digest: str) -> VerificationOutcome:
        return await self.verify(digest=digest)
