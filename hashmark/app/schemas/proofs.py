"""
Proof schemas.

These models are the typed boundary between the Ledger Gateway and the
rest of the service. Raw ledger client results are coerced into them at
the gateway seam; nothing downstream touches untyped ledger data.

Authority:
- ProofRecord mirrors state owned by the external ledger. Local copies
  are views, never the source of truth.
- VerificationResult is derived and recomputed on every request.
"""

from __future__ import annotations

from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class ProofRecord(BaseModel):
    """
    A confirmed, immutable proof binding a digest to a creator and a time.

    ``transaction_id`` and ``block_height`` are known whenever the record
    was assembled from a receipt or an event log. A record read through
    the contract's view function alone carries neither.
    """

    digest: str = Field(..., min_length=1)
    creator_address: str = Field(..., min_length=1)
    block_timestamp: int = Field(..., ge=0, description="Unix seconds")

    transaction_id: Optional[str] = None
    block_height: Optional[int] = Field(default=None, ge=0)
    network_id: Optional[int] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


class PendingProof(BaseModel):
    """
    A proof transaction that has been broadcast but not yet confirmed.

    Once this object exists the transaction cannot be recalled.
    """

    digest: str
    transaction_id: str
    creator_address: str

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


class VerificationResult(BaseModel):
    """
    Read-only view of the ledger state for one digest.
    """

    digest: str
    found: bool
    record: Optional[ProofRecord] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    @model_validator(mode="after")
    def record_matches_found(self) -> "VerificationResult":
        if self.found and self.record is None:
            raise ValueError("found=True requires a record")
        if not self.found and self.record is not None:
            raise ValueError("found=False must not carry a record")
        if self.record is not None and self.record.digest != self.digest:
            raise ValueError("record digest does not match the queried digest")
        return self

    @classmethod
    def absent(cls, digest: str) -> "VerificationResult":
        return cls(digest=digest, found=False)


class RecentProofs(BaseModel):
    """
    Newest-first slice of the registry event log.
    """

    proofs: Tuple[ProofRecord, ...] = ()
    total: int = Field(0, ge=0)
    block_number: int = Field(0, ge=0)

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
