"""
Verification artifact schemas.

Artifacts are presentation data derived from a ProofRecord. They are
regenerable at any time and are NEVER a source of truth.

The certificate field set is fixed and exhaustive. The generation time of
an artifact is not a ledger fact and is kept outside the certificate.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


CERTIFICATE_FIELDS = (
    "txHash",
    "videoHash",
    "creator",
    "block",
    "timestamp",
    "network",
)


class Certificate(BaseModel):
    """
    Portable certificate of an authentication event.

    Serialized with ``by_alias=True`` to the client-facing shape
    ``{txHash, videoHash, creator, block, timestamp, network}``.
    """

    tx_hash: str | None = Field(..., alias="txHash")
    video_hash: str = Field(..., alias="videoHash")
    creator: str
    block: int | None
    timestamp: str
    network: str

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
    )


class VerifyArtifact(BaseModel):
    """
    Bundle of derived artifacts for one confirmed proof.
    """

    digest: str
    verify_url: str
    qr_data_url: str
    certificate: Certificate

    # Not a ledger field. Describes when this artifact was rendered.
    generated_at: datetime

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
