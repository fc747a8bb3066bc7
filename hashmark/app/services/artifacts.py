"""
Proof Artifact Builder.

Derives presentation artifacts from a confirmed ProofRecord:
- the canonical verification URL
- a scannable QR code encoding that URL
- the certificate (JSON document or single-page PDF)

All artifacts are regenerable from the record. The only input that is
not a ledger fact is the generation time, which is kept structurally
separate from the certificate fields in every rendering.
"""

from __future__ import annotations

import base64
import io
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_H
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from hashmark.app.schemas.artifacts import Certificate, VerifyArtifact
from hashmark.app.schemas.proofs import ProofRecord
from hashmark.app.services.networks import network_name


QR_SIZE_PX = 512
QR_QUIET_ZONE = 4

# Characters encodeURIComponent leaves untouched besides alphanumerics.
_URI_COMPONENT_SAFE = "-_.!~*'()"


# ----------------------------------------------------------------------
# Verification URL / QR
# ----------------------------------------------------------------------

def build_verify_url(frontend_origin: str, digest: str) -> str:
    origin = frontend_origin.strip().rstrip("/")
    return f"{origin}/verify?hash={quote(digest, safe=_URI_COMPONENT_SAFE)}"


def _render_qr_image(url: str) -> Image.Image:
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_H,
        border=QR_QUIET_ZONE,
        box_size=10,
    )
    qr.add_data(url)
    qr.make(fit=True)

    image = qr.make_image(fill_color="black", back_color="white").get_image()
    return image.convert("RGB").resize(
        (QR_SIZE_PX, QR_SIZE_PX),
        Image.Resampling.NEAREST,
    )


def render_qr_data_url(url: str) -> str:
    """
    Encode ``url`` as a 512x512 PNG QR code and return it as a data URL.
    """
    buffer = io.BytesIO()
    _render_qr_image(url).save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


# ----------------------------------------------------------------------
# Certificate
# ----------------------------------------------------------------------

def format_block_timestamp(block_timestamp: int) -> str:
    """Unix seconds -> ``YYYY-MM-DD HH:MM:SS UTC``."""
    moment = datetime.fromtimestamp(block_timestamp, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC")


def build_certificate(
    record: ProofRecord,
    *,
    network_override: Optional[str] = None,
) -> Certificate:
    return Certificate(
        tx_hash=record.transaction_id,
        video_hash=f"sha256:{record.digest}",
        creator=record.creator_address,
        block=record.block_height,
        timestamp=format_block_timestamp(record.block_timestamp),
        network=network_name(record.network_id, network_override),
    )


def build_artifact(
    record: ProofRecord,
    frontend_origin: str,
    *,
    now: Optional[datetime] = None,
    network_override: Optional[str] = None,
) -> VerifyArtifact:
    """
    Build every derived artifact for ``record``.

    Deterministic given ``now``; the wall clock is consulted only for the
    generation time.
    """
    verify_url = build_verify_url(frontend_origin, record.digest)

    return VerifyArtifact(
        digest=record.digest,
        verify_url=verify_url,
        qr_data_url=render_qr_data_url(verify_url),
        certificate=build_certificate(
            record,
            network_override=network_override,
        ),
        generated_at=now or datetime.now(timezone.utc),
    )


def certificate_document(artifact: VerifyArtifact) -> Dict[str, Any]:
    """
    Downloadable JSON certificate.

    The six ledger fields sit at the top level; issuance metadata lives in
    its own object and is flagged as non-authoritative.
    """
    document = artifact.certificate.model_dump(by_alias=True)
    document["issuance"] = {
        "generatedAt": artifact.generated_at.isoformat(),
        "authoritative": False,
    }
    return document


def render_certificate_pdf(artifact: VerifyArtifact) -> bytes:
    """
    Single-page PDF certificate with the QR code embedded.
    """
    certificate = artifact.certificate
    buffer = io.BytesIO()

    pdf = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4

    pdf.setTitle(f"Hashmark certificate {certificate.video_hash}")

    pdf.setFont("Helvetica-Bold", 20)
    pdf.drawString(50, height - 80, "Certificate of Authenticity")

    pdf.setFont("Helvetica", 11)
    pdf.drawString(
        50,
        height - 100,
        "This content fingerprint is registered on a public ledger.",
    )

    rows = [
        ("Content hash", certificate.video_hash),
        ("Creator", certificate.creator),
        ("Transaction", certificate.tx_hash or "-"),
        ("Block", str(certificate.block) if certificate.block is not None else "-"),
        ("Registered at", certificate.timestamp),
        ("Network", certificate.network),
    ]

    y = height - 150
    for label, value in rows:
        pdf.setFont("Helvetica-Bold", 10)
        pdf.drawString(50, y, label)
        # Hashes do not fit on one line at normal size.
        pdf.setFont("Courier", 8 if len(value) > 60 else 10)
        pdf.drawString(150, y, value)
        y -= 22

    qr_size = 180
    pdf.drawImage(
        ImageReader(_render_qr_image(artifact.verify_url)),
        50,
        y - qr_size - 10,
        width=qr_size,
        height=qr_size,
    )
    pdf.setFont("Helvetica", 9)
    pdf.drawString(50, y - qr_size - 25, artifact.verify_url)

    # Issuance footer: visually separate and explicitly non-authoritative.
    pdf.setStrokeGray(0.7)
    pdf.line(50, 70, width - 50, 70)
    pdf.setFillGray(0.5)
    pdf.setFont("Helvetica-Oblique", 8)
    pdf.drawString(
        50,
        55,
        f"Generated {artifact.generated_at.isoformat()}. "
        "Generation time is not part of the on-chain record.",
    )

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
