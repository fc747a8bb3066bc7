import asyncio
import logging
import re
import time
from typing import Annotated, Any, AsyncIterator, Dict, Literal, Optional, Set

import httpx
from fastapi import (
    APIRouter,
    Body,
    Depends,
    File,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import ORJSONResponse, Response, StreamingResponse

from hashmark.app.core.config import Settings
from hashmark.app.core.errors import LedgerError, NetworkUnavailable
from hashmark.app.events import MemoryQueueEventEmitter
from hashmark.app.schemas.proofs import ProofRecord
from hashmark.app.services.artifacts import (
    build_artifact,
    build_verify_url,
    certificate_document,
    render_certificate_pdf,
    render_qr_data_url,
)
from hashmark.app.services.ledger import LedgerGateway, clamp_limit
from hashmark.app.utils.hashing import (
    EmptyInputError,
    compute_async_stream_digest,
    compute_raw_digest,
    normalize_digest,
)
from hashmark.app.workflow.authentication import (
    AuthenticationWorkflow,
    FailureReason,
)
from hashmark.app.workflow.signing import (
    SigningCapability,
    StaticSigningCapability,
)
from hashmark.app.workflow.verification import (
    VerificationStatus,
    VerificationWorkflow,
)

logger = logging.getLogger("hashmark.api")

router = APIRouter(tags=["Hashmark"])


UPLOAD_CHUNK_SIZE = 1024 * 1024
ALLOWED_UPLOAD_TYPES = re.compile(
    r"video/|audio/|application/octet-stream|image/"
)
ETH_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")

# anvil_setBalance amount: 10 ETH in wei
FAUCET_BALANCE_HEX = "0x8AC7230489E80000"


# =============================================================================
# Dependency providers
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    if settings is None:
        raise RuntimeError("settings not initialized")
    return settings


def get_ledger_gateway(request: Request) -> LedgerGateway:
    return request.app.state.ledger_gateway


def get_server_signer(request: Request) -> Optional[SigningCapability]:
    return request.app.state.server_signer


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
GatewayDep = Annotated[LedgerGateway, Depends(get_ledger_gateway)]
SignerDep = Annotated[Optional[SigningCapability], Depends(get_server_signer)]
JsonBody = Annotated[Optional[Dict[str, Any]], Body()]


# =============================================================================
# Helpers
# =============================================================================

def error_response(status_code: int, message: str, **extra: Any) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status_code,
        content={"error": message, **extra},
    )


def _required_string(payload: Optional[Dict[str, Any]], field: str) -> str:
    value = (payload or {}).get(field)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Body must contain a non-empty '{field}' string.",
        )
    return value.strip()


def _path_digest(value: str) -> str:
    try:
        return normalize_digest(value)
    except EmptyInputError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Hash parameter is required.",
        )


def _proof_item(record: ProofRecord) -> Dict[str, Any]:
    return {
        "videoHash": record.digest,
        "creator": record.creator_address,
        "timestamp": record.block_timestamp,
        "blockNumber": record.block_height,
        "txHash": record.transaction_id,
    }


def _parse_limit(raw: Optional[str], default: int) -> int:
    """
    Lenient limit parsing: missing, zero or non-numeric means default.
    """
    try:
        requested = int(raw) if raw is not None else 0
    except ValueError:
        requested = 0
    return clamp_limit(requested or default)


class UploadTooLarge(Exception):
    pass


async def _bounded_chunks(
    file: UploadFile,
    max_bytes: int,
) -> AsyncIterator[bytes]:
    total = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            return
        total += len(chunk)
        if total > max_bytes:
            raise UploadTooLarge()
        yield chunk


# =============================================================================
# Monitoring
# =============================================================================

@router.get("/health", summary="Liveness probe")
async def health() -> Dict[str, Any]:
    """
    Does NOT contact the ledger.
    """
    return {"ok": True, "timestamp": int(time.time() * 1000)}


@router.get("/info", summary="Contract and server wallet configuration")
async def info(settings: SettingsDep, signer: SignerDep) -> Dict[str, Any]:
    return {
        "contractAddress": settings.contract_address,
        "rpcUrl": str(settings.rpc_url),
        "serverWallet": signer.address if signer is not None else None,
        "serverSigning": signer is not None,
    }


# =============================================================================
# Fingerprinting
# =============================================================================

@router.post(
    "/hash/file",
    summary="SHA-256 of an uploaded file",
    responses={
        400: {"description": "No file uploaded"},
        413: {"description": "Payload too large"},
        415: {"description": "Unsupported media type"},
    },
)
async def hash_file(
    settings: SettingsDep,
    file: Annotated[
        Optional[UploadFile],
        File(description="Video, audio, image or generic binary"),
    ] = None,
) -> Dict[str, Any]:
    """
    Bytes are hashed exactly as received, in bounded chunks.
    """
    if file is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No file uploaded. Use multipart field name 'file'.",
        )

    content_type = file.content_type or ""
    if not ALLOWED_UPLOAD_TYPES.search(content_type):
        logger.warning(
            "invalid_media_type",
            extra={"content_type": content_type},
        )
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported MIME type: {content_type}",
        )

    max_bytes = settings.max_upload_size_mb * 1024 * 1024

    try:
        digest, size = await compute_async_stream_digest(
            _bounded_chunks(file, max_bytes)
        )
    except UploadTooLarge:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum is {settings.max_upload_size_mb} MB.",
        )
    finally:
        await file.close()

    logger.info(
        "file_hashed",
        extra={"digest": digest, "size": size, "content_type": content_type},
    )

    return {
        "hash": digest,
        "filename": file.filename,
        "size": size,
        "mimetype": content_type,
    }


@router.post("/hash/raw", summary="SHA-256 of a trimmed UTF-8 string")
async def hash_raw(payload: JsonBody = None) -> Dict[str, Any]:
    value = _required_string(payload, "value")
    return {"hash": compute_raw_digest(value)}


# =============================================================================
# Authentication (server wallet)
# =============================================================================

@router.post(
    "/authenticate",
    summary="Register a digest on-chain with the server wallet",
    responses={
        409: {"description": "Digest already authenticated"},
        503: {"description": "Server wallet not configured or ledger offline"},
        504: {"description": "Broadcast but not confirmed in time"},
    },
)
async def authenticate(
    settings: SettingsDep,
    gateway: GatewayDep,
    signer: SignerDep,
    payload: JsonBody = None,
):
    digest = _required_string(payload, "hash")

    if signer is None:
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Server wallet not configured (private key missing). "
            "Sign the transaction from your client wallet.",
            clientSigning=True,
            contractAddress=settings.contract_address or "",
        )

    workflow = AuthenticationWorkflow(gateway, StaticSigningCapability(signer))
    outcome = await workflow.run(
        digest=digest,
        confirmation_timeout=settings.confirmation_timeout_seconds,
        wait_for_capability=False,
    )

    if outcome.confirmed:
        record = outcome.record
        return {
            "txHash": record.transaction_id,
            "blockNumber": record.block_height,
            "creator": record.creator_address,
            "timestamp": record.block_timestamp,
            "hash": record.digest,
        }

    reason = outcome.failure_reason

    if reason == FailureReason.ALREADY_AUTHENTICATED:
        return error_response(
            status.HTTP_409_CONFLICT,
            "Hash already authenticated on-chain.",
            hash=digest,
        )

    if reason == FailureReason.UNAUTHORIZED:
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Server wallet not configured.",
            clientSigning=True,
            contractAddress=settings.contract_address or "",
        )

    if reason == FailureReason.CONFIRMATION_PENDING:
        return error_response(
            status.HTTP_504_GATEWAY_TIMEOUT,
            "Transaction broadcast but not yet confirmed.",
            txHash=outcome.transaction_id,
            hash=digest,
            pending=True,
        )

    if reason == FailureReason.NETWORK_UNAVAILABLE:
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Ledger node is unreachable.",
            offline=True,
            txHash=outcome.transaction_id,
            hash=digest,
        )

    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Transaction failed.",
        txHash=outcome.transaction_id,
        hash=digest,
    )


# In-flight /authenticate/stream workflows, held until they finish.
_streamed_workflows: Set["asyncio.Task[None]"] = set()


@router.post(
    "/authenticate/stream",
    summary="Register a digest and stream workflow progress as SSE",
    responses={
        200: {
            "content": {"text/event-stream": {}},
            "description": "Workflow events, ending with confirmed or failed",
        },
        503: {"description": "Server wallet not configured"},
    },
)
async def authenticate_stream(
    settings: SettingsDep,
    gateway: GatewayDep,
    signer: SignerDep,
    payload: JsonBody = None,
):
    """
    Same registration as /authenticate, observed through Server-Sent
    Events. The stream is observational only: the broadcast transaction
    is not recalled when the client goes away.
    """
    digest = _required_string(payload, "hash")

    if signer is None:
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Server wallet not configured (private key missing). "
            "Sign the transaction from your client wallet.",
            clientSigning=True,
            contractAddress=settings.contract_address or "",
        )

    emitter = MemoryQueueEventEmitter()
    workflow = AuthenticationWorkflow(
        gateway,
        StaticSigningCapability(signer),
        emitter=emitter,
    )

    # --------------------------------------------------------------
    # Background workflow execution
    # --------------------------------------------------------------
    async def run_workflow() -> None:
        try:
            await workflow.run(
                digest=digest,
                confirmation_timeout=settings.confirmation_timeout_seconds,
                wait_for_capability=False,
            )
        except Exception:
            logger.exception(
                "streamed_workflow_crashed",
                extra={"workflow_id": workflow.workflow_id, "digest": digest},
            )
        finally:
            # Ends the stream even if no terminal event was emitted.
            await emitter.close()

    task = asyncio.create_task(run_workflow())
    _streamed_workflows.add(task)
    task.add_done_callback(_streamed_workflows.discard)

    # --------------------------------------------------------------
    # SSE event stream
    # --------------------------------------------------------------
    async def event_stream() -> AsyncIterator[str]:
        async for event in emitter.stream():
            yield event.to_sse_payload()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# =============================================================================
# Verification
# =============================================================================

@router.get("/verify/{digest}", summary="Read the on-chain proof for a digest")
async def verify(digest: str, gateway: GatewayDep):
    digest = _path_digest(digest)

    outcome = await VerificationWorkflow(gateway).verify_digest(digest)

    if outcome.status == VerificationStatus.FOUND:
        record = outcome.result.record
        return {
            "authenticated": True,
            "creator": record.creator_address,
            "timestamp": record.block_timestamp,
            "hash": digest,
        }

    if outcome.status == VerificationStatus.NOT_FOUND:
        return {"authenticated": False, "hash": digest}

    if outcome.error == FailureReason.NETWORK_UNAVAILABLE:
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Ledger node is unreachable.",
            offline=True,
            hash=digest,
        )

    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Verification failed.",
        hash=digest,
    )


# =============================================================================
# Listings
# =============================================================================

@router.get("/stats", summary="Total proofs and the most recent ones")
async def stats(settings: SettingsDep, gateway: GatewayDep):
    """
    Degrades to zeros with ``offline: true`` when the node is unreachable.
    """
    try:
        recent = await gateway.list_recent_proofs(settings.stats_recent_count)
    except NetworkUnavailable:
        return {
            "totalProofs": 0,
            "recentProofs": [],
            "blockNumber": 0,
            "offline": True,
        }
    except LedgerError as exc:
        logger.exception("stats_failed", extra={"error_type": exc.kind})
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to load stats.",
        )

    return {
        "totalProofs": recent.total,
        "recentProofs": [_proof_item(record) for record in recent.proofs],
        "blockNumber": recent.block_number,
    }


@router.get("/recent", summary="Recent proofs, newest first")
async def recent(
    settings: SettingsDep,
    gateway: GatewayDep,
    limit: Annotated[Optional[str], Query()] = None,
):
    size = _parse_limit(limit, settings.recent_default_limit)

    try:
        listing = await gateway.list_recent_proofs(size)
    except NetworkUnavailable:
        return {"proofs": [], "total": 0, "blockNumber": 0, "offline": True}
    except LedgerError as exc:
        logger.exception("recent_failed", extra={"error_type": exc.kind})
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to load recent proofs.",
        )

    return {
        "proofs": [_proof_item(record) for record in listing.proofs],
        "total": listing.total,
        "blockNumber": listing.block_number,
    }


# =============================================================================
# Artifacts
# =============================================================================

@router.get("/qr/{digest}", summary="QR code for the verification URL")
async def qr_code(digest: str, settings: SettingsDep) -> Dict[str, Any]:
    digest = _path_digest(digest)

    verify_url = build_verify_url(settings.frontend_url, digest)
    return {
        "qrDataUrl": render_qr_data_url(verify_url),
        "verifyUrl": verify_url,
        "hash": digest,
    }


@router.get(
    "/certificate/{digest}",
    summary="Download the certificate of a registered digest",
    responses={
        200: {
            "content": {"application/json": {}, "application/pdf": {}},
            "description": "Certificate document",
        },
        404: {"description": "Digest not registered"},
        503: {"description": "Ledger offline"},
    },
)
async def certificate(
    digest: str,
    settings: SettingsDep,
    gateway: GatewayDep,
    fmt: Annotated[Literal["json", "pdf"], Query(alias="format")] = "json",
):
    digest = _path_digest(digest)

    try:
        record = await gateway.locate_proof(digest)
    except NetworkUnavailable:
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Ledger node is unreachable.",
            offline=True,
            hash=digest,
        )
    except LedgerError as exc:
        logger.exception(
            "certificate_lookup_failed",
            extra={"digest": digest, "error_type": exc.kind},
        )
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Certificate lookup failed.",
            hash=digest,
        )

    if record is None:
        return error_response(
            status.HTTP_404_NOT_FOUND,
            "No proof found for this hash.",
            hash=digest,
        )

    artifact = build_artifact(
        record,
        settings.frontend_url,
        network_override=settings.network_name,
    )
    filename = f"hashmark-certificate-{digest[:12]}"

    if fmt == "pdf":
        return Response(
            content=render_certificate_pdf(artifact),
            media_type="application/pdf",
            headers={
                "Content-Disposition": f'attachment; filename="{filename}.pdf"',
            },
        )

    return ORJSONResponse(
        content=certificate_document(artifact),
        headers={
            "Content-Disposition": f'attachment; filename="{filename}.json"',
        },
    )


# =============================================================================
# Development faucet
# =============================================================================

@router.post("/faucet", summary="Fund an address on a local Anvil node")
async def faucet(
    request: Request,
    settings: SettingsDep,
    payload: JsonBody = None,
):
    if not settings.enable_faucet:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Faucet is disabled.",
        )

    address = (payload or {}).get("address")
    if not isinstance(address, str) or not ETH_ADDRESS.match(address):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Valid Ethereum address required.",
        )

    http_client = get_http_client(request)

    try:
        response = await http_client.post(
            str(settings.rpc_url),
            json={
                "jsonrpc": "2.0",
                "method": "anvil_setBalance",
                "params": [address, FAUCET_BALANCE_HEX],
                "id": 1,
            },
        )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("faucet_failed", extra={"detail": str(exc)})
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Faucet failed. Is Anvil running?",
            detail=str(exc),
        )

    error = data.get("error") if isinstance(data, dict) else None
    if error:
        message = error.get("message") if isinstance(error, dict) else None
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            message or "Faucet failed.",
        )

    logger.info("faucet_funded", extra={"address": address})
    return {"success": True, "address": address, "funded": "10 ETH"}
