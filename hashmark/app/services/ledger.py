"""
Ledger Gateway.

Owns the single connection to the external proof registry and exposes the
logical operations the rest of the service needs: submit a proof (state
changing), read a proof (view call, zero cost), and list recent proofs
(event log scan).

HARD GUARANTEES:
- The connection is created lazily on first use and reused for the
  lifetime of the gateway. Configuration is never re-read.
- Raw ledger client results are coerced into pydantic schemas here and
  nowhere else.
- Every failure leaves this module as a LedgerError subclass.
- Read paths retry transport failures. Write paths never retry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD

from hashmark.app.core.config import Settings
from hashmark.app.core.errors import (
    DuplicateProof,
    LedgerError,
    NetworkUnavailable,
    ProofNotFound,
    Unauthorized,
    UnclassifiedLedgerError,
    translate_ledger_error,
)
from hashmark.app.schemas.proofs import (
    ZERO_ADDRESS,
    PendingProof,
    ProofRecord,
    RecentProofs,
    VerificationResult,
)
from hashmark.app.services.contract_abi import (
    AUTHENTICATED_EVENT,
    AUTHENTICATE_FUNCTION,
    REGISTRY_ABI,
    VERIFY_FUNCTION,
)
from hashmark.app.workflow.signing import SigningCapability

logger = logging.getLogger("hashmark.ledger")


MAX_RECENT_PROOFS = 100


def clamp_limit(limit: int) -> int:
    """Clamp a requested listing size to ``[1, MAX_RECENT_PROOFS]``."""
    return max(1, min(int(limit), MAX_RECENT_PROOFS))


# ----------------------------------------------------------------------
# Gateway interface
# ----------------------------------------------------------------------

class LedgerGateway(Protocol):
    async def broadcast_proof(
        self,
        digest: str,
        signer: Optional[SigningCapability],
    ) -> PendingProof:
        ...

    async def await_confirmation(self, pending: PendingProof) -> ProofRecord:
        ...

    async def submit_proof(
        self,
        digest: str,
        signer: Optional[SigningCapability],
    ) -> ProofRecord:
        ...

    async def read_proof(self, digest: str) -> VerificationResult:
        ...

    async def locate_proof(self, digest: str) -> Optional[ProofRecord]:
        ...

    async def list_recent_proofs(self, limit: int) -> RecentProofs:
        ...

    async def aclose(self) -> None:
        ...


# ----------------------------------------------------------------------
# Connection handle
# ----------------------------------------------------------------------

class LedgerConnection:
    """
    Network handle plus contract binding.

    Shared and read-mostly: the only local mutation is the one-time
    caching of the chain id.
    """

    def __init__(self, *, w3: Any, contract: Any) -> None:
        self.w3 = w3
        self.contract = contract
        self.chain_id: Optional[int] = None


Connector = Callable[[Settings], Awaitable[LedgerConnection]]


async def connect_web3(settings: Settings) -> LedgerConnection:
    """
    Default connector: web3.py over JSON-RPC/HTTP.

    Does not perform network I/O; the first request does.
    """
    if not settings.contract_address:
        raise UnclassifiedLedgerError(
            "Contract address is not configured.",
            detail="HASHMARK_CONTRACT_ADDRESS is unset",
        )

    w3 = AsyncWeb3(AsyncHTTPProvider(str(settings.rpc_url)))
    contract = w3.eth.contract(
        address=AsyncWeb3.to_checksum_address(settings.contract_address),
        abi=REGISTRY_ABI,
    )
    return LedgerConnection(w3=w3, contract=contract)


# ----------------------------------------------------------------------
# Coercion helpers (the only place raw ledger data is touched)
# ----------------------------------------------------------------------

def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value
    return AsyncWeb3.to_hex(value)


def _record_from_log(log: Any, network_id: Optional[int]) -> ProofRecord:
    try:
        args = log["args"]
        return ProofRecord(
            digest=str(args["videoHash"]),
            creator_address=str(args["creator"]),
            block_timestamp=int(args["timestamp"]),
            transaction_id=_to_hex(log["transactionHash"]),
            block_height=int(log["blockNumber"]),
            network_id=network_id,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise UnclassifiedLedgerError(
            "Unexpected event log shape.",
            detail=repr(exc),
        ) from exc


def _log_digest(log: Any) -> str:
    try:
        return str(log["args"]["videoHash"])
    except (KeyError, TypeError) as exc:
        raise UnclassifiedLedgerError(
            "Unexpected event log shape.",
            detail=repr(exc),
        ) from exc


def _log_position(log: Any) -> tuple[int, int]:
    try:
        return int(log["blockNumber"]), int(log.get("logIndex", 0) or 0)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise UnclassifiedLedgerError(
            "Unexpected event log shape.",
            detail=repr(exc),
        ) from exc


def _verification_from_call(
    digest: str,
    raw: Any,
    network_id: Optional[int],
) -> VerificationResult:
    try:
        creator, timestamp = raw
        creator = str(creator)
        timestamp = int(timestamp)
    except (TypeError, ValueError) as exc:
        raise UnclassifiedLedgerError(
            "Unexpected verifyVideo response shape.",
            detail=repr(raw),
        ) from exc

    # Default (zero) record means absent.
    if timestamp == 0 or creator.lower() == ZERO_ADDRESS:
        return VerificationResult.absent(digest)

    return VerificationResult(
        digest=digest,
        found=True,
        record=ProofRecord(
            digest=digest,
            creator_address=creator,
            block_timestamp=timestamp,
            network_id=network_id,
        ),
    )


# ----------------------------------------------------------------------
# web3.py implementation
# ----------------------------------------------------------------------

class Web3LedgerGateway:
    """
    Ledger Gateway backed by web3.py ``AsyncWeb3``.

    Safe for concurrent use by many workflows. Nonce allocation for
    outgoing transactions is serialized, and the lock is held only for
    build / sign / send, never while waiting for confirmation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        connector: Optional[Connector] = None,
    ) -> None:
        self._settings = settings
        self._connector = connector or connect_web3
        self._connection: Optional[LedgerConnection] = None
        self._connect_lock = asyncio.Lock()
        self._nonce_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _connection_handle(self) -> LedgerConnection:
        if self._connection is not None:
            return self._connection

        async with self._connect_lock:
            if self._connection is None:
                self._connection = await self._connector(self._settings)
                logger.info(
                    "ledger_connection_initialized",
                    extra={
                        "rpc_url": str(self._settings.rpc_url),
                        "contract_address": self._settings.contract_address,
                    },
                )

        return self._connection

    async def _chain_id(self, connection: LedgerConnection) -> int:
        if connection.chain_id is None:
            connection.chain_id = int(await connection.w3.eth.chain_id)
        return connection.chain_id

    async def aclose(self) -> None:
        if self._connection is None:
            return

        disconnect = getattr(self._connection.w3.provider, "disconnect", None)
        if disconnect is None:
            return

        try:
            await disconnect()
        except Exception:
            logger.warning("ledger_provider_shutdown_failed")

    def _read_retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._settings.read_retry_attempts),
            wait=wait_exponential(
                multiplier=0.25,
                max=self._settings.read_retry_max_wait_seconds,
            ),
            retry=retry_if_exception_type(NetworkUnavailable),
            reraise=True,
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def broadcast_proof(
        self,
        digest: str,
        signer: Optional[SigningCapability],
    ) -> PendingProof:
        """
        Build, sign and broadcast ``authenticateVideo(digest)``.

        Gas estimation runs against current chain state, so a digest that
        is already registered is rejected here with DuplicateProof before
        anything is broadcast.
        """
        if signer is None:
            raise Unauthorized("No signing capability is configured.")

        try:
            connection = await self._connection_handle()
            function = getattr(connection.contract.functions, AUTHENTICATE_FUNCTION)

            async with self._nonce_lock:
                chain_id = await self._chain_id(connection)
                nonce = await connection.w3.eth.get_transaction_count(
                    signer.address, "pending"
                )
                transaction = await function(digest).build_transaction(
                    {
                        "from": signer.address,
                        "nonce": nonce,
                        "chainId": chain_id,
                    }
                )
                raw_transaction = await signer.sign_transaction(transaction)
                tx_hash = await connection.w3.eth.send_raw_transaction(
                    raw_transaction
                )

        except LedgerError:
            raise
        except Exception as exc:
            raise translate_ledger_error(exc) from exc

        pending = PendingProof(
            digest=digest,
            transaction_id=_to_hex(tx_hash),
            creator_address=signer.address,
        )

        logger.info(
            "proof_transaction_broadcast",
            extra={
                "digest": digest,
                "tx_hash": pending.transaction_id,
                "signer_address": signer.address,
            },
        )
        return pending

    async def await_confirmation(self, pending: PendingProof) -> ProofRecord:
        """
        Wait until the transaction is included, then assemble the record.

        No internal timeout: confirmation latency is set by the ledger.
        Callers impose their own deadline.
        """
        try:
            connection = await self._connection_handle()
            receipt = await self._wait_for_receipt(connection, pending)
            network_id = await self._chain_id(connection)
        except LedgerError:
            raise
        except Exception as exc:
            raise translate_ledger_error(exc) from exc

        if int(receipt["status"]) != 1:
            # A reverted receipt usually means another submission won the race.
            existing = await self.read_proof(pending.digest)
            if existing.found:
                raise DuplicateProof(
                    "Digest is already authenticated on-chain.",
                    detail=f"reverted transaction {pending.transaction_id}",
                )
            raise UnclassifiedLedgerError(
                "Proof transaction reverted.",
                detail=pending.transaction_id,
            )

        event = getattr(connection.contract.events, AUTHENTICATED_EVENT)()
        logs = [
            log
            for log in event.process_receipt(receipt, errors=DISCARD)
            if _log_digest(log) == pending.digest
        ]

        if logs:
            record = _record_from_log(logs[0], network_id)
        else:
            # Read-after-write: the proof must be readable once confirmed.
            result = await self.read_proof(pending.digest)
            if not result.found:
                raise UnclassifiedLedgerError(
                    "Confirmed transaction produced no readable proof.",
                    detail=pending.transaction_id,
                )
            record = result.record.model_copy(
                update={
                    "transaction_id": pending.transaction_id,
                    "block_height": int(receipt["blockNumber"]),
                }
            )

        logger.info(
            "proof_confirmed",
            extra={
                "digest": record.digest,
                "tx_hash": record.transaction_id,
                "block_number": record.block_height,
            },
        )
        return record

    async def _wait_for_receipt(
        self,
        connection: LedgerConnection,
        pending: PendingProof,
    ) -> Any:
        while True:
            try:
                receipt = await connection.w3.eth.get_transaction_receipt(
                    pending.transaction_id
                )
            except TransactionNotFound:
                receipt = None

            if receipt is not None:
                return receipt

            await asyncio.sleep(self._settings.receipt_poll_seconds)

    async def submit_proof(
        self,
        digest: str,
        signer: Optional[SigningCapability],
    ) -> ProofRecord:
        pending = await self.broadcast_proof(digest, signer)
        return await self.await_confirmation(pending)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def read_proof(self, digest: str) -> VerificationResult:
        async for attempt in self._read_retrying():
            with attempt:
                return await self._read_proof_once(digest)
        raise AssertionError("unreachable")

    async def _read_proof_once(self, digest: str) -> VerificationResult:
        try:
            connection = await self._connection_handle()
            function = getattr(connection.contract.functions, VERIFY_FUNCTION)
            raw = await function(digest).call()
            network_id = await self._chain_id(connection)
        except LedgerError:
            raise
        except Exception as exc:
            error = translate_ledger_error(exc)
            if isinstance(error, ProofNotFound):
                return VerificationResult.absent(digest)
            self._log_read_failure("read_proof", error)
            raise error from exc

        return _verification_from_call(digest, raw, network_id)

    async def locate_proof(self, digest: str) -> Optional[ProofRecord]:
        """
        Find the full record (transaction, block) for a digest in the log.
        """
        async for attempt in self._read_retrying():
            with attempt:
                logs, _, network_id = await self._scan_logs()
                for log in sorted(logs, key=_log_position):
                    if _log_digest(log) == digest:
                        return _record_from_log(log, network_id)
                return None
        raise AssertionError("unreachable")

    async def list_recent_proofs(self, limit: int) -> RecentProofs:
        limit = clamp_limit(limit)

        async for attempt in self._read_retrying():
            with attempt:
                logs, block_number, network_id = await self._scan_logs()
                newest_first = sorted(logs, key=_log_position, reverse=True)
                return RecentProofs(
                    proofs=tuple(
                        _record_from_log(log, network_id)
                        for log in newest_first[:limit]
                    ),
                    total=len(logs),
                    block_number=block_number,
                )
        raise AssertionError("unreachable")

    async def _scan_logs(self) -> tuple[List[Any], int, int]:
        try:
            connection = await self._connection_handle()
            event = getattr(connection.contract.events, AUTHENTICATED_EVENT)()
            logs, block_number = await asyncio.gather(
                event.get_logs(from_block=self._settings.log_start_block),
                connection.w3.eth.block_number,
            )
            network_id = await self._chain_id(connection)
        except LedgerError:
            raise
        except Exception as exc:
            error = translate_ledger_error(exc)
            self._log_read_failure("scan_logs", error)
            raise error from exc

        return list(logs), int(block_number), network_id

    def _log_read_failure(self, operation: str, error: LedgerError) -> None:
        if isinstance(error, NetworkUnavailable):
            logger.warning(
                "ledger_unreachable",
                extra={"operation": operation, "detail": error.detail},
            )
        else:
            logger.error(
                "ledger_read_failed",
                extra={
                    "operation": operation,
                    "error_type": error.kind,
                    "detail": error.detail,
                },
            )
