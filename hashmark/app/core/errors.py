"""
Ledger error taxonomy.

Every failure that crosses the Ledger Gateway boundary is expressed as one
of the LedgerError subclasses below. Callers branch on the type (or on
``kind``) and never on message text.

The external registry contract offers no structured error codes, only
revert reason strings. Matching those strings is fragile, so it happens in
exactly one place: ``translate_ledger_error``. A change in contract wording
is a change to the constants in this module and nowhere else.
"""

from __future__ import annotations

import asyncio
from typing import Iterator, Optional

import aiohttp
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
)


# ---------------------------------------------------------------------------
# Contract wording (the only string-matching rules in the codebase)
# ---------------------------------------------------------------------------

DUPLICATE_REVERT_REASON = "Already authenticated"
ABSENT_REVERT_REASON = "Not authenticated"

# EIP-1193 "User Rejected Request"
USER_REJECTED_CODE = 4001
USER_REJECTED_MARKERS = ("user rejected", "user denied")

# HTTP status at or above which the JSON-RPC endpoint counts as down
NODE_UNAVAILABLE_STATUS = 500


# ---------------------------------------------------------------------------
# Error types
# ---------------------------------------------------------------------------

class LedgerError(RuntimeError):
    """
    Base class of all classified ledger failures.
    """

    kind = "ledger_error"

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail


class DuplicateProof(LedgerError):
    """
    The digest is already registered. Expected and user-recoverable.
    """

    kind = "duplicate_proof"


class ProofNotFound(LedgerError):
    """
    The contract reported absence through a revert. Read paths turn this
    into ``found=False``; it never reaches HTTP callers as an error.
    """

    kind = "proof_not_found"


class Unauthorized(LedgerError):
    """
    No signing capability is configured for a state-changing call.
    """

    kind = "unauthorized"


class NetworkUnavailable(LedgerError):
    """
    The ledger transport could not be reached or timed out. Retryable.
    """

    kind = "network_unavailable"


class SigningRejected(LedgerError):
    """
    The signer declined the transaction.
    """

    kind = "signing_rejected"


class UnclassifiedLedgerError(LedgerError):
    """
    Anything the translation rules do not recognise.
    """

    kind = "unclassified"


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------

def _error_texts(exc: BaseException) -> Iterator[str]:
    yield str(exc)

    for attr in ("message", "reason"):
        value = getattr(exc, attr, None)
        if isinstance(value, str):
            yield value

    for arg in exc.args:
        if isinstance(arg, str):
            yield arg
        elif isinstance(arg, dict):
            message = arg.get("message")
            if isinstance(message, str):
                yield message


def _error_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code

    for arg in exc.args:
        if isinstance(arg, dict) and isinstance(arg.get("code"), int):
            return arg["code"]

    return None


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def _is_transport_failure(exc: BaseException) -> bool:
    if isinstance(exc, TimeExhausted):
        # Confirmation wait expired; the transport itself may be fine.
        return False

    for cause in _causes(exc):
        if isinstance(
            cause,
            (
                ProviderConnectionError,
                aiohttp.ClientConnectionError,
                asyncio.TimeoutError,
                ConnectionError,
                TimeoutError,
                OSError,
            ),
        ):
            return True

        # A proxy or load balancer in front of a down node answers 5xx.
        if (
            isinstance(cause, aiohttp.ClientResponseError)
            and cause.status >= NODE_UNAVAILABLE_STATUS
        ):
            return True

    return False


def translate_ledger_error(exc: BaseException) -> LedgerError:
    """
    Map a raw exception from the ledger client (or a signer) onto the
    ledger error taxonomy.

    Rule order matters: revert reasons are checked before transport
    classification because a node can deliver a revert inside an
    otherwise transport-shaped exception.
    """
    if isinstance(exc, LedgerError):
        return exc

    texts = list(_error_texts(exc))
    detail = texts[0] if texts else type(exc).__name__

    if any(DUPLICATE_REVERT_REASON in text for text in texts):
        return DuplicateProof(
            "Digest is already authenticated on-chain.",
            detail=detail,
        )

    if any(ABSENT_REVERT_REASON in text for text in texts):
        return ProofNotFound(
            "Digest is not authenticated on-chain.",
            detail=detail,
        )

    lowered = [text.lower() for text in texts]
    if _error_code(exc) == USER_REJECTED_CODE or any(
        marker in text for text in lowered for marker in USER_REJECTED_MARKERS
    ):
        return SigningRejected(
            "The signer declined the transaction.",
            detail=detail,
        )

    if _is_transport_failure(exc):
        return NetworkUnavailable(
            "Ledger node is unreachable.",
            detail=detail,
        )

    if isinstance(exc, ContractLogicError):
        return UnclassifiedLedgerError(
            "Contract call reverted.",
            detail=detail,
        )

    return UnclassifiedLedgerError(
        "Ledger call failed.",
        detail=detail,
    )
