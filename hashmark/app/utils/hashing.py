"""
Content fingerprinting.

This module computes the digests that are registered on, and looked up
against, the proof registry contract.

Current scope:
- SHA-256 over raw file bytes (one-shot or streamed)
- SHA-256 over a normalized raw string value
- Normalization of pre-computed digests supplied by clients

IMPORTANT DESIGN RULE:
- The contract compares digests byte-exactly. Any difference in input
  encoding is a silent mismatch, never an error.
- File bytes are hashed exactly as received. They are NEVER trimmed.
- Raw string values are trimmed of surrounding whitespace and encoded as
  UTF-8 before hashing. Blank values are rejected.
"""

import hashlib
from typing import AsyncIterable, Iterable, Tuple, Union


EMPTY_DIGEST = hashlib.sha256(b"").hexdigest()


class EmptyInputError(ValueError):
    """
    Raised when a raw value or digest is blank after normalization.
    """


def compute_digest(data: Union[bytes, bytearray, memoryview]) -> str:
    """
    Compute the canonical content digest of a byte sequence.

    Empty input is valid and yields ``EMPTY_DIGEST``.

    Returns:
        Lowercase hexadecimal SHA-256 digest (64 characters, no prefix).
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(
            "compute_digest expects bytes, "
            f"got {type(data).__name__}"
        )

    return hashlib.sha256(data).hexdigest()


def compute_stream_digest(chunks: Iterable[bytes]) -> Tuple[str, int]:
    """
    Digest a sequence of byte chunks without holding them all in memory.

    Returns:
        ``(digest, total_size_in_bytes)``. The digest equals
        ``compute_digest`` over the concatenated chunks.
    """
    hasher = hashlib.sha256()
    size = 0
    for chunk in chunks:
        hasher.update(chunk)
        size += len(chunk)
    return hasher.hexdigest(), size


async def compute_async_stream_digest(
    chunks: AsyncIterable[bytes],
) -> Tuple[str, int]:
    """
    Async counterpart of ``compute_stream_digest`` for upload bodies.
    """
    hasher = hashlib.sha256()
    size = 0
    async for chunk in chunks:
        hasher.update(chunk)
        size += len(chunk)
    return hasher.hexdigest(), size


def compute_raw_digest(value: str) -> str:
    """
    Digest a raw string value (e.g. an IPFS CID or custom identifier).

    The value is trimmed of surrounding whitespace and hashed as UTF-8.
    """
    if not isinstance(value, str):
        raise TypeError(
            "compute_raw_digest expects str, "
            f"got {type(value).__name__}"
        )

    normalized = value.strip()
    if not normalized:
        raise EmptyInputError("Raw value must be a non-empty string.")

    return compute_digest(normalized.encode("utf-8"))


def normalize_digest(value: str) -> str:
    """
    Normalize a digest supplied by a client.

    Only surrounding whitespace is removed. Case is preserved because the
    registry keys on the exact string.
    """
    if not isinstance(value, str):
        raise TypeError(
            "normalize_digest expects str, "
            f"got {type(value).__name__}"
        )

    normalized = value.strip()
    if not normalized:
        raise EmptyInputError("Digest must be a non-empty string.")

    return normalized
