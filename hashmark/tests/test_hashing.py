import hashlib

import pytest

from hashmark.app.utils.hashing import (
    EMPTY_DIGEST,
    EmptyInputError,
    compute_async_stream_digest,
    compute_digest,
    compute_raw_digest,
    compute_stream_digest,
    normalize_digest,
)

pytestmark = pytest.mark.anyio


def test_empty_input_yields_well_known_digest():
    assert compute_digest(b"") == EMPTY_DIGEST
    assert EMPTY_DIGEST == (
        "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )


def test_digest_is_deterministic_lowercase_hex():
    data = b"hashmark video bytes"

    first = compute_digest(data)

    assert first == compute_digest(data)
    assert first == hashlib.sha256(data).hexdigest()
    assert len(first) == 64
    assert first == first.lower()


@pytest.mark.parametrize("bit", [0, 7, 8 * 15 + 3, 8 * 31 + 7])
def test_single_bit_flip_changes_digest(bit):
    data = bytearray(range(32))
    flipped = bytearray(data)
    flipped[bit // 8] ^= 1 << (bit % 8)

    original = compute_digest(bytes(data))
    changed = compute_digest(bytes(flipped))

    assert original != changed
    # Avalanche: a large share of hex positions differ, not just one.
    differing = sum(a != b for a, b in zip(original, changed))
    assert differing > 32


def test_file_bytes_are_never_trimmed():
    assert compute_digest(b"  clip  ") != compute_digest(b"clip")


def test_compute_digest_rejects_text():
    with pytest.raises(TypeError):
        compute_digest("not bytes")


def test_stream_digest_matches_one_shot():
    chunks = [b"abc", b"", b"def" * 1000, b"\x00"]

    digest, size = compute_stream_digest(chunks)

    assert digest == compute_digest(b"".join(chunks))
    assert size == sum(len(c) for c in chunks)


async def test_async_stream_digest_matches_one_shot():
    chunks = [b"first", b"second", b"third"]

    async def produce():
        for chunk in chunks:
            yield chunk

    digest, size = await compute_async_stream_digest(produce())

    assert digest == compute_digest(b"firstsecondthird")
    assert size == 16


def test_raw_value_is_trimmed_and_utf8_encoded():
    expected = hashlib.sha256("bafy-cid-é".encode("utf-8")).hexdigest()

    assert compute_raw_digest("  bafy-cid-é\n") == expected
    assert compute_raw_digest("bafy-cid-é") == expected


@pytest.mark.parametrize("value", ["", "   ", "\t\n "])
def test_blank_raw_value_is_rejected(value):
    with pytest.raises(EmptyInputError):
        compute_raw_digest(value)


def test_normalize_digest_trims_but_preserves_case():
    assert normalize_digest("  ABCdef \n") == "ABCdef"

    with pytest.raises(EmptyInputError):
        normalize_digest("   ")
