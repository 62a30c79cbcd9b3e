import hashlib

import pytest

from models.upload_models import PartStatus
from services import part_hasher
from services.errors import IncompleteUpload
from services.etag import compute_etag, session_etag

CORPUS = [b"", b"a", b"test", b"hello", bytes(range(256)), b"\x00" * 1024]


def test_known_md5_digests():
    assert part_hasher.hexdigest(b"") == "d41d8cd98f00b204e9800998ecf8427e"
    assert part_hasher.hexdigest(b"test") == "098f6bcd4621d373cade4e832627b4f6"
    assert part_hasher.hexdigest(b"hello") == "5d41402abc4b2a76b9719d911017c592"


@pytest.mark.parametrize("data", CORPUS)
def test_digest_is_deterministic_and_fixed_length(data):
    assert part_hasher.digest(data) == part_hasher.digest(bytes(data))
    assert len(part_hasher.digest(data)) == part_hasher.DIGEST_SIZE


@pytest.mark.parametrize("data", [d for d in CORPUS if d])
def test_single_bit_flip_changes_digest(data):
    original = part_hasher.digest(data)
    for index in range(min(len(data), 32)):
        for bit in range(8):
            flipped = bytearray(data)
            flipped[index] ^= 1 << bit
            assert part_hasher.digest(bytes(flipped)) != original


def test_payload_hash_is_sha256():
    assert part_hasher.payload_hash(b"hello") == hashlib.sha256(b"hello").hexdigest()


def test_single_part_etag_is_composite_not_plain_digest():
    d = part_hasher.digest(b"hello")
    etag = compute_etag([d])

    assert etag.value == hashlib.md5(d).hexdigest() + "-1"
    assert etag.value != d.hex()
    assert etag.value != d.hex() + "-1"
    assert etag.part_count == 1


def test_multi_part_etag_concatenates_raw_digests():
    digests = [part_hasher.digest(chunk) for chunk in (b"part one", b"part two", b"part three")]
    expected = hashlib.md5(b"".join(digests)).hexdigest() + "-3"

    assert compute_etag(digests).value == expected
    assert str(compute_etag(digests)) == expected


def test_etag_depends_on_part_order():
    a, b = part_hasher.digest(b"a"), part_hasher.digest(b"b")
    assert compute_etag([a, b]) != compute_etag([b, a])


def test_zero_part_etag():
    assert compute_etag([]).value == "d41d8cd98f00b204e9800998ecf8427e-0"


def test_session_etag_requires_every_part_uploaded(make_coordinator, payload):
    coordinator = make_coordinator(payload)
    with pytest.raises(IncompleteUpload):
        session_etag(coordinator.session)


async def test_session_etag_matches_ordered_part_digests(completed_coordinator, payload):
    digests = [part_hasher.digest(payload[i:i + 10]) for i in (0, 10, 20)]
    assert session_etag(completed_coordinator.session) == compute_etag(digests)
    assert all(p.status == PartStatus.UPLOADED for p in completed_coordinator.session.parts.values())
