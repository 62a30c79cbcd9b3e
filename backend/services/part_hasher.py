# services/part_hasher.py
import hashlib

# MD5 keeps part digests compatible with the S3 multipart ETag convention
DIGEST_SIZE = 16


def digest(part_bytes: bytes) -> bytes:
    """Raw 16-byte MD5 digest of a part."""
    return hashlib.md5(part_bytes).digest()


def hexdigest(part_bytes: bytes) -> str:
    return hashlib.md5(part_bytes).hexdigest()


def payload_hash(data: bytes) -> str:
    """SHA-256 of a whole payload, used to compare original and reassembled bytes."""
    return hashlib.sha256(data).hexdigest()
