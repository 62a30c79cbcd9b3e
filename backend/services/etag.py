# services/etag.py
import hashlib
from typing import Sequence

from models.upload_models import ETag, PartStatus, UploadSession
from services.errors import IncompleteUpload


def compute_etag(ordered_digests: Sequence[bytes]) -> ETag:
    """Composite multipart ETag: md5 over the concatenated raw part digests,
    hex encoded and suffixed with ``-<part count>``.

    The rule applies to single-part uploads too, so the result never equals
    the plain digest of the payload. A zero-part object gets the md5 of the
    empty concatenation suffixed ``-0``.
    """
    combined = hashlib.md5(b"".join(ordered_digests)).hexdigest()
    return ETag(value=f"{combined}-{len(ordered_digests)}", part_count=len(ordered_digests))


def session_etag(session: UploadSession) -> ETag:
    missing = [
        p.part_number for p in session.ordered_parts()
        if p.status != PartStatus.UPLOADED or p.digest is None
    ]
    if missing:
        raise IncompleteUpload(f"Parts not uploaded yet: {missing}")
    return compute_etag([p.digest for p in session.ordered_parts()])
