# services/verifier.py
import logging
from typing import Optional

from models.upload_models import PartStatus, ReassemblyResult, UploadSession, VerificationResult
from services import part_hasher
from services.byte_source import ByteSource
from services.errors import IncompleteUpload
from services.etag import compute_etag

logger = logging.getLogger(__name__)


def verify(session: UploadSession, expected_etag: Optional[str] = None) -> VerificationResult:
    """Recompute part digests from the received buffers and compare them to
    the digests recorded at upload time. Read-only.

    Parts that never reached uploaded are reported as missing; uploaded parts
    whose buffer is gone or no longer hashes to the recorded digest are
    reported as mismatched. The ETag comparison runs only when nothing is
    missing.
    """
    mismatched = []
    missing = []
    for state in session.ordered_parts():
        if state.status != PartStatus.UPLOADED or state.digest is None:
            missing.append(state.part_number)
            continue
        buffer = session.received.get(state.part_number)
        if buffer is None or part_hasher.digest(bytes(buffer)) != state.digest:
            mismatched.append(state.part_number)

    etag_match = None
    computed = None
    if expected_etag is not None and not missing:
        computed = compute_etag([p.digest for p in session.ordered_parts()]).value
        etag_match = computed == expected_etag.strip('"')

    ok = not mismatched and not missing and etag_match is not False
    if not ok:
        logger.info(
            "Session %s failed verification: mismatched=%s missing=%s etag_match=%s",
            session.session_id, mismatched, missing, etag_match,
        )
    return VerificationResult(
        ok=ok,
        mismatched_parts=mismatched,
        missing_parts=missing,
        etag_match=etag_match,
        computed_etag=computed,
    )


def reassemble(session: UploadSession) -> bytes:
    missing = [n for n in sorted(session.parts)
               if session.parts[n].status != PartStatus.UPLOADED or n not in session.received]
    if missing:
        raise IncompleteUpload(f"Cannot reassemble, parts missing: {missing}")
    return b"".join(bytes(session.received[n]) for n in sorted(session.parts))


def verify_reassembly(session: UploadSession, source: ByteSource) -> ReassemblyResult:
    """Compare the original payload hash with the hash of the merged parts"""
    merged = reassemble(session)
    original_hash = part_hasher.payload_hash(source.getvalue())
    reconstructed_hash = part_hasher.payload_hash(merged)
    return ReassemblyResult(
        original_hash=original_hash,
        reconstructed_hash=reconstructed_hash,
        match=original_hash == reconstructed_hash,
        size=len(merged),
    )
