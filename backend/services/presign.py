# services/presign.py
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Set
from urllib.parse import parse_qs, quote, urlencode, urlparse

from models.upload_models import PresignedToken, TokenRejection, ValidationResult, utcnow
from services.errors import InvalidPolicy, TokenInvalid

logger = logging.getLogger(__name__)

AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _epoch(value: datetime) -> int:
    return int(_as_utc(value).timestamp())


class PresignedUrlSimulator:
    """Issues and validates time-bounded tokens for single part uploads.

    Signatures are an HMAC over (part number, issued at, expires at) keyed by
    a session secret, so validation needs no table of issued tokens. With
    ``single_use`` enabled the signatures of consumed tokens are remembered
    and a second use is rejected.
    """

    def __init__(
        self,
        secret: Optional[bytes] = None,
        single_use: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._secret = secret or secrets.token_bytes(32)
        self.single_use = single_use
        self._clock = clock
        self._consumed: Set[str] = set()

    def sign(self, part_number: int, issued_at: datetime, expires_at: datetime) -> str:
        message = f"{part_number}\n{_epoch(issued_at)}\n{_epoch(expires_at)}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def issue(self, part_number: int, ttl_seconds: int, now: Optional[datetime] = None) -> PresignedToken:
        if part_number < 1:
            raise InvalidPolicy(f"part_number must be >= 1, got {part_number}")
        if ttl_seconds <= 0:
            raise InvalidPolicy(f"ttl_seconds must be > 0, got {ttl_seconds}")

        # whole seconds so the token survives its compact/URL forms
        issued_at = _as_utc(now or self._clock()).replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=ttl_seconds)
        token = PresignedToken(
            part_number=part_number,
            issued_at=issued_at,
            expires_at=expires_at,
            signature=self.sign(part_number, issued_at, expires_at),
        )
        logger.debug("Issued token for part %s valid until %s", part_number, expires_at.isoformat())
        return token

    def validate(
        self,
        token: PresignedToken,
        current_time: Optional[datetime] = None,
        part_number: Optional[int] = None,
    ) -> ValidationResult:
        current_time = _as_utc(current_time or self._clock())

        if current_time >= _as_utc(token.expires_at):
            return ValidationResult(valid=False, reason=TokenRejection.EXPIRED)

        expected = self.sign(token.part_number, token.issued_at, token.expires_at)
        if not hmac.compare_digest(expected, token.signature):
            return ValidationResult(valid=False, reason=TokenRejection.SIGNATURE_MISMATCH)

        if part_number is not None and part_number != token.part_number:
            return ValidationResult(valid=False, reason=TokenRejection.PART_MISMATCH)

        if self.single_use:
            if token.signature in self._consumed:
                return ValidationResult(valid=False, reason=TokenRejection.ALREADY_CONSUMED)
            self._consumed.add(token.signature)

        return ValidationResult(valid=True)


def to_compact(token: PresignedToken) -> str:
    return f"{token.part_number}.{_epoch(token.issued_at)}.{_epoch(token.expires_at)}.{token.signature}"


def from_compact(value: str) -> PresignedToken:
    try:
        part, issued, expires, signature = value.strip().split(".")
        return PresignedToken(
            part_number=int(part),
            issued_at=datetime.fromtimestamp(int(issued), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(expires), tz=timezone.utc),
            signature=signature,
        )
    except (ValueError, OverflowError, OSError):
        raise TokenInvalid(TokenRejection.SIGNATURE_MISMATCH)


def presigned_url(token: PresignedToken, base_url: str, object_key: str) -> str:
    """Render a token as an S3-style presigned upload_part URL"""
    ttl = _epoch(token.expires_at) - _epoch(token.issued_at)
    query = urlencode({
        "partNumber": token.part_number,
        "X-Amz-Date": _as_utc(token.issued_at).strftime(AMZ_DATE_FORMAT),
        "X-Amz-Expires": ttl,
        "X-Amz-Signature": token.signature,
    })
    return f"{base_url.rstrip('/')}/{quote(object_key)}?{query}"


def token_from_url(url: str) -> PresignedToken:
    params = parse_qs(urlparse(url).query)
    try:
        issued_at = datetime.strptime(params["X-Amz-Date"][0], AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
        return PresignedToken(
            part_number=int(params["partNumber"][0]),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=int(params["X-Amz-Expires"][0])),
            signature=params["X-Amz-Signature"][0],
        )
    except (KeyError, IndexError, ValueError, OverflowError, OSError):
        raise TokenInvalid(TokenRejection.SIGNATURE_MISMATCH)


def parse_token(value: str) -> PresignedToken:
    """Accept either the compact form or a presigned URL"""
    if value.startswith(("http://", "https://")):
        return token_from_url(value)
    return from_compact(value)
