# services/errors.py
from typing import Optional

from models.upload_models import TokenRejection


class MultipartError(Exception):
    """Base class for every error raised by the upload engine"""

    status_code = 400
    retryable = False


class InvalidPolicy(MultipartError):
    status_code = 400


class TransportFailure(MultipartError):
    status_code = 502
    retryable = True


class HashMismatch(MultipartError):
    status_code = 422
    retryable = True

    def __init__(self, part_number: int, expected: bytes, actual: bytes):
        super().__init__(
            f"Part {part_number} digest mismatch: expected {expected.hex()}, got {actual.hex()}"
        )
        self.part_number = part_number
        self.expected = expected
        self.actual = actual


class TokenInvalid(MultipartError):
    status_code = 403

    def __init__(self, reason: TokenRejection, part_number: Optional[int] = None):
        target = f" for part {part_number}" if part_number is not None else ""
        super().__init__(f"Presigned token rejected{target}: {reason.value}")
        self.reason = reason
        self.part_number = part_number


class IncompleteUpload(MultipartError):
    status_code = 409


class OutOfRange(MultipartError):
    status_code = 400


class PartFailed(MultipartError):
    status_code = 409

    def __init__(self, part_number: int, attempts: int, cause: Optional[Exception] = None):
        super().__init__(f"Part {part_number} failed after {attempts} attempt(s): {cause}")
        self.part_number = part_number
        self.attempts = attempts
        self.cause = cause


class PartInFlight(MultipartError):
    status_code = 409


class SessionClosed(MultipartError):
    status_code = 409


class SessionNotFound(MultipartError):
    status_code = 404
