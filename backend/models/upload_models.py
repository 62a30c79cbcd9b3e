# models/upload_models.py
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum

class PartStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"

class SessionStatus(str, Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABORTED = "aborted"

class TokenRejection(str, Enum):
    EXPIRED = "expired"
    SIGNATURE_MISMATCH = "signature_mismatch"
    PART_MISMATCH = "part_mismatch"
    ALREADY_CONSUMED = "already_consumed"

class Endianness(str, Enum):
    BIG = "big"
    LITTLE = "little"

class ByteKind(str, Enum):
    UINT8 = "uint8"
    INT8 = "int8"
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    UINT64 = "uint64"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    UTF8_CHAR = "utf8-char"
    ASCII = "ascii"

TERMINAL_SESSION_STATUSES = (SessionStatus.COMPLETED, SessionStatus.ABORTED)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class PartSizePolicy(BaseModel):
    fixed_part_size: int = 5 * 1024 * 1024  # 5MiB default
    min_part_size: int = 1
    max_parts: int = 10000

class PartSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    part_number: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        """Exclusive end offset"""
        return self.offset + self.length

class PartState(BaseModel):
    part_number: int
    offset: int
    length: int
    status: PartStatus = PartStatus.PENDING
    attempt: int = 0
    digest: Optional[bytes] = None
    received_bytes: int = 0
    terminal: bool = False
    last_error: Optional[str] = None

    @field_validator("digest", mode="before")
    @classmethod
    def _digest_from_hex(cls, value: Any) -> Any:
        if isinstance(value, str):
            return bytes.fromhex(value)
        return value

    @field_serializer("digest")
    def _digest_to_hex(self, value: Optional[bytes]) -> Optional[str]:
        return value.hex() if value is not None else None

class ETag(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    part_count: int

    def __str__(self) -> str:
        return self.value

class UploadSession(BaseModel):
    # received buffers are mutable bytearrays and never leave the process
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    status: SessionStatus = SessionStatus.INITIATED
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    part_size_policy: PartSizePolicy
    payload_size: int
    parts: Dict[int, PartState] = {}
    received: Dict[int, bytearray] = Field(default_factory=dict, exclude=True)
    etag: Optional[ETag] = None
    error_message: Optional[str] = None
    resumed_from: Optional[str] = None

    @property
    def part_count(self) -> int:
        return len(self.parts)

    @property
    def uploaded_bytes(self) -> int:
        return sum(p.received_bytes for p in self.parts.values() if p.status == PartStatus.UPLOADED)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def ordered_parts(self) -> List[PartState]:
        return [self.parts[n] for n in sorted(self.parts)]

    def missing_parts(self) -> List[int]:
        return [n for n in sorted(self.parts) if self.parts[n].status != PartStatus.UPLOADED]

    def touch(self):
        self.updated_at = utcnow()

class PresignedToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    part_number: int
    issued_at: datetime
    expires_at: datetime
    signature: str

class ValidationResult(BaseModel):
    valid: bool
    reason: Optional[TokenRejection] = None

class VerificationResult(BaseModel):
    ok: bool
    mismatched_parts: List[int] = []
    missing_parts: List[int] = []
    etag_match: Optional[bool] = None
    computed_etag: Optional[str] = None

class ReassemblyResult(BaseModel):
    original_hash: str
    reconstructed_hash: str
    match: bool
    size: int

class InspectionRow(BaseModel):
    offset: int
    kind: ByteKind
    raw_bytes: str
    interpreted_value: Any

class HexDumpRow(BaseModel):
    offset: int
    hex: str
    ascii: str

class UploadSessionCreate(BaseModel):
    part_size: Optional[int] = None
    min_part_size: Optional[int] = None
    max_parts: Optional[int] = None
    part_count: Optional[int] = None
