# services/byte_source.py
from typing import BinaryIO, Iterable

from models.upload_models import PartSpec
from services.errors import OutOfRange


class ByteSource:
    """Read-only view over an immutable payload with random-access ranges."""

    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._view = memoryview(self._data)

    @classmethod
    def from_stream(cls, stream: BinaryIO, chunk_size: int = 1024 * 1024) -> "ByteSource":
        chunks = []
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            chunks.append(chunk)
        return cls(b"".join(chunks))

    @classmethod
    def from_chunks(cls, chunks: Iterable[bytes]) -> "ByteSource":
        return cls(b"".join(chunks))

    def __len__(self) -> int:
        return len(self._data)

    def read(self, offset: int, length: int) -> bytes:
        if offset < 0 or length < 0 or offset + length > len(self._data):
            raise OutOfRange(
                f"Range {offset}+{length} outside payload of {len(self._data)} bytes"
            )
        return self._view[offset:offset + length].tobytes()

    def part(self, spec: PartSpec) -> bytes:
        return self.read(spec.offset, spec.length)

    def getvalue(self) -> bytes:
        return self._data
