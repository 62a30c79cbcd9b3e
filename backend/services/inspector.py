# services/inspector.py
import struct
from typing import Any, Iterable, List, Union

from models.upload_models import ByteKind, Endianness, HexDumpRow, InspectionRow
from services.errors import OutOfRange

BYTES_PER_ROW = 16

_STRUCT_CODES = {
    ByteKind.UINT8: "B",
    ByteKind.INT8: "b",
    ByteKind.UINT16: "H",
    ByteKind.INT16: "h",
    ByteKind.UINT32: "I",
    ByteKind.INT32: "i",
    ByteKind.UINT64: "Q",
    ByteKind.INT64: "q",
    ByteKind.FLOAT32: "f",
    ByteKind.FLOAT64: "d",
}


def byte_to_ascii(byte: int) -> str:
    return chr(byte) if 32 <= byte <= 126 else "."


def _utf8_width(lead: int) -> int:
    if lead < 0x80:
        return 1
    if lead >> 5 == 0b110:
        return 2
    if lead >> 4 == 0b1110:
        return 3
    if lead >> 3 == 0b11110:
        return 4
    # continuation or invalid lead byte
    return 1


def width(kind: ByteKind, data: bytes = b"", offset: int = 0) -> int:
    """Number of bytes ``kind`` consumes at ``offset``"""
    kind = ByteKind(kind)
    if kind == ByteKind.ASCII:
        return 1
    if kind == ByteKind.UTF8_CHAR:
        if 0 <= offset < len(data):
            return _utf8_width(data[offset])
        return 1
    return struct.calcsize(_STRUCT_CODES[kind])


def interpret(
    data: bytes,
    offset: int,
    kind: Union[ByteKind, str],
    endianness: Union[Endianness, str] = Endianness.BIG,
) -> Any:
    kind = ByteKind(kind)
    endianness = Endianness(endianness)
    size = width(kind, data, offset)
    if offset < 0 or offset + size > len(data):
        raise OutOfRange(f"{kind.value} at offset {offset} needs {size} byte(s), only {len(data)} available")

    if kind == ByteKind.ASCII:
        return byte_to_ascii(data[offset])
    if kind == ByteKind.UTF8_CHAR:
        return bytes(data[offset:offset + size]).decode("utf-8", errors="replace")[:1]

    prefix = ">" if endianness == Endianness.BIG else "<"
    return struct.unpack_from(prefix + _STRUCT_CODES[kind], data, offset)[0]


def inspect(
    data: bytes,
    offset: int,
    kinds: Iterable[Union[ByteKind, str]],
    endianness: Union[Endianness, str] = Endianness.BIG,
) -> List[InspectionRow]:
    rows = []
    for kind in kinds:
        kind = ByteKind(kind)
        value = interpret(data, offset, kind, endianness)
        size = width(kind, data, offset)
        rows.append(InspectionRow(
            offset=offset,
            kind=kind,
            raw_bytes=bytes(data[offset:offset + size]).hex(" "),
            interpreted_value=value,
        ))
    return rows


def hex_dump(data: bytes, offset: int = 0, rows: int = 8, bytes_per_row: int = BYTES_PER_ROW) -> List[HexDumpRow]:
    """Classic hex dump rows (offset, hex bytes, printable ASCII) starting at ``offset``"""
    if offset < 0 or offset > len(data):
        raise OutOfRange(f"Offset {offset} outside {len(data)} bytes")
    if rows < 0 or bytes_per_row < 1:
        raise OutOfRange("rows must be >= 0 and bytes_per_row >= 1")

    result = []
    end = min(len(data), offset + rows * bytes_per_row)
    for start in range(offset, end, bytes_per_row):
        chunk = bytes(data[start:min(start + bytes_per_row, end)])
        result.append(HexDumpRow(
            offset=start,
            hex=chunk.hex(" "),
            ascii="".join(byte_to_ascii(b) for b in chunk),
        ))
    return result


def format_bytes(size: int) -> str:
    if size == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    index = 0
    value = float(size)
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f} {units[index]}".replace(".00 ", " ")
