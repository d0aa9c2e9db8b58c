"""
Helpers for reading from a seekable binary stream.

The decoder works on an open file object (or io.BytesIO) rather than a
buffer, so every read goes through these small functions. None of them
raise on short data; they report it through their return value instead.
"""

import io
import struct
from typing import BinaryIO

CSTRING_CHUNK = 256


def stream_size(f: BinaryIO) -> int:
    """Total size of a seekable stream, preserving its position."""
    pos = f.tell()
    size = f.seek(0, io.SEEK_END)
    f.seek(pos)
    return size


def seek_to(f: BinaryIO, offset: int | None) -> bool:
    """Seek to an absolute offset; False (no seek) for None or negative."""
    if offset is None or offset < 0:
        return False
    f.seek(offset, io.SEEK_SET)
    return True


def at_eof(f: BinaryIO, size: int) -> bool:
    """Check if the stream position is at or beyond size."""
    return f.tell() >= size


def read_scalar(f: BinaryIO, fmt: str) -> int | None:
    """Read one little-endian scalar, or None if the stream ran short."""
    width = struct.calcsize(fmt)
    raw = f.read(width)
    if len(raw) < width:
        return None
    return struct.unpack(fmt, raw)[0]


def read_u16(f: BinaryIO) -> int | None:
    return read_scalar(f, "<H")


def read_u32(f: BinaryIO) -> int | None:
    return read_scalar(f, "<I")


def read_u64(f: BinaryIO) -> int | None:
    return read_scalar(f, "<Q")


def read_cstring(f: BinaryIO) -> str:
    """Read a NUL-terminated string from the current position.

    Reading stops at the first NUL or at EOF; the stream is left just past
    the terminator. Non-ASCII bytes are replaced rather than rejected.
    """
    chunks = []
    while True:
        chunk = f.read(CSTRING_CHUNK)
        if not chunk:
            break
        null_pos = chunk.find(b"\x00")
        if null_pos != -1:
            chunks.append(chunk[:null_pos])
            # Rewind to just past the terminator
            f.seek(null_pos + 1 - len(chunk), io.SEEK_CUR)
            break
        chunks.append(chunk)
    return b"".join(chunks).decode("ascii", errors="replace")
