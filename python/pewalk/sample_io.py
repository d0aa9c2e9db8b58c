"""
Sample loading.

Malware collections are commonly stored compressed. Samples that start with
a zstd frame are decompressed into memory; anything else is opened as-is.
Either way the decoder gets a seekable binary stream.
"""

import io
from pathlib import Path
from typing import BinaryIO

import zstandard as zstd

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
READ_CHUNK = 1 << 20


class SampleLoadError(ValueError):
    """Raised when a sample cannot be read or decompressed."""

    pass


def is_zstd_compressed(path: Path) -> bool:
    """Check for the zstd frame magic at the start of a file."""
    with open(path, "rb") as f:
        return f.read(len(ZSTD_MAGIC)) == ZSTD_MAGIC


def decompress_sample(path: Path, max_size: int | None = None) -> bytes:
    """Decompress a zstd-compressed sample.

    Args:
        path: Path to the compressed sample
        max_size: Refuse samples that decompress to more than this many bytes

    Returns:
        Decompressed sample data

    Raises:
        SampleLoadError: If the data is corrupt or exceeds max_size
    """
    dctx = zstd.ZstdDecompressor()
    chunks = []
    total = 0
    try:
        with open(path, "rb") as fh, dctx.stream_reader(fh) as reader:
            while True:
                chunk = reader.read(READ_CHUNK)
                if not chunk:
                    break
                total += len(chunk)
                if max_size is not None and total > max_size:
                    raise SampleLoadError(
                        f"{path}: decompressed size exceeds {max_size} bytes"
                    )
                chunks.append(chunk)
    except zstd.ZstdError as e:
        raise SampleLoadError(f"{path}: decompression failed: {e}") from e
    return b"".join(chunks)


def open_sample(path: Path, max_size: int | None = None) -> BinaryIO:
    """Open a sample for decoding.

    Args:
        path: Path to a plain or zstd-compressed sample
        max_size: Size limit for decompressed samples

    Returns:
        Seekable binary stream; the caller closes it

    Raises:
        SampleLoadError: If the sample cannot be read or decompressed
    """
    path = Path(path)
    try:
        if is_zstd_compressed(path):
            return io.BytesIO(decompress_sample(path, max_size))
        return open(path, "rb")
    except OSError as e:
        raise SampleLoadError(f"{path}: {e}") from e
