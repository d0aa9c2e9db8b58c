"""
DOS stub and Rich header extraction.

The Rich header is an undocumented block the Microsoft linker hides inside
the DOS stub. It records the @comp.id of every tool that contributed objects
to the image and is xor-encoded with a 4-byte key stored after the "Rich"
marker:

    "DanS" ^ key | 3 x (0 ^ key) | entries ^ key ... | "Rich" | key

Each decoded entry is (version: u16, id: u16, times: u32).

References:
- http://ntcore.com/files/richsign.htm
"""

import io
import logging
import struct
from dataclasses import dataclass, field
from typing import BinaryIO

from .types import DosHeader

logger = logging.getLogger(__name__)

RICH_MARKER = b"Rich"
DANS_MARKER = b"DanS"
MAX_DOS_STUB_SIZE = 0x1000
RICH_PADDING_COPIES = 3


def xor_bytes(data: bytes, key: bytes) -> bytes:
    """Xor data with a repeating key."""
    if not key:
        return bytes(data)
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


@dataclass
class RichEntry:
    """A single @comp.id record from the Rich header."""

    version: int  # Build number of the tool
    id: int  # Product/tool identifier
    times: int  # Number of objects built with this tool

    @property
    def comp_id(self) -> int:
        """Full @comp.id value (id << 16 | version)."""
        return (self.id << 16) | self.version


@dataclass
class RichHeader:
    """Raw Rich header bytes (DanS marker through key) and their location.

    Decoding is done on demand by decode().
    """

    raw: bytes
    offset: int  # File offset of the DanS marker
    key: bytes  # 4-byte xor key

    @property
    def key_value(self) -> int:
        return struct.unpack("<I", self.key)[0]

    def dexor(self) -> bytes:
        """Payload between the markers, padding removed, xor-decoded."""
        body = self.raw[4:-8]
        padding = self.key * RICH_PADDING_COPIES
        if padding and body.startswith(padding):
            body = body[len(padding) :]
        return xor_bytes(body, self.key)

    def decode(self, log: logging.Logger | None = None) -> list[RichEntry] | None:
        """Decode the entries.

        Returns:
            List of entries, or None if the payload is not a whole number of
            8-byte records
        """
        log = log or logger
        payload = self.dexor()
        if len(payload) % 8 != 0:
            log.error(
                "[?] RichHeader: dexored size(%d) must be a multiple of 8",
                len(payload),
            )
            return None
        return [
            RichEntry(*struct.unpack_from("<HHI", payload, pos))
            for pos in range(0, len(payload), 8)
        ]

    @classmethod
    def encode(cls, entries: list[RichEntry], key: bytes) -> bytes:
        """Build raw Rich header bytes for entries, as the linker lays them out."""
        payload = b"".join(
            struct.pack("<HHI", e.version, e.id, e.times) for e in entries
        )
        body = xor_bytes(DANS_MARKER + b"\x00" * 4 * RICH_PADDING_COPIES + payload, key)
        return body + RICH_MARKER + key

    @classmethod
    def from_dos_stub(
        cls, stub: "DosStub", log: logging.Logger | None = None
    ) -> "RichHeader | None":
        """Locate the Rich header inside a DOS stub.

        Returns None (with an error logged) if the markers are malformed or
        if anything other than zero bytes follows the header.
        """
        log = log or logger
        data = stub.raw
        rich_idx = data.find(RICH_MARKER)
        if rich_idx == -1:
            return None

        key = data[rich_idx + 4 : rich_idx + 8]
        if len(key) < 4:
            log.error("[!] truncated rich_hdr key at DOS stub offset 0x%x", rich_idx)
            return None

        start_idx = data.find(xor_bytes(DANS_MARKER, key), 0, rich_idx)
        if start_idx == -1:
            log.error("[!] rich_hdr DanS marker not found (key %s)", key.hex())
            return None

        end_idx = rich_idx + 8
        trailer = data[end_idx:]
        if trailer.strip(b"\x00"):
            shown = repr(trailer[:0x100])
            if len(trailer) > 0x100:
                shown += "..."
            log.error("[!] non-zero dos stub after rich_hdr: %s", shown)
            return None

        return cls(
            raw=data[start_idx:end_idx],
            offset=stub.offset + start_idx,
            key=key,
        )


@dataclass
class DosStub:
    """Bytes between the DOS header area and the PE header.

    raw always holds the bytes as read; data is the display copy, from which
    a successfully extracted Rich header has been cut.
    """

    raw: bytes
    offset: int
    data: bytes = b""
    rich: RichHeader | None = field(default=None, repr=False)

    def __post_init__(self):
        if not self.data:
            self.data = self.raw


def read_dos_stub(
    f: BinaryIO,
    mz: DosHeader,
    file_size: int,
    log: logging.Logger | None = None,
    max_size: int = MAX_DOS_STUB_SIZE,
) -> DosStub | None:
    """Read the DOS stub and extract its Rich header, if any.

    Args:
        f: Seekable binary stream
        mz: Decoded DOS header
        file_size: Total size of the stream
        log: Diagnostics sink
        max_size: Stubs larger than this are truncated with a warning

    Returns:
        DosStub (with .rich set when a Rich header was found), or None when
        the header describes no usable stub
    """
    log = log or logger
    stub_offset = mz.header_paragraphs * 0x10
    stub_size = mz.lfanew - stub_offset

    if stub_offset < 0:
        log.warning("[?] invalid DOS stub offset %d", stub_offset)
        return None
    if stub_offset > file_size:
        log.warning("[?] DOS stub offset beyond EOF: %d", stub_offset)
        return None
    if stub_size < 0:
        log.warning("[?] invalid DOS stub size %d", stub_size)
        return None
    if stub_size == 0:
        return None
    if stub_size == DosHeader.SIZE and stub_offset == 0:
        return None
    if stub_size > max_size:
        log.warning(
            "[?] DOS stub size too big (%d), limiting to 0x%x", stub_size, max_size
        )
        stub_size = max_size

    f.seek(stub_offset, io.SEEK_SET)
    stub = DosStub(raw=f.read(stub_size), offset=stub_offset)

    if RICH_MARKER in stub.raw:
        rich = RichHeader.from_dos_stub(stub, log)
        if rich is not None:
            stub.rich = rich
            stub.data = stub.raw[: rich.offset - stub.offset]
    return stub
