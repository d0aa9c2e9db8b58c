"""
Fixed-layout binary record codec.

Every PE structure decoded by pewalk is a dataclass deriving from Struct.
The layout lives in a single STRUCT_FMT class variable (a little-endian
:mod:`struct` format string); the record size is derived from it.

Reads are lenient: a record that runs past the end of the data is
zero-padded instead of rejected, because truncated and hand-crafted
binaries routinely end in the middle of a header.
"""

import struct
from dataclasses import fields
from typing import BinaryIO, ClassVar, TypeVar

T = TypeVar("T", bound="Struct")


class Struct:
    """Base class for fixed-size little-endian records.

    Subclasses are dataclasses whose non-ClassVar fields appear in the same
    order as the items of STRUCT_FMT.

    Usage:
        @dataclass
        class Pair(Struct):
            a: int
            b: int

            STRUCT_FMT: ClassVar[str] = "<II"

        pair = Pair.read(f)          # consumes Pair.SIZE bytes from f
        pair = Pair.from_bytes(buf)  # decodes from a buffer
    """

    STRUCT_FMT: ClassVar[str] = "<"
    SIZE: ClassVar[int] = 0
    NUM_FIELDS: ClassVar[int] = 0

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls.SIZE = struct.calcsize(cls.STRUCT_FMT)
        cls.NUM_FIELDS = len(struct.unpack(cls.STRUCT_FMT, bytes(cls.SIZE)))

    @classmethod
    def unpack(cls: type[T], raw: bytes) -> T:
        """Decode a record from raw bytes, zero-filling missing trailing bytes."""
        if len(raw) < cls.SIZE:
            raw = raw + b"\x00" * (cls.SIZE - len(raw))
        return cls(*struct.unpack_from(cls.STRUCT_FMT, raw, 0))

    @classmethod
    def from_bytes(cls: type[T], data: bytes | bytearray, offset: int = 0) -> T:
        """Decode a record from a buffer at offset."""
        return cls.unpack(bytes(data[offset : offset + cls.SIZE]))

    @classmethod
    def read(cls: type[T], f: BinaryIO, size: int | None = None) -> T | None:
        """Read a record from the current position of a binary stream.

        Args:
            f: Seekable binary stream, advanced by the bytes consumed
            size: Number of bytes to consume, capped at SIZE. Defaults to SIZE.

        Returns:
            The decoded record, or None if no bytes at all were available
        """
        want = cls.SIZE if size is None else max(0, min(size, cls.SIZE))
        raw = f.read(want)
        if not raw and want:
            return None
        return cls.unpack(raw)

    def astuple(self) -> tuple:
        """Values of the on-disk fields, in layout order.

        Fields declared after the layout fields (decoded extras such as
        resolved names) are not included.
        """
        return tuple(
            getattr(self, f.name) for f in fields(self)[: self.NUM_FIELDS]
        )

    @property
    def empty(self) -> bool:
        """True if every on-disk field of the record is zero."""
        return not any(
            v.strip(b"\x00") if isinstance(v, bytes) else v for v in self.astuple()
        )
