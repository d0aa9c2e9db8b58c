"""
Interfaces for the analyses pewalk delegates.

Resource tree decoding and packer/compiler identification are not part of
the decoder. PEFile hands them the inputs they need (the RESOURCE directory
and the address resolver, or the entry point file offset) and memoizes
whatever they return.
"""

from typing import TYPE_CHECKING, Any, BinaryIO, Protocol

from .types import DataDirectory

if TYPE_CHECKING:
    from .resolver import AddressResolver


class ResourceDecoder(Protocol):
    """Decodes the resource tree of an image."""

    def decode(
        self,
        directory: DataDirectory,
        resolver: "AddressResolver",
        source: BinaryIO,
    ) -> Any:
        """Decode the resource tree described by the RESOURCE directory."""
        ...


class PackerDetector(Protocol):
    """Identifies packers or compilers from the code at the entry point."""

    def detect(self, source: BinaryIO, ep_offset: int) -> Any:
        """Match signatures against the bytes at ep_offset."""
        ...
