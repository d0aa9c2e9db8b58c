"""
RVA to file offset translation.

Real loaders are tolerant of broken section tables, and malware relies on
it. The resolver therefore tries progressively weaker interpretations of the
section table before giving up:

1. the section's virtual extent (VirtualAddress + VirtualSize)
2. the section's raw extent (VirtualAddress + SizeOfRawData), for images
   with zeroed or garbage VirtualSize
3. no sections at all: the image is flat and an RVA is a file offset
4. a single section, or every VirtualAddress zero: use the first section
"""

import logging
from typing import Sequence

from .types import SectionHeader

logger = logging.getLogger(__name__)


class AddressResolver:
    """Maps relative virtual addresses to file offsets.

    Usage:
        resolver = AddressResolver(sections)
        offset = resolver.resolve(0x1000)
        if offset is None:
            ...  # treat the dependent field as unresolved
    """

    def __init__(
        self,
        sections: Sequence[SectionHeader],
        log: logging.Logger | None = None,
    ):
        self._sections = list(sections)
        self._log = log or logger

    @property
    def sections(self) -> list[SectionHeader]:
        return self._sections

    def resolve(self, rva: int | None, quiet: bool = False) -> int | None:
        """Convert an RVA to a file offset.

        Args:
            rva: Relative virtual address (None is passed through)
            quiet: Don't log when the RVA cannot be resolved

        Returns:
            File offset, or None if no interpretation of the section
            table covers the RVA
        """
        if rva is None:
            return None

        for shdr in self._sections:
            if shdr.contains_rva(rva):
                return rva - shdr.VirtualAddress + shdr.PointerToRawData

        # VirtualSize may be zero, retry with the raw size
        for shdr in self._sections:
            if shdr.contains_rva_raw(rva):
                return rva - shdr.VirtualAddress + shdr.PointerToRawData

        if not self._sections:
            return rva

        if len(self._sections) == 1 or all(
            s.VirtualAddress == 0 for s in self._sections
        ):
            first = self._sections[0]
            return rva - first.VirtualAddress + first.PointerToRawData

        if not quiet:
            self._log.error("[?] can't find file_offset of VA 0x%x", rva)
        return None

    def resolve_va(
        self, va: int, image_base: int, quiet: bool = False
    ) -> int | None:
        """Convert a virtual address (ImageBase + RVA) to a file offset."""
        return self.resolve(va - image_base, quiet=quiet)
