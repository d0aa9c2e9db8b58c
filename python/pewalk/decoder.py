"""
PE decode session.

PEFile walks the header chain of one Windows image:

    DOS header -> DOS stub / Rich header -> PE signature -> COFF header ->
    optional header -> data directories -> section table

and, on top of the section table, the TLS, import and export directories.
Every part is decoded on first access and memoized, so accessing imports
implicitly decodes the PE header (and the TLS directory) first.

The decoder never raises on malformed input. Problems are logged with a
"[?]" (suspicious) or "[!]" (definite problem) prefix and the affected part
degrades to None, an empty list or a truncated list. Fatal problems are
logged at CRITICAL and leave the session without PE data.

Usage:
    with PEFile.load(Path("sample.exe")) as pe:
        for section in pe.sections or []:
            print(section.name_str, section.flags_desc)
        for desc in pe.imports or []:
            print(desc.module_name)
"""

import io
import logging
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from typing import Any, BinaryIO

from .collaborators import PackerDetector, ResourceDecoder
from .exports import parse_exports
from .imports import parse_imports
from .resolver import AddressResolver
from .rich import (
    MAX_DOS_STUB_SIZE,
    DosStub,
    RichEntry,
    RichHeader,
    read_dos_stub,
)
from .sample_io import open_sample
from .stream import at_eof, stream_size
from .tls import parse_tls
from .types import (
    DATA_DIRECTORY_TYPES,
    IMAGE_DIRECTORY_ENTRY_RESOURCE,
    IMAGE_NT_OPTIONAL_HDR32_MAGIC,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    IMAGE_NUMBEROF_DIRECTORY_ENTRIES,
    OPTIONAL_HEADER64_USUAL_SIZE,
    PE_SIGNATURE,
    CoffHeader,
    DataDirectory,
    DosHeader,
    ExportDirectory,
    ImportDescriptor,
    OptionalHeader,
    OptionalHeader32,
    OptionalHeader64,
    SectionHeader,
    TlsDirectory,
)


@dataclass
class PEHeader:
    """Decoded PE signature, COFF header, optional header and section table."""

    signature: bytes
    offset: int  # File offset of the PE signature
    coff_header: CoffHeader
    optional_header: OptionalHeader | None
    sections: list[SectionHeader] = field(default_factory=list)
    optional_header_offset: int = 0
    section_table_offset: int = 0


def select_optional_header_class(
    magic: int | None, declared_size: int
) -> type[OptionalHeader32] | type[OptionalHeader64]:
    """Pick the optional header layout from its magic, or its declared size."""
    if magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC:
        return OptionalHeader64
    if magic == IMAGE_NT_OPTIONAL_HDR32_MAGIC:
        return OptionalHeader32
    if declared_size >= OPTIONAL_HEADER64_USUAL_SIZE:
        return OptionalHeader64
    return OptionalHeader32


def read_data_directories(
    f: BinaryIO, count: int, max_count: int = IMAGE_NUMBEROF_DIRECTORY_ENTRIES
) -> list[DataDirectory]:
    """Read the data directory table that follows the optional header.

    The loader never looks at more than 16 entries, whatever
    NumberOfRvaAndSizes says. The returned table always has 16 entries;
    entries that were not read (or ran past EOF) are zero.
    """
    directories = []
    for idx in range(IMAGE_NUMBEROF_DIRECTORY_ENTRIES):
        entry = None
        if idx < min(count, max_count):
            entry = DataDirectory.read(f)
        if entry is None:
            entry = DataDirectory(0, 0)
        entry.type = DATA_DIRECTORY_TYPES[idx]
        directories.append(entry)
    return directories


def read_optional_header(
    f: BinaryIO,
    declared_size: int,
    log: logging.Logger,
    max_directories: int = IMAGE_NUMBEROF_DIRECTORY_ENTRIES,
) -> OptionalHeader:
    """Read the optional header at the current stream position.

    Only min(declared_size, fixed size) bytes of the fixed part are read;
    fields beyond them are zero, the way the loader sees a header that
    overlaps unmapped memory.
    """
    magic = None
    if declared_size >= 2:
        pos = f.tell()
        raw_magic = f.read(2)
        f.seek(pos)
        if len(raw_magic) == 2:
            magic = int.from_bytes(raw_magic, "little")

    cls = select_optional_header_class(magic, declared_size)
    if declared_size != cls.USUAL_SIZE:
        log.warning(
            "[?] unusual size of IMAGE_OPTIONAL_HEADER = %d (must be %d)",
            declared_size,
            cls.USUAL_SIZE,
        )
    if declared_size > cls.USUAL_SIZE:
        log.warning(
            "[?] %d spare bytes after IMAGE_OPTIONAL_HEADER",
            declared_size - cls.USUAL_SIZE,
        )

    ioh = cls.read(f, declared_size) or cls.unpack(b"")
    ioh.DataDirectory = read_data_directories(
        f, ioh.NumberOfRvaAndSizes, max_directories
    )
    return ioh


def read_section_table(
    f: BinaryIO, count: int, file_size: int, log: logging.Logger
) -> list[SectionHeader]:
    """Read count section headers, stopping with a warning at EOF."""
    sections = []
    for _ in range(count):
        shdr = None if at_eof(f, file_size) else SectionHeader.read(f)
        if shdr is None:
            log.warning(
                "[?] EOF after %d of %d IMAGE_SECTION_HEADERs", len(sections), count
            )
            break
        sections.append(shdr)
    return sections


class PEFile:
    """Lazy, memoized decoder for a single PE image.

    The session does not own the stream unless it was opened by load().

    Usage:
        pe = PEFile(open("foo.dll", "rb"))
        if pe.pe_header is None:
            ...  # not a PE image (diagnostics were logged)
        offset = pe.va2file(0x1000)
    """

    # Larger DOS stubs are truncated with a warning
    MAX_DOS_STUB_SIZE = MAX_DOS_STUB_SIZE
    # The loader ignores directory entries beyond this count
    MAX_DATA_DIRECTORIES = IMAGE_NUMBEROF_DIRECTORY_ENTRIES

    def __init__(
        self,
        f: BinaryIO,
        force: bool = False,
        logger: logging.Logger | None = None,
        name: str | None = None,
    ):
        """Initialize a session over a seekable binary stream.

        Prefer PEFile.load() when decoding a file on disk.

        Args:
            f: Seekable binary stream holding the image
            force: Keep decoding past a bad MZ or PE signature
            logger: Diagnostics sink (defaults to this module's logger)
            name: Display name for reports
        """
        self._f = f
        self._owns_stream = False
        self.force = force
        self.logger = logger or logging.getLogger(__name__)
        self.name = name
        self.size = stream_size(f)
        self._resources: dict[int, tuple[ResourceDecoder, Any]] = {}
        self._packers: dict[int, tuple[PackerDetector, Any]] = {}

    @classmethod
    def load(
        cls,
        path: Path,
        force: bool = False,
        logger: logging.Logger | None = None,
        max_size: int | None = None,
    ) -> "PEFile":
        """Open a sample from disk (zstd-compressed samples are unpacked).

        Raises:
            SampleLoadError: If the sample cannot be read or decompressed
        """
        pe = cls(open_sample(path, max_size=max_size), force, logger, str(path))
        pe._owns_stream = True
        return pe

    def close(self) -> None:
        if self._owns_stream:
            self._f.close()

    def __enter__(self) -> "PEFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"PEFile({self.name or self._f!r}, size={self.size})"

    # =========================================================================
    # Header chain
    # =========================================================================

    @property
    def stream(self) -> BinaryIO:
        """Underlying byte source."""
        return self._f

    @cached_property
    def mz(self) -> DosHeader | None:
        """DOS header, or None if its signature is bad and not forced."""
        self._f.seek(0, io.SEEK_SET)
        mz = DosHeader.read(self._f)
        if mz is None:
            self.logger.error("[!] empty file, no MZ header")
            return None
        if not mz.valid_signature:
            if self.force:
                self.logger.warning(
                    "[?] no MZ signature. want: 'MZ' or 'ZM', got: %r", mz.signature
                )
            else:
                self.logger.error(
                    "[!] no MZ signature. want: 'MZ' or 'ZM', got: %r. (not forced)",
                    mz.signature,
                )
                return None
        return mz

    @cached_property
    def dos_stub(self) -> DosStub | None:
        """Bytes between the DOS header area and the PE header."""
        if self.mz is None:
            return None
        return read_dos_stub(
            self._f, self.mz, self.size, self.logger, self.MAX_DOS_STUB_SIZE
        )

    @cached_property
    def rich_header(self) -> RichHeader | None:
        """Rich header extracted from the DOS stub, if any."""
        stub = self.dos_stub
        return stub.rich if stub is not None else None

    @cached_property
    def rich_entries(self) -> list[RichEntry] | None:
        """Decoded Rich header entries, or None if absent or malformed."""
        rich = self.rich_header
        return rich.decode(self.logger) if rich is not None else None

    @cached_property
    def pe_header(self) -> PEHeader | None:
        """PE signature, COFF header, optional header and section table."""
        mz = self.mz
        pe_offset = mz.lfanew if mz is not None else 0
        if pe_offset == 0:
            self.logger.critical("[!] NULL PE offset (e_lfanew). cannot continue.")
            return None
        if pe_offset > self.size:
            self.logger.critical("[!] PE offset beyond EOF. cannot continue.")
            return None

        f = self._f
        f.seek(pe_offset, io.SEEK_SET)
        signature = f.read(len(PE_SIGNATURE))
        if signature != PE_SIGNATURE:
            if self.force:
                self.logger.warning(
                    "[?] no PE signature. want: %r, got: %r", PE_SIGNATURE, signature
                )
            else:
                self.logger.error(
                    "[!] no PE signature. want: %r, got: %r. (not forced)",
                    PE_SIGNATURE,
                    signature,
                )
                return None

        coff = CoffHeader.read(f) or CoffHeader.unpack(b"")
        opt_offset = f.tell()
        ioh = None
        if not at_eof(f, self.size):
            ioh = read_optional_header(
                f, coff.SizeOfOptionalHeader, self.logger, self.MAX_DATA_DIRECTORIES
            )
        else:
            self.logger.warning("[?] IMAGE_OPTIONAL_HEADER beyond EOF")

        # Spare bytes after the optional header are skipped
        section_offset = opt_offset + coff.SizeOfOptionalHeader
        f.seek(section_offset, io.SEEK_SET)
        sections = read_section_table(
            f, coff.NumberOfSections, self.size, self.logger
        )

        return PEHeader(
            signature=signature,
            offset=pe_offset,
            coff_header=coff,
            optional_header=ioh,
            sections=sections,
            optional_header_offset=opt_offset,
            section_table_offset=section_offset,
        )

    @property
    def coff_header(self) -> CoffHeader | None:
        return self.pe_header.coff_header if self.pe_header else None

    @property
    def optional_header(self) -> OptionalHeader | None:
        return self.pe_header.optional_header if self.pe_header else None

    @property
    def data_directory(self) -> list[DataDirectory] | None:
        """The 16 data directory entries."""
        ioh = self.optional_header
        return ioh.DataDirectory if ioh is not None else None

    @property
    def sections(self) -> list[SectionHeader] | None:
        return self.pe_header.sections if self.pe_header else None

    @property
    def is_64bit(self) -> bool:
        """Check if the image has a PE32+ optional header."""
        ioh = self.optional_header
        return ioh is not None and ioh.IS_64BIT

    @property
    def is_dll(self) -> bool:
        coff = self.coff_header
        return coff is not None and coff.is_dll

    # =========================================================================
    # Address translation
    # =========================================================================

    @cached_property
    def resolver(self) -> AddressResolver | None:
        """Address resolver over the section table."""
        if self.pe_header is None:
            return None
        return AddressResolver(self.pe_header.sections, self.logger)

    def va2file(self, rva: int | None, quiet: bool = False) -> int | None:
        """Convert an RVA to a file offset (see AddressResolver.resolve)."""
        if self.resolver is None:
            return None
        return self.resolver.resolve(rva, quiet=quiet)

    def entry_point_offset(self) -> int | None:
        """File offset of the entry point, or None if there is none."""
        ioh = self.optional_header
        if ioh is None:
            return None
        rva = ioh.AddressOfEntryPoint
        if rva == 0 and self.is_dll:
            self.logger.debug("[.] it's a DLL with no EntryPoint")
            return None
        offset = self.va2file(rva)
        if offset is None or offset < 0:
            self.logger.error(
                "[?] can't find EntryPoint RVA (0x%x) file offset", rva
            )
            return None
        return offset

    # =========================================================================
    # Directory tables
    # =========================================================================

    @cached_property
    def tls(self) -> list[TlsDirectory] | None:
        return parse_tls(self)

    @cached_property
    def imports(self) -> list[ImportDescriptor] | None:
        return parse_imports(self)

    @cached_property
    def exports(self) -> ExportDirectory | None:
        return parse_exports(self)

    def resources(self, decoder: ResourceDecoder) -> Any:
        """Run a resource decoder over the RESOURCE directory (memoized)."""
        cached = self._resources.get(id(decoder))
        if cached is not None and cached[0] is decoder:
            return cached[1]

        directory = None
        if self.optional_header is not None:
            directory = self.optional_header.get_data_directory(
                IMAGE_DIRECTORY_ENTRY_RESOURCE
            )
        result = None
        if directory is not None and directory.is_present:
            result = decoder.decode(directory, self.resolver, self._f)
        # The collaborator is held so its id() stays unique while cached
        self._resources[id(decoder)] = (decoder, result)
        return result

    def packer(self, detector: PackerDetector) -> Any:
        """Run a packer detector at the entry point (memoized)."""
        cached = self._packers.get(id(detector))
        if cached is not None and cached[0] is detector:
            return cached[1]

        result = None
        offset = self.entry_point_offset()
        if offset is not None:
            result = detector.detect(self._f, offset)
        self._packers[id(detector)] = (detector, result)
        return result

    def dump(
        self,
        resource_decoder: ResourceDecoder | None = None,
        packer_detector: PackerDetector | None = None,
    ) -> "PEFile":
        """Decode every part of the image.

        Returns:
            self, with all parts memoized
        """
        if self.pe_header is None:
            return self
        _ = self.rich_entries
        if resource_decoder is not None:
            self.resources(resource_decoder)
        _ = self.imports  # also decodes TLS
        _ = self.exports
        if packer_detector is not None:
            self.packer(packer_detector)
        return self
