"""
PE/COFF record definitions for 32-bit and 64-bit Windows images.

This module holds every on-disk structure pewalk decodes, plus the constant
and flag tables needed to interpret them. Layouts are declared once, as
STRUCT_FMT strings, and decoded through :class:`pewalk.codec.Struct`.

Decoded extras that are not part of the on-disk layout (resolved names,
thunk lists, directory types) are declared after the layout fields with
defaults so records can still be built positionally from unpacked values.

References:
- Microsoft PE/COFF Specification
- https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
- http://www.delorie.com/djgpp/doc/exe/
"""

import struct
from dataclasses import dataclass, field
from typing import ClassVar

from .codec import Struct

# =============================================================================
# Constants
# =============================================================================

# DOS Header
DOS_SIGNATURES = (b"MZ", b"ZM")

# PE Signature
PE_SIGNATURE = b"PE\x00\x00"

# Machine types
IMAGE_FILE_MACHINE_UNKNOWN = 0x0
IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_IA64 = 0x200
IMAGE_FILE_MACHINE_ARM = 0x1C0
IMAGE_FILE_MACHINE_ARMNT = 0x1C4
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_MACHINE_ARM64 = 0xAA64

MACHINE_NAMES = {
    IMAGE_FILE_MACHINE_UNKNOWN: "Unknown",
    IMAGE_FILE_MACHINE_I386: "x86",
    IMAGE_FILE_MACHINE_IA64: "IA-64",
    IMAGE_FILE_MACHINE_ARM: "ARM",
    IMAGE_FILE_MACHINE_ARMNT: "ARM Thumb-2",
    IMAGE_FILE_MACHINE_AMD64: "x64",
    IMAGE_FILE_MACHINE_ARM64: "ARM64",
}

# Optional header magic
IMAGE_NT_OPTIONAL_HDR32_MAGIC = 0x10B
IMAGE_NT_OPTIONAL_HDR64_MAGIC = 0x20B  # PE32+

# Section characteristics
IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA = 0x00000080
IMAGE_SCN_MEM_DISCARDABLE = 0x02000000
IMAGE_SCN_MEM_SHARED = 0x10000000
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

# File characteristics
IMAGE_FILE_RELOCS_STRIPPED = 0x0001
IMAGE_FILE_EXECUTABLE_IMAGE = 0x0002
IMAGE_FILE_LARGE_ADDRESS_AWARE = 0x0020
IMAGE_FILE_32BIT_MACHINE = 0x0100
IMAGE_FILE_DLL = 0x2000

FILE_CHARACTERISTICS = {
    0x0001: "RELOCS_STRIPPED",
    0x0002: "EXECUTABLE_IMAGE",
    0x0004: "LINE_NUMS_STRIPPED",
    0x0008: "LOCAL_SYMS_STRIPPED",
    0x0010: "AGGRESIVE_WS_TRIM",  # obsolete
    0x0020: "LARGE_ADDRESS_AWARE",
    0x0040: "16BIT_MACHINE",
    0x0080: "BYTES_REVERSED_LO",  # obsolete
    0x0100: "32BIT_MACHINE",
    0x0200: "DEBUG_STRIPPED",
    0x0400: "REMOVABLE_RUN_FROM_SWAP",
    0x0800: "NET_RUN_FROM_SWAP",
    0x1000: "SYSTEM",
    0x2000: "DLL",
    0x4000: "UP_SYSTEM_ONLY",
    0x8000: "BYTES_REVERSED_HI",  # obsolete
}

# DLL characteristics
IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA = 0x0020
IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE = 0x0040  # ASLR
IMAGE_DLLCHARACTERISTICS_NX_COMPAT = 0x0100

# Reserved bits are named by their value
DLL_CHARACTERISTICS = {
    0x0001: "0x01",
    0x0002: "0x02",
    0x0004: "0x04",
    0x0008: "0x08",
    0x0010: "0x10",
    0x0020: "HIGH_ENTROPY_VA",
    0x0040: "DYNAMIC_BASE",
    0x0080: "FORCE_INTEGRITY",
    0x0100: "NX_COMPAT",
    0x0200: "NO_ISOLATION",
    0x0400: "NO_SEH",
    0x0800: "NO_BIND",
    0x1000: "APPCONTAINER",
    0x2000: "WDM_DRIVER",
    0x4000: "GUARD_CF",
    0x8000: "TERMINAL_SERVER_AWARE",
}

SUBSYSTEM_NAMES = {
    0: "UNKNOWN",
    1: "NATIVE",
    2: "WINDOWS_GUI",
    3: "WINDOWS_CUI",
    5: "OS2_CUI",
    7: "POSIX_CUI",
    9: "WINDOWS_CE_GUI",
    10: "EFI_APPLICATION",
    11: "EFI_BOOT_SERVICE_DRIVER",
    12: "EFI_RUNTIME_DRIVER",
    13: "EFI_ROM",
    14: "XBOX",
    16: "WINDOWS_BOOT_APPLICATION",
}

# Data directory indices
IMAGE_DIRECTORY_ENTRY_EXPORT = 0
IMAGE_DIRECTORY_ENTRY_IMPORT = 1
IMAGE_DIRECTORY_ENTRY_RESOURCE = 2
IMAGE_DIRECTORY_ENTRY_EXCEPTION = 3
IMAGE_DIRECTORY_ENTRY_SECURITY = 4
IMAGE_DIRECTORY_ENTRY_BASERELOC = 5
IMAGE_DIRECTORY_ENTRY_DEBUG = 6
IMAGE_DIRECTORY_ENTRY_ARCHITECTURE = 7
IMAGE_DIRECTORY_ENTRY_GLOBALPTR = 8
IMAGE_DIRECTORY_ENTRY_TLS = 9
IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG = 10
IMAGE_DIRECTORY_ENTRY_BOUND_IMPORT = 11
IMAGE_DIRECTORY_ENTRY_IAT = 12
IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT = 13
IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR = 14
IMAGE_NUMBEROF_DIRECTORY_ENTRIES = 16

DATA_DIRECTORY_TYPES = (
    "EXPORT",
    "IMPORT",
    "RESOURCE",
    "EXCEPTION",
    "SECURITY",
    "BASERELOC",
    "DEBUG",
    "ARCHITECTURE",
    "GLOBALPTR",
    "TLS",
    "LOAD_CONFIG",
    "BOUND_IAT",
    "IAT",
    "DELAY_IAT",
    "CLR_HEADER",
    "RESERVED",
)

# Usual SizeOfOptionalHeader values (fixed part + 16 data directories)
OPTIONAL_HEADER32_USUAL_SIZE = 224
OPTIONAL_HEADER64_USUAL_SIZE = 240

# Offset of FirstThunk inside IMAGE_IMPORT_DESCRIPTOR
IMPORT_DESCRIPTOR_FIRST_THUNK_OFFSET = 16


def flag_names(value: int, table: dict[int, str]) -> list[str]:
    """Names of all bits of value present in a {mask: name} table."""
    return [name for mask, name in table.items() if value & mask]


# =============================================================================
# Header Structures
# =============================================================================


@dataclass
class DosHeader(Struct):
    """DOS MZ header (IMAGE_DOS_HEADER).

    Only signature, header_paragraphs and lfanew matter for PE decoding: the
    paragraph count marks the start of the DOS stub and lfanew points to the
    PE signature.
    """

    signature: bytes  # "MZ" or "ZM"
    bytes_in_last_block: int
    blocks_in_file: int
    num_relocs: int
    header_paragraphs: int
    min_extra_paragraphs: int
    max_extra_paragraphs: int
    ss: int
    sp: int
    checksum: int
    ip: int
    cs: int
    reloc_table_offset: int
    overlay_number: int
    reserved0: bytes  # 8 bytes reserved
    oem_id: int
    oem_info: int
    reserved2: bytes  # 20 bytes reserved
    lfanew: int  # Offset to PE signature

    STRUCT_FMT: ClassVar[str] = "<2s13H8sHH20sI"

    @property
    def valid_signature(self) -> bool:
        """Check for an "MZ" or "ZM" signature."""
        return self.signature in DOS_SIGNATURES


@dataclass
class CoffHeader(Struct):
    """COFF file header (IMAGE_FILE_HEADER).

    This 20-byte header comes right after the PE signature.
    """

    Machine: int
    NumberOfSections: int
    TimeDateStamp: int
    PointerToSymbolTable: int
    NumberOfSymbols: int
    SizeOfOptionalHeader: int
    Characteristics: int

    STRUCT_FMT: ClassVar[str] = "<HHIIIHH"

    @property
    def flags(self) -> list[str]:
        """Names of the set Characteristics bits."""
        return flag_names(self.Characteristics, FILE_CHARACTERISTICS)

    @property
    def machine_name(self) -> str:
        return MACHINE_NAMES.get(self.Machine, f"0x{self.Machine:x}")

    @property
    def is_dll(self) -> bool:
        """Check if this is a DLL."""
        return bool(self.Characteristics & IMAGE_FILE_DLL)

    @property
    def is_executable(self) -> bool:
        """Check if this is an executable image."""
        return bool(self.Characteristics & IMAGE_FILE_EXECUTABLE_IMAGE)


@dataclass
class DataDirectory(Struct):
    """Data directory entry (IMAGE_DATA_DIRECTORY).

    Each entry points to a data structure in the image. The type is not
    stored on disk; it follows from the entry's index in the table.
    """

    VirtualAddress: int  # RVA of the data
    Size: int  # Size of the data
    type: str = ""

    STRUCT_FMT: ClassVar[str] = "<II"

    @property
    def is_present(self) -> bool:
        """Check if this data directory is present."""
        return self.VirtualAddress != 0 or self.Size != 0


class OptionalHeaderMixin:
    """Behaviour shared by the PE32 and PE32+ optional headers.

    The two layouts differ only in the width of ImageBase and the stack/heap
    sizes, and in BaseOfData being absent from PE32+.
    """

    USUAL_SIZE: ClassVar[int]
    IS_64BIT: ClassVar[bool]

    @property
    def flags(self) -> list[str]:
        """Names of the set DllCharacteristics bits."""
        return flag_names(self.DllCharacteristics, DLL_CHARACTERISTICS)

    @property
    def subsystem_name(self) -> str:
        return SUBSYSTEM_NAMES.get(self.Subsystem, f"0x{self.Subsystem:x}")

    @property
    def has_aslr(self) -> bool:
        """Check if ASLR (dynamic base) is enabled."""
        return bool(self.DllCharacteristics & IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE)

    def get_data_directory(self, index: int) -> DataDirectory | None:
        """Get a data directory by index."""
        if 0 <= index < len(self.DataDirectory):
            return self.DataDirectory[index]
        return None


@dataclass
class OptionalHeader32(OptionalHeaderMixin, Struct):
    """PE32 optional header (IMAGE_OPTIONAL_HEADER32).

    Data directories are decoded separately into DataDirectory.
    """

    Magic: int  # 0x10B for PE32
    MajorLinkerVersion: int
    MinorLinkerVersion: int
    SizeOfCode: int
    SizeOfInitializedData: int
    SizeOfUninitializedData: int
    AddressOfEntryPoint: int
    BaseOfCode: int
    BaseOfData: int  # PE32 only
    ImageBase: int
    SectionAlignment: int
    FileAlignment: int
    MajorOperatingSystemVersion: int
    MinorOperatingSystemVersion: int
    MajorImageVersion: int
    MinorImageVersion: int
    MajorSubsystemVersion: int
    MinorSubsystemVersion: int
    Win32VersionValue: int
    SizeOfImage: int
    SizeOfHeaders: int
    CheckSum: int
    Subsystem: int
    DllCharacteristics: int
    SizeOfStackReserve: int
    SizeOfStackCommit: int
    SizeOfHeapReserve: int
    SizeOfHeapCommit: int
    LoaderFlags: int
    NumberOfRvaAndSizes: int
    DataDirectory: list[DataDirectory] = field(default_factory=list)

    # 2 + 1 + 1 + 4*9 + 2*6 + 4*4 + 2*2 + 4*6 = 96 bytes
    STRUCT_FMT: ClassVar[str] = "<HBB9I6H4I2H6I"
    USUAL_SIZE: ClassVar[int] = OPTIONAL_HEADER32_USUAL_SIZE
    IS_64BIT: ClassVar[bool] = False


@dataclass
class OptionalHeader64(OptionalHeaderMixin, Struct):
    """PE32+ optional header (IMAGE_OPTIONAL_HEADER64).

    Data directories are decoded separately into DataDirectory.
    """

    Magic: int  # 0x20B for PE32+
    MajorLinkerVersion: int
    MinorLinkerVersion: int
    SizeOfCode: int
    SizeOfInitializedData: int
    SizeOfUninitializedData: int
    AddressOfEntryPoint: int
    BaseOfCode: int
    ImageBase: int  # 8 bytes for PE32+
    SectionAlignment: int
    FileAlignment: int
    MajorOperatingSystemVersion: int
    MinorOperatingSystemVersion: int
    MajorImageVersion: int
    MinorImageVersion: int
    MajorSubsystemVersion: int
    MinorSubsystemVersion: int
    Win32VersionValue: int
    SizeOfImage: int
    SizeOfHeaders: int
    CheckSum: int
    Subsystem: int
    DllCharacteristics: int
    SizeOfStackReserve: int  # 8 bytes for PE32+
    SizeOfStackCommit: int  # 8 bytes for PE32+
    SizeOfHeapReserve: int  # 8 bytes for PE32+
    SizeOfHeapCommit: int  # 8 bytes for PE32+
    LoaderFlags: int
    NumberOfRvaAndSizes: int
    DataDirectory: list[DataDirectory] = field(default_factory=list)

    # 2 + 1 + 1 + 4*5 + 8 + 4*2 + 2*6 + 4*4 + 2*2 + 8*4 + 4*2 = 112 bytes
    STRUCT_FMT: ClassVar[str] = "<HBBIIIIIQIIHHHHHHIIIIHHQQQQII"
    USUAL_SIZE: ClassVar[int] = OPTIONAL_HEADER64_USUAL_SIZE
    IS_64BIT: ClassVar[bool] = True


OptionalHeader = OptionalHeader32 | OptionalHeader64


@dataclass
class SectionHeader(Struct):
    """PE/COFF section header (IMAGE_SECTION_HEADER).

    Each section header is 40 bytes. This is the only record pewalk can
    encode again, so callers can re-serialize an edited section table.
    """

    Name: bytes  # 8 bytes, null-padded (NOT null-terminated if 8 chars)
    VirtualSize: int  # Size in memory (can be > SizeOfRawData)
    VirtualAddress: int  # RVA of section
    SizeOfRawData: int  # Size in file (rounded to FileAlignment)
    PointerToRawData: int  # File offset
    PointerToRelocations: int
    PointerToLinenumbers: int
    NumberOfRelocations: int
    NumberOfLinenumbers: int
    Characteristics: int  # Section flags

    STRUCT_FMT: ClassVar[str] = "<8sIIIIIIHHI"

    def to_bytes(self) -> bytes:
        """Serialize section header, padding the name with NUL bytes."""
        return struct.pack(self.STRUCT_FMT, *self.astuple())

    def write_to(self, data: bytearray, offset: int) -> None:
        """Write section header to mutable buffer at offset."""
        struct.pack_into(self.STRUCT_FMT, data, offset, *self.astuple())

    @property
    def name_str(self) -> str:
        """Get section name as string (strips null padding)."""
        null_pos = self.Name.find(b"\x00")
        if null_pos >= 0:
            return self.Name[:null_pos].decode("ascii", errors="replace")
        return self.Name.decode("ascii", errors="replace")

    @property
    def flags_desc(self) -> str:
        """Short "RWX CODE IDATA ..." rendering of Characteristics."""
        f = self.Characteristics
        r = "R" if f & IMAGE_SCN_MEM_READ else "-"
        r += "W" if f & IMAGE_SCN_MEM_WRITE else "-"
        r += "X" if f & IMAGE_SCN_MEM_EXECUTE else "-"
        if f & IMAGE_SCN_CNT_CODE:
            r += " CODE"
        if f & IMAGE_SCN_CNT_INITIALIZED_DATA:
            r += " IDATA"
        if f & IMAGE_SCN_CNT_UNINITIALIZED_DATA:
            r += " UDATA"
        if f & IMAGE_SCN_MEM_DISCARDABLE:
            r += " DISCARDABLE"
        if f & IMAGE_SCN_MEM_SHARED:
            r += " SHARED"
        return r

    @property
    def is_code(self) -> bool:
        """Check if this section contains code."""
        return bool(self.Characteristics & IMAGE_SCN_CNT_CODE)

    @property
    def is_readable(self) -> bool:
        """Check if this section is readable."""
        return bool(self.Characteristics & IMAGE_SCN_MEM_READ)

    @property
    def is_writable(self) -> bool:
        """Check if this section is writable."""
        return bool(self.Characteristics & IMAGE_SCN_MEM_WRITE)

    @property
    def is_executable(self) -> bool:
        """Check if this section is executable."""
        return bool(self.Characteristics & IMAGE_SCN_MEM_EXECUTE)

    def contains_rva(self, rva: int) -> bool:
        """Check if an RVA falls within the section's virtual extent."""
        return self.VirtualAddress <= rva < self.VirtualAddress + self.VirtualSize

    def contains_rva_raw(self, rva: int) -> bool:
        """Check if an RVA falls within VirtualAddress + SizeOfRawData."""
        return self.VirtualAddress <= rva < self.VirtualAddress + self.SizeOfRawData


def section_name_to_bytes(name: str) -> bytes:
    """Convert section name string to 8-byte padded bytes.

    Section names are limited to 8 characters in PE/COFF.
    """
    if len(name) > 8:
        raise ValueError(f"Section name too long (max 8 chars): {name}")
    return name.encode("ascii").ljust(8, b"\x00")


# =============================================================================
# Directory Tables
# =============================================================================


@dataclass
class ImportedFunction:
    """One decoded thunk: either a (hint, name) pair or an ordinal."""

    hint: int | None = None
    name: str | None = None
    ordinal: int | None = None


@dataclass
class ImportDescriptor(Struct):
    """Import directory entry (IMAGE_IMPORT_DESCRIPTOR)."""

    OriginalFirstThunk: int  # RVA of the import lookup table
    TimeDateStamp: int
    ForwarderChain: int
    Name: int  # RVA of the module name
    FirstThunk: int  # RVA of the import address table
    module_name: str | None = None
    original_first_thunk: list[ImportedFunction] | None = None
    first_thunk: list[ImportedFunction] | None = None

    STRUCT_FMT: ClassVar[str] = "<5I"


@dataclass
class ExportDirectory(Struct):
    """Export directory (IMAGE_EXPORT_DIRECTORY)."""

    Characteristics: int
    TimeDateStamp: int
    MajorVersion: int
    MinorVersion: int
    Name: int
    Base: int  # Starting ordinal number
    NumberOfFunctions: int
    NumberOfNames: int
    AddressOfFunctions: int
    AddressOfNames: int
    AddressOfNameOrdinals: int
    name: str | None = None
    entry_points: list[int] = field(default_factory=list)
    names: list[str | None] = field(default_factory=list)
    name_ordinals: list[int] = field(default_factory=list)

    STRUCT_FMT: ClassVar[str] = "<IIHHIIIIIII"


@dataclass
class TlsDirectory32(Struct):
    """TLS directory (IMAGE_TLS_DIRECTORY32). Addresses are VAs."""

    StartAddressOfRawData: int
    EndAddressOfRawData: int
    AddressOfIndex: int
    AddressOfCallBacks: int
    SizeOfZeroFill: int
    Characteristics: int

    STRUCT_FMT: ClassVar[str] = "<6I"


@dataclass
class TlsDirectory64(Struct):
    """TLS directory (IMAGE_TLS_DIRECTORY64). Addresses are VAs."""

    StartAddressOfRawData: int
    EndAddressOfRawData: int
    AddressOfIndex: int
    AddressOfCallBacks: int
    SizeOfZeroFill: int
    Characteristics: int

    STRUCT_FMT: ClassVar[str] = "<QQQQII"


TlsDirectory = TlsDirectory32 | TlsDirectory64
