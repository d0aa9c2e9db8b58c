"""
Builders for synthetic PE images.

No real samples are checked in. Each test assembles the smallest image that
exercises the behaviour under test. build_pe() lays an image out as:

    0x00                      DOS header
    header_paragraphs * 16    DOS stub (optionally carrying a Rich header)
    lfanew                    PE signature, COFF header, optional header,
                              data directories, spare bytes, section table
    FILE_ALIGNMENT multiples  section raw data

The directory table builders (imports, exports, TLS) produce section
contents for a given RVA, so they can be dropped into any Section.
"""

import io
import struct
from dataclasses import dataclass, field

from pewalk import PEFile
from pewalk.rich import RichEntry, RichHeader
from pewalk.types import (
    IMAGE_DIRECTORY_ENTRY_EXPORT,
    IMAGE_DIRECTORY_ENTRY_IMPORT,
    IMAGE_DIRECTORY_ENTRY_RESOURCE,
    IMAGE_DIRECTORY_ENTRY_TLS,
    IMAGE_FILE_DLL,
    IMAGE_FILE_EXECUTABLE_IMAGE,
    IMAGE_FILE_MACHINE_AMD64,
    IMAGE_FILE_MACHINE_I386,
    IMAGE_NT_OPTIONAL_HDR32_MAGIC,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    IMAGE_SCN_CNT_CODE,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_WRITE,
    PE_SIGNATURE,
    CoffHeader,
    ExportDirectory,
    ImportDescriptor,
    OptionalHeader32,
    OptionalHeader64,
    SectionHeader,
    TlsDirectory32,
    TlsDirectory64,
    section_name_to_bytes,
)

FILE_ALIGNMENT = 0x200
SECTION_ALIGNMENT = 0x1000
IMAGE_BASE_32 = 0x400000
IMAGE_BASE_64 = 0x140000000
DOS_STUB_TEXT = b"This program cannot be run in DOS mode.\r\r\n$"
RICH_KEY = b"\x5a\x3c\x91\xe7"
RICH_ENTRIES = [
    RichEntry(version=30729, id=147, times=12),
    RichEntry(version=33145, id=260, times=3),
    RichEntry(version=33145, id=258, times=1),
]

CODE_FLAGS = IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE | IMAGE_SCN_MEM_READ
RDATA_FLAGS = IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ
DATA_FLAGS = IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_WRITE


def align(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


# =============================================================================
# Image layout
# =============================================================================


@dataclass
class Section:
    """A section to lay out in a synthetic image."""

    name: str
    rva: int
    data: bytes = b""
    virtual_size: int | None = None  # Defaults to len(data)
    raw_size: int | None = None  # Defaults to len(data) rounded to FILE_ALIGNMENT
    characteristics: int = RDATA_FLAGS


@dataclass
class BuiltImage:
    """A synthetic image and the offsets its builder chose."""

    data: bytes
    lfanew: int
    optional_header_offset: int
    section_table_offset: int
    section_offsets: list[int] = field(default_factory=list)


def build_dos_header(
    lfanew: int, header_paragraphs: int = 4, signature: bytes = b"MZ"
) -> bytes:
    data = bytearray(64)
    struct.pack_into("<2s", data, 0, signature)
    struct.pack_into("<H", data, 8, header_paragraphs)  # header_paragraphs
    struct.pack_into("<I", data, 60, lfanew)  # lfanew
    return bytes(data)


def build_dos_stub(
    rich_entries: list[RichEntry] | None = None,
    key: bytes = RICH_KEY,
    trailer: bytes = b"",
) -> bytes:
    """DOS stub text, an optional Rich header and optional trailing bytes."""
    stub = DOS_STUB_TEXT.ljust(align(len(DOS_STUB_TEXT), 8), b"\x00")
    if rich_entries is not None:
        stub += RichHeader.encode(rich_entries, key)
    return stub + trailer


def build_optional_header(
    is_64bit: bool,
    entry_point: int = 0,
    image_base: int | None = None,
    number_of_rva_and_sizes: int = 16,
    dll_characteristics: int = 0,
    subsystem: int = 3,
    magic: int | None = None,
) -> bytes:
    """Fixed part of the optional header (no data directories)."""
    cls = OptionalHeader64 if is_64bit else OptionalHeader32
    ioh = cls.unpack(b"")
    if magic is None:
        magic = (
            IMAGE_NT_OPTIONAL_HDR64_MAGIC if is_64bit else IMAGE_NT_OPTIONAL_HDR32_MAGIC
        )
    if image_base is None:
        image_base = IMAGE_BASE_64 if is_64bit else IMAGE_BASE_32
    ioh.Magic = magic
    ioh.MajorLinkerVersion = 14
    ioh.AddressOfEntryPoint = entry_point
    ioh.ImageBase = image_base
    ioh.SectionAlignment = SECTION_ALIGNMENT
    ioh.FileAlignment = FILE_ALIGNMENT
    ioh.MajorSubsystemVersion = 6
    ioh.Subsystem = subsystem
    ioh.DllCharacteristics = dll_characteristics
    ioh.NumberOfRvaAndSizes = number_of_rva_and_sizes
    return struct.pack(cls.STRUCT_FMT, *ioh.astuple())


def build_pe(
    sections: list[Section] = (),
    directories: dict[int, tuple[int, int]] | None = None,
    is_64bit: bool = False,
    entry_point: int = 0,
    image_base: int | None = None,
    characteristics: int = IMAGE_FILE_EXECUTABLE_IMAGE,
    dll_characteristics: int = 0,
    number_of_rva_and_sizes: int = 16,
    optional_header_size: int | None = None,
    magic: int | None = None,
    number_of_sections: int | None = None,
    lfanew: int = 0x80,
    header_paragraphs: int = 4,
    dos_stub: bytes | None = None,
    mz_signature: bytes = b"MZ",
    pe_signature: bytes = PE_SIGNATURE,
    spare_fill: bytes = b"\xcc",
) -> BuiltImage:
    """Build a PE image.

    Args:
        sections: Sections, laid out in order after the headers
        directories: {directory index: (VirtualAddress, Size)}
        number_of_rva_and_sizes: Directory entries written (and declared)
        optional_header_size: SizeOfOptionalHeader; extra bytes are filled
            with spare_fill, a smaller value truncates the header
        number_of_sections: NumberOfSections override (headers are only
            written for the given sections)
        dos_stub: Bytes placed at header_paragraphs * 16

    Returns:
        The image with the offsets chosen for its parts
    """
    directories = directories or {}
    sections = list(sections)

    data = bytearray(build_dos_header(lfanew, header_paragraphs, mz_signature))
    data.extend(bytes(max(0, lfanew - len(data))))
    if dos_stub is not None:
        stub_offset = header_paragraphs * 16
        assert stub_offset + len(dos_stub) <= lfanew, "DOS stub overlaps PE header"
        data[stub_offset : stub_offset + len(dos_stub)] = dos_stub

    opt = build_optional_header(
        is_64bit,
        entry_point=entry_point,
        image_base=image_base,
        number_of_rva_and_sizes=number_of_rva_and_sizes,
        dll_characteristics=dll_characteristics,
        magic=magic,
    )
    for idx in range(number_of_rva_and_sizes):
        opt += struct.pack("<II", *directories.get(idx, (0, 0)))
    if optional_header_size is None:
        optional_header_size = len(opt)
    elif optional_header_size > len(opt):
        opt += spare_fill * (optional_header_size - len(opt))
    else:
        opt = opt[:optional_header_size]

    coff = struct.pack(
        CoffHeader.STRUCT_FMT,
        IMAGE_FILE_MACHINE_AMD64 if is_64bit else IMAGE_FILE_MACHINE_I386,
        len(sections) if number_of_sections is None else number_of_sections,
        0x5F5E1000,  # TimeDateStamp
        0,
        0,
        optional_header_size,
        characteristics,
    )
    data += pe_signature + coff
    opt_offset = len(data)
    data += opt
    table_offset = len(data)

    headers_end = table_offset + SectionHeader.SIZE * len(sections)
    raw_offset = align(headers_end, FILE_ALIGNMENT)
    payloads = []
    offsets = []
    for sec in sections:
        virtual_size = len(sec.data) if sec.virtual_size is None else sec.virtual_size
        raw_size = sec.raw_size
        if raw_size is None:
            raw_size = align(len(sec.data), FILE_ALIGNMENT)
        pointer = raw_offset if raw_size else 0
        shdr = SectionHeader(
            Name=section_name_to_bytes(sec.name),
            VirtualSize=virtual_size,
            VirtualAddress=sec.rva,
            SizeOfRawData=raw_size,
            PointerToRawData=pointer,
            PointerToRelocations=0,
            PointerToLinenumbers=0,
            NumberOfRelocations=0,
            NumberOfLinenumbers=0,
            Characteristics=sec.characteristics,
        )
        data += shdr.to_bytes()
        offsets.append(pointer)
        payloads.append((pointer, sec.data[:raw_size].ljust(raw_size, b"\x00")))
        raw_offset += raw_size

    for pointer, payload in payloads:
        if payload:
            data.extend(bytes(pointer - len(data)))
            data += payload

    return BuiltImage(
        data=bytes(data),
        lfanew=lfanew,
        optional_header_offset=opt_offset,
        section_table_offset=table_offset,
        section_offsets=offsets,
    )


def open_pe(image: BuiltImage | bytes, **kwargs) -> PEFile:
    """Start a decode session over an in-memory image."""
    data = image.data if isinstance(image, BuiltImage) else image
    return PEFile(io.BytesIO(data), **kwargs)


# =============================================================================
# Directory tables
# =============================================================================


@dataclass
class RawThunk:
    """A thunk value written as-is."""

    value: int


@dataclass
class ImportModule:
    """An imported module.

    functions holds names (imported by name, hint = index), ints (imported
    by ordinal) or RawThunk values.
    """

    name: str
    functions: list = field(default_factory=list)
    lookup_table: bool = True  # Emit an OriginalFirstThunk array


def build_import_table(
    rva: int,
    modules: list[ImportModule],
    is_64bit: bool = False,
    terminator: bytes | None = None,
) -> tuple[bytes, int]:
    """Lay out an import table at rva.

    Layout: descriptors (plus terminator), then per module the lookup table
    and the address table, then module names and hint/name entries.

    Args:
        terminator: Raw bytes for the descriptor after the last module
            (defaults to all zeros)

    Returns:
        (section bytes, directory size)
    """
    ptr_size = 8 if is_64bit else 4
    ptr_fmt = "<Q" if is_64bit else "<I"
    ordinal_flag = 1 << (63 if is_64bit else 31)

    dir_size = ImportDescriptor.SIZE * (len(modules) + 1)
    pos = dir_size
    tables = []
    for mod in modules:
        table_size = (len(mod.functions) + 1) * ptr_size
        ilt = None
        if mod.lookup_table:
            ilt = pos
            pos += table_size
        iat = pos
        pos += table_size
        tables.append((ilt, iat))

    string_base = pos
    strings = bytearray()
    name_offsets = []
    thunks = []
    for mod in modules:
        name_offsets.append(string_base + len(strings))
        strings += mod.name.encode("ascii") + b"\x00"
        values = []
        for idx, func in enumerate(mod.functions):
            if isinstance(func, RawThunk):
                values.append(func.value)
            elif isinstance(func, int):
                values.append(ordinal_flag | func)
            else:
                if len(strings) % 2:
                    strings += b"\x00"
                values.append(rva + string_base + len(strings))
                strings += struct.pack("<H", idx) + func.encode("ascii") + b"\x00"
        thunks.append(values)

    data = bytearray(string_base) + strings
    for i, (mod, (ilt, iat)) in enumerate(zip(modules, tables)):
        struct.pack_into(
            ImportDescriptor.STRUCT_FMT,
            data,
            i * ImportDescriptor.SIZE,
            rva + ilt if ilt is not None else 0,
            0,
            0,
            rva + name_offsets[i],
            rva + iat,
        )
        for table in (ilt, iat):
            if table is None:
                continue
            for j, value in enumerate(thunks[i]):
                struct.pack_into(ptr_fmt, data, table + j * ptr_size, value)
    if terminator is not None:
        offset = len(modules) * ImportDescriptor.SIZE
        data[offset : offset + ImportDescriptor.SIZE] = terminator
    return bytes(data), dir_size


def build_export_table(
    rva: int,
    dll_name: str,
    entry_points: list[int],
    names: list[tuple[str, int]],
    base: int = 1,
) -> bytes:
    """Lay out an export directory at rva.

    Args:
        entry_points: Function RVAs, indexed by ordinal - base
        names: (name, index into entry_points) pairs
    """
    pos = ExportDirectory.SIZE
    functions_off = pos
    pos += 4 * len(entry_points)
    names_off = pos
    pos += 4 * len(names)
    ordinals_off = pos
    pos += 2 * len(names)

    strings = bytearray()
    dll_name_off = pos
    strings += dll_name.encode("ascii") + b"\x00"
    name_rvas = []
    for name, _ in names:
        name_rvas.append(rva + pos + len(strings))
        strings += name.encode("ascii") + b"\x00"

    data = bytearray(pos) + strings
    struct.pack_into(
        ExportDirectory.STRUCT_FMT,
        data,
        0,
        0,  # Characteristics
        0x5F5E1000,  # TimeDateStamp
        0,
        0,
        rva + dll_name_off,
        base,
        len(entry_points),
        len(names),
        rva + functions_off,
        rva + names_off,
        rva + ordinals_off,
    )
    for i, value in enumerate(entry_points):
        struct.pack_into("<I", data, functions_off + 4 * i, value)
    for i, ((_, index), name_rva) in enumerate(zip(names, name_rvas)):
        struct.pack_into("<I", data, names_off + 4 * i, name_rva)
        struct.pack_into("<H", data, ordinals_off + 2 * i, index)
    return bytes(data)


def build_tls_directory(
    is_64bit: bool,
    address_of_index: int,
    callbacks: int = 0,
    start: int = 0,
    end: int = 0,
) -> bytes:
    cls = TlsDirectory64 if is_64bit else TlsDirectory32
    return struct.pack(cls.STRUCT_FMT, start, end, address_of_index, callbacks, 0, 0)


# =============================================================================
# Complete sample
# =============================================================================

TEXT_RVA = 0x1000
RDATA_RVA = 0x2000
DATA_RVA = 0x3000
IMPORTS_RVA = RDATA_RVA
EXPORTS_RVA = RDATA_RVA + 0x400
TLS_RVA = DATA_RVA
TLS_INDEX_RVA = DATA_RVA + 0x100
RESOURCE_RVA = DATA_RVA + 0x200

SAMPLE_IMPORTS = [
    ImportModule("KERNEL32.dll", ["ExitProcess", "GetProcAddress"]),
    ImportModule("USER32.dll", [0x10, "MessageBoxA"]),
]
SAMPLE_EXPORT_NAME = "sample.dll"
SAMPLE_ENTRY_POINTS = [TEXT_RVA + 0x10, TEXT_RVA + 0x20, TEXT_RVA + 0x30]
SAMPLE_EXPORT_NAMES = [("alpha", 0), ("gamma", 2)]
SAMPLE_EXPORT_BASE = 5
# push ebp; mov ebp, esp; xor eax, eax; pop ebp; ret
CODE = b"\x55\x89\xe5\x31\xc0\x5d\xc3"


def build_sample_image(
    is_64bit: bool = False, dll: bool = False, with_rich: bool = True
) -> BuiltImage:
    """A complete image with code, imports, exports, TLS and a Rich header."""
    image_base = IMAGE_BASE_64 if is_64bit else IMAGE_BASE_32
    imports, imports_size = build_import_table(IMPORTS_RVA, SAMPLE_IMPORTS, is_64bit)
    assert len(imports) <= EXPORTS_RVA - IMPORTS_RVA
    exports = build_export_table(
        EXPORTS_RVA,
        SAMPLE_EXPORT_NAME,
        SAMPLE_ENTRY_POINTS,
        SAMPLE_EXPORT_NAMES,
        base=SAMPLE_EXPORT_BASE,
    )
    tls = build_tls_directory(is_64bit, image_base + TLS_INDEX_RVA)
    tls_size = (TlsDirectory64 if is_64bit else TlsDirectory32).SIZE

    sections = [
        Section(".text", TEXT_RVA, CODE.ljust(0x40, b"\x90"), 0x40, None, CODE_FLAGS),
        Section(".rdata", RDATA_RVA, imports.ljust(0x400, b"\x00") + exports),
        Section(".data", DATA_RVA, tls.ljust(0x300, b"\x00"), None, None, DATA_FLAGS),
    ]
    directories = {
        IMAGE_DIRECTORY_ENTRY_EXPORT: (EXPORTS_RVA, len(exports)),
        IMAGE_DIRECTORY_ENTRY_IMPORT: (IMPORTS_RVA, imports_size),
        IMAGE_DIRECTORY_ENTRY_RESOURCE: (RESOURCE_RVA, 0x10),
        IMAGE_DIRECTORY_ENTRY_TLS: (TLS_RVA, tls_size),
    }
    characteristics = IMAGE_FILE_EXECUTABLE_IMAGE
    if dll:
        characteristics |= IMAGE_FILE_DLL
    return build_pe(
        sections,
        directories,
        is_64bit=is_64bit,
        entry_point=TEXT_RVA,
        characteristics=characteristics,
        dos_stub=build_dos_stub(RICH_ENTRIES) if with_rich else None,
        lfanew=0x100,
    )
