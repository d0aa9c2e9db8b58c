"""
Import directory parser.

Walks the IMAGE_IMPORT_DESCRIPTOR array and decodes both thunk arrays of
every descriptor: the import lookup table (OriginalFirstThunk) and the
import address table (FirstThunk).

The walk also defeats the "imports terminator in TLS" trick: a crafted
image places the TLS AddressOfIndex slot on the FirstThunk field of the
descriptor after the last real one. The loader zeroes that slot before
imports are processed, which terminates the table, but a naive parser keeps
reading and decodes garbage descriptors. The parser therefore stops at the
descriptor whose FirstThunk field coincides with AddressOfIndex.

References:
- http://sandsprite.com/CodeStuff/Understanding_imports.html
- http://code.google.com/p/corkami/source/browse/trunk/asm/PE/manyimportsW7.asm
"""

from typing import TYPE_CHECKING

from .stream import read_cstring, read_u16, read_u32, read_u64, seek_to
from .types import (
    IMAGE_DIRECTORY_ENTRY_IMPORT,
    IMPORT_DESCRIPTOR_FIRST_THUNK_OFFSET,
    ImportDescriptor,
    ImportedFunction,
)

if TYPE_CHECKING:
    from .decoder import PEFile

THUNK_TABLES = (
    ("original_first_thunk", "OriginalFirstThunk"),
    ("first_thunk", "FirstThunk"),
)


def tls_anchor(pe: "PEFile") -> int | None:
    """File offset of the first TLS entry's AddressOfIndex slot, if any."""
    tls = pe.tls
    if not tls:
        return None
    image_base = pe.optional_header.ImageBase
    if tls[0].AddressOfIndex <= image_base:
        return None
    return pe.resolver.resolve_va(tls[0].AddressOfIndex, image_base)


def read_thunk_values(pe: "PEFile", rva: int) -> list[int] | None:
    """Read a zero-terminated array of pointer-sized thunk values.

    Returns:
        Raw values (truncated at EOF), or None if the array is absent or
        cannot be located
    """
    if rva == 0 or not seek_to(pe.stream, pe.va2file(rva)):
        return None
    read_value = read_u64 if pe.is_64bit else read_u32
    values = []
    while True:
        value = read_value(pe.stream)
        if not value:
            break
        values.append(value)
    return values


def decode_thunk(
    pe: "PEFile",
    value: int,
    table: str,
    index: int,
    module_name: str | None,
) -> ImportedFunction | None:
    """Decode one thunk value into an ordinal or a (hint, name) import."""
    top_bit = 1 << (63 if pe.is_64bit else 31)
    if value & top_bit:
        return ImportedFunction(ordinal=value & (top_bit - 1))

    offset = pe.va2file(value, quiet=True)
    if offset is not None and offset >= 0:
        if offset >= pe.size:
            pe.logger.warning("[?] import va 0x%x beyond EOF", offset)
            return None
        pe.stream.seek(offset)
        hint = read_u16(pe.stream)
        return ImportedFunction(hint=hint, name=read_cstring(pe.stream))

    if table == "OriginalFirstThunk":
        # The lookup table must only hold valid entries
        pe.logger.error(
            "[?] invalid VA 0x%x in %s[%d] for %s", value, table, index, module_name
        )
    else:
        # Bound import address tables legitimately hold raw addresses
        pe.logger.info(
            "[?] invalid VA 0x%x in %s[%d] for %s", value, table, index, module_name
        )
    return None


def decode_thunk_table(
    pe: "PEFile", values: list[int], table: str, module_name: str | None
) -> list[ImportedFunction]:
    """Decode raw thunk values, resolving each distinct value once."""
    cache: dict[int, ImportedFunction | None] = {}
    functions = []
    for idx, value in enumerate(values):
        if value not in cache:
            cache[value] = decode_thunk(pe, value, table, idx, module_name)
        if cache[value] is not None:
            functions.append(cache[value])
    return functions


def read_descriptors(pe: "PEFile", file_offset: int) -> list[ImportDescriptor]:
    """Read descriptors from file_offset up to the terminator."""
    anchor = tls_anchor(pe)
    pe.stream.seek(file_offset)

    descriptors = []
    terminator = None
    while True:
        if (
            anchor is not None
            and anchor == file_offset + IMPORT_DESCRIPTOR_FIRST_THUNK_OFFSET
        ):
            pe.logger.warning("[!] catched the 'imports terminator in TLS trick'")
            break
        desc = ImportDescriptor.read(pe.stream)
        if desc is None or desc.Name == 0:  # also catches EOF
            terminator = desc
            break
        descriptors.append(desc)
        file_offset += ImportDescriptor.SIZE

    if terminator is not None and not terminator.empty:
        pe.logger.warning("[?] non-empty last IMAGE_IMPORT_DESCRIPTOR: %r", terminator)
    return descriptors


def parse_imports(pe: "PEFile") -> list[ImportDescriptor] | None:
    """Decode the import table of an image.

    Args:
        pe: Decode session with a decoded PE header

    Returns:
        List of descriptors with module names and decoded thunk tables;
        an empty list if the image has no import directory; None if the
        directory cannot be located
    """
    ioh = pe.optional_header
    if ioh is None:
        return None

    directory = ioh.get_data_directory(IMAGE_DIRECTORY_ENTRY_IMPORT)
    if directory is None or not directory.is_present:
        return []

    file_offset = pe.va2file(directory.VirtualAddress)
    if file_offset is None or file_offset < 0:
        return None

    descriptors = read_descriptors(pe, file_offset)

    for desc in descriptors:
        if seek_to(pe.stream, pe.va2file(desc.Name)):
            desc.module_name = read_cstring(pe.stream)

        for attr, table in THUNK_TABLES:
            values = read_thunk_values(pe, getattr(desc, table))
            if values is not None:
                setattr(
                    desc,
                    attr,
                    decode_thunk_table(pe, values, table, desc.module_name),
                )

        oft, ft = desc.original_first_thunk, desc.first_thunk
        if oft is not None and ft is None:
            pe.logger.warning(
                "[?] import table: empty FirstThunk for %s", desc.module_name
            )
        elif oft is None and ft is not None:
            pe.logger.info(
                "[?] import table: empty OriginalFirstThunk for %s", desc.module_name
            )
        elif oft != ft:
            pe.logger.debug(
                "[?] import table: OriginalFirstThunk != FirstThunk for %s",
                desc.module_name,
            )

    return descriptors
