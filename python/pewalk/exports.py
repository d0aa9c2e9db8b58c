"""Export directory parser."""

from typing import TYPE_CHECKING, Callable

from .stream import at_eof, read_cstring, read_u16, read_u32, seek_to
from .types import IMAGE_DIRECTORY_ENTRY_EXPORT, ExportDirectory

if TYPE_CHECKING:
    from .decoder import PEFile


def read_array(
    pe: "PEFile",
    rva: int,
    count: int,
    read_value: Callable,
    what: str,
) -> list[int] | None:
    """Read count scalars at rva, stopping with a warning at EOF.

    Returns:
        Values read, or None if the array cannot be located
    """
    if rva == 0 or not seek_to(pe.stream, pe.va2file(rva)):
        return None
    values = []
    for _ in range(count):
        value = None if at_eof(pe.stream, pe.size) else read_value(pe.stream)
        if value is None:
            pe.logger.warning("[?] got EOF while reading exports %s", what)
            break
        values.append(value)
    return values


def parse_exports(pe: "PEFile") -> ExportDirectory | None:
    """Decode the export directory of an image.

    Name ordinals are biased by the directory's Base, so they can be used
    as ordinals directly. Names that cannot be located are kept as None to
    stay aligned with name_ordinals.

    Args:
        pe: Decode session with a decoded PE header

    Returns:
        ExportDirectory with resolved name, entry points, names and
        ordinals; None if the image has no export directory or it cannot
        be located
    """
    ioh = pe.optional_header
    if ioh is None:
        return None

    directory = ioh.get_data_directory(IMAGE_DIRECTORY_ENTRY_EXPORT)
    if directory is None or not directory.is_present:
        return None

    f = pe.stream
    if not seek_to(f, pe.va2file(directory.VirtualAddress)):
        return None
    if at_eof(f, pe.size):
        pe.logger.info("[?] exports info beyond EOF")
        return None

    exports = ExportDirectory.read(f)

    if exports.Name != 0:
        offset = pe.va2file(exports.Name)
        if seek_to(f, offset):
            if at_eof(f, pe.size):
                pe.logger.warning("[?] export va 0x%x beyond EOF", offset)
            else:
                exports.name = read_cstring(f)

    if exports.NumberOfFunctions != 0:
        entry_points = read_array(
            pe,
            exports.AddressOfFunctions,
            exports.NumberOfFunctions,
            read_u32,
            "entry_points",
        )
        if entry_points is not None:
            exports.entry_points = entry_points

        ordinals = read_array(
            pe,
            exports.AddressOfNameOrdinals,
            exports.NumberOfNames,
            read_u16,
            "name_ordinals",
        )
        if ordinals is not None:
            exports.name_ordinals = [o + exports.Base for o in ordinals]

    if exports.NumberOfNames != 0:
        name_rvas = read_array(
            pe, exports.AddressOfNames, exports.NumberOfNames, read_u32, "names"
        )
        for rva in name_rvas or []:
            if seek_to(f, pe.va2file(rva)):
                exports.names.append(read_cstring(f))
            else:
                exports.names.append(None)

    return exports
