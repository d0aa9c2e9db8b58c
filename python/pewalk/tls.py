"""TLS directory parser."""

from typing import TYPE_CHECKING

from .stream import at_eof, seek_to
from .types import (
    IMAGE_DIRECTORY_ENTRY_TLS,
    TlsDirectory,
    TlsDirectory32,
    TlsDirectory64,
)

if TYPE_CHECKING:
    from .decoder import PEFile


def parse_tls(pe: "PEFile") -> list[TlsDirectory] | None:
    """Decode the TLS directory entries of an image.

    The entry layout follows the image bitness. The number of entries is
    derived from the directory size, with at least one entry read.

    Args:
        pe: Decode session with a decoded PE header

    Returns:
        List of TLS entries (possibly truncated at EOF), or None if the
        image has no TLS directory or it cannot be located
    """
    ioh = pe.optional_header
    if ioh is None:
        return None

    directory = ioh.get_data_directory(IMAGE_DIRECTORY_ENTRY_TLS)
    if directory is None or directory.VirtualAddress == 0:
        return None

    f = pe.stream
    if not seek_to(f, pe.va2file(directory.VirtualAddress)):
        return None
    if at_eof(f, pe.size):
        pe.logger.info("[?] TLS info beyond EOF")
        return None

    klass = TlsDirectory64 if ioh.IS_64BIT else TlsDirectory32
    count = max(1, directory.Size // klass.SIZE)

    entries: list[TlsDirectory] = []
    for _ in range(count):
        if at_eof(f, pe.size):
            break
        entry = klass.read(f)
        if entry is None:
            break
        entries.append(entry)
    return entries
