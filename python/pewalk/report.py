"""
Decode reports.

A report is a plain dict of everything a PEFile session decoded, made of
str/int/list/dict/None values only, so it can be written as JSON or packed
with MessagePack and compared across runs. Byte strings are rendered as hex.
"""

from dataclasses import asdict, is_dataclass
from typing import TYPE_CHECKING, Any

import msgpack

if TYPE_CHECKING:
    from .decoder import PEFile


class ReportFormatError(ValueError):
    """Raised when packed report data cannot be decoded."""

    pass


def plain(value: Any) -> Any:
    """Convert decoded records into JSON-compatible values."""
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, dict):
        return {str(k): plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value


def to_dict(pe: "PEFile") -> dict[str, Any]:
    """Render a decode session as a report dict.

    Parts that are not decoded yet are decoded now. Parts that could not be
    decoded are None.
    """
    report: dict[str, Any] = {
        "name": pe.name,
        "size": pe.size,
        "mz": plain(pe.mz),
        "dos_stub": None,
        "rich_header": None,
        "pe": None,
        "tls": plain(pe.tls),
        "imports": plain(pe.imports),
        "exports": plain(pe.exports),
    }

    stub = pe.dos_stub
    if stub is not None:
        report["dos_stub"] = {"offset": stub.offset, "size": len(stub.raw)}

    rich = pe.rich_header
    if rich is not None:
        entries = pe.rich_entries
        report["rich_header"] = {
            "offset": rich.offset,
            "key": rich.key_value,
            "entries": plain(entries) if entries is not None else None,
        }

    hdr = pe.pe_header
    if hdr is not None:
        coff = hdr.coff_header
        ioh = hdr.optional_header
        optional = None
        if ioh is not None:
            optional = plain(ioh)
            optional["flags"] = ioh.flags
            optional["subsystem_name"] = ioh.subsystem_name
        sections = []
        for shdr in hdr.sections:
            entry = plain(shdr)
            entry["Name"] = shdr.name_str
            entry["flags_desc"] = shdr.flags_desc
            sections.append(entry)
        report["pe"] = {
            "signature": hdr.signature.hex(),
            "offset": hdr.offset,
            "coff_header": dict(
                plain(coff), flags=coff.flags, machine_name=coff.machine_name
            ),
            "optional_header": optional,
            "sections": sections,
        }

    return report


def dump_report(pe: "PEFile") -> bytes:
    """Pack a decode session's report with MessagePack."""
    return msgpack.packb(to_dict(pe), use_bin_type=True)


def load_report(data: bytes) -> dict[str, Any]:
    """Unpack a report produced by dump_report().

    Raises:
        ReportFormatError: If data is not a packed report dict
    """
    try:
        report = msgpack.unpackb(data, raw=False, strict_map_key=True)
    except (msgpack.exceptions.UnpackException, ValueError) as e:
        raise ReportFormatError(f"Failed to parse report data: {e}") from e
    if not isinstance(report, dict):
        raise ReportFormatError(
            f"Invalid report format: expected dict, got {type(report).__name__}"
        )
    return report
