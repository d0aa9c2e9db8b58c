#!/usr/bin/env python3
"""
PE structure dump CLI tool.

Decodes the headers, sections and import/export/TLS tables of one or more
Windows images and prints a summary, a JSON report or a MessagePack report.
Decoder diagnostics go to stderr through logging.

Usage:
    python -m pewalk.tools.dump_pe <file>... [--force] [--json] [-v | -q]
    python -m pewalk.tools.dump_pe <file> --msgpack report.msgpack
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from pewalk import PEFile, SampleLoadError
from pewalk.report import dump_report, to_dict


def print_summary(pe: PEFile) -> None:
    """Print a human-readable summary of a decoded image."""
    print(f"File: {pe.name} ({pe.size} bytes)")
    print("-" * 60)

    mz = pe.mz
    if mz is not None:
        print(f"  MZ: signature={mz.signature!r} lfanew=0x{mz.lfanew:x}")

    rich = pe.rich_header
    if rich is not None:
        print(f"  Rich header at 0x{rich.offset:x}, key=0x{rich.key_value:08x}")
        for entry in pe.rich_entries or []:
            print(
                f"    id={entry.id:<5} version={entry.version:<6} times={entry.times}"
            )

    coff = pe.coff_header
    if coff is None:
        print("  no PE header")
        return
    image = "DLL" if coff.is_dll else "EXE" if coff.is_executable else "object"
    print(
        f"  COFF: machine={coff.machine_name} sections={coff.NumberOfSections} "
        f"image={image} flags={' '.join(coff.flags)}"
    )

    ioh = pe.optional_header
    if ioh is not None:
        kind = "PE32+" if ioh.IS_64BIT else "PE32"
        print(
            f"  Optional header: {kind} entry=0x{ioh.AddressOfEntryPoint:x} "
            f"base=0x{ioh.ImageBase:x} subsystem={ioh.subsystem_name} "
            f"aslr={'yes' if ioh.has_aslr else 'no'}"
        )
        if ioh.flags:
            print(f"    DllCharacteristics: {' '.join(ioh.flags)}")
        for directory in ioh.DataDirectory:
            if directory.is_present:
                print(
                    f"    {directory.type:<12} va=0x{directory.VirtualAddress:08x} "
                    f"size=0x{directory.Size:x}"
                )

    print("  Sections:")
    for shdr in pe.sections or []:
        print(
            f"    {shdr.name_str:<8} va=0x{shdr.VirtualAddress:08x} "
            f"vsize=0x{shdr.VirtualSize:08x} raw=0x{shdr.PointerToRawData:08x} "
            f"rsize=0x{shdr.SizeOfRawData:08x} {shdr.flags_desc}"
        )

    imports = pe.imports
    if imports:
        print("  Imports:")
        for desc in imports:
            functions = desc.original_first_thunk or desc.first_thunk or []
            print(f"    {desc.module_name} ({len(functions)} functions)")
            for func in functions:
                if func.ordinal is not None:
                    print(f"      ordinal {func.ordinal}")
                else:
                    print(f"      {func.name} (hint {func.hint})")

    exports = pe.exports
    if exports is not None:
        print(f"  Exports: {exports.name} ({len(exports.entry_points)} entry points)")
        for name, ordinal in zip(exports.names, exports.name_ordinals):
            print(f"    {ordinal:>5} {name}")

    tls = pe.tls
    if tls:
        print("  TLS:")
        for entry in tls:
            print(
                f"    index=0x{entry.AddressOfIndex:x} "
                f"callbacks=0x{entry.AddressOfCallBacks:x}"
            )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Dump the structure of Windows PE images"
    )
    parser.add_argument("files", type=Path, nargs="+", help="PE files to decode")
    parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Keep decoding past bad MZ/PE signatures",
    )
    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        "--json", action="store_true", help="Print a JSON report per file"
    )
    output.add_argument(
        "--msgpack",
        type=Path,
        metavar="OUT",
        help="Write a MessagePack report (single input file only)",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "--verbose", "-v", action="store_true", help="Show debug diagnostics"
    )
    verbosity.add_argument(
        "--quiet", "-q", action="store_true", help="Show errors only"
    )
    args = parser.parse_args(argv)

    if args.msgpack and len(args.files) != 1:
        parser.error("--msgpack takes exactly one input file")

    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")

    failed = False
    for path in args.files:
        if not path.exists():
            print(f"Error: {path} does not exist", file=sys.stderr)
            failed = True
            continue
        try:
            pe = PEFile.load(path, force=args.force)
        except SampleLoadError as e:
            print(f"Error: {e}", file=sys.stderr)
            failed = True
            continue

        with pe:
            pe.dump()
            if pe.pe_header is None:
                failed = True
            if args.msgpack:
                args.msgpack.write_bytes(dump_report(pe))
                print(f"Wrote {args.msgpack}")
            elif args.json:
                print(json.dumps(to_dict(pe), indent=2))
            else:
                print_summary(pe)

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
