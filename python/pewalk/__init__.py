"""
pewalk: Structural decoder for Windows Portable Executable images.

This package decodes the header chain of PE32 and PE32+ images (DOS header,
DOS stub with its Rich header, COFF header, optional header, data
directories and section table) and the import, export and TLS directories.
It is meant for forensic work on malformed and hostile samples: nothing
raises on bad input, problems are reported through logging instead.

    from pewalk import PEFile

    with PEFile.load(path) as pe:
        pe.dump()
        for desc in pe.imports or []:
            print(desc.module_name)

Layout:
- codec: Struct base class for fixed-layout records
- types: PE/COFF record definitions and constant tables
- decoder: PEFile decode session
- rich: DOS stub and Rich header extraction
- resolver: RVA to file offset translation
- imports, exports, tls: Directory table parsers
- report: Report dicts and MessagePack serialization
- sample_io: Plain and zstd-compressed sample loading
"""

from .collaborators import PackerDetector, ResourceDecoder
from .decoder import PEFile, PEHeader
from .report import ReportFormatError, dump_report, load_report, to_dict
from .resolver import AddressResolver
from .rich import DosStub, RichEntry, RichHeader
from .sample_io import SampleLoadError, open_sample
from .types import (
    # Structs
    DosHeader,
    CoffHeader,
    OptionalHeader32,
    OptionalHeader64,
    DataDirectory,
    SectionHeader,
    ImportDescriptor,
    ImportedFunction,
    ExportDirectory,
    TlsDirectory32,
    TlsDirectory64,
    # Constants
    PE_SIGNATURE,
    IMAGE_NT_OPTIONAL_HDR32_MAGIC,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    IMAGE_NUMBEROF_DIRECTORY_ENTRIES,
    DATA_DIRECTORY_TYPES,
    # Helper functions
    section_name_to_bytes,
)

__all__ = [
    # Decode session
    "PEFile",
    "PEHeader",
    "AddressResolver",
    # Rich header
    "DosStub",
    "RichEntry",
    "RichHeader",
    # Collaborators
    "PackerDetector",
    "ResourceDecoder",
    # Reports and samples
    "ReportFormatError",
    "dump_report",
    "load_report",
    "to_dict",
    "SampleLoadError",
    "open_sample",
    # Structs
    "DosHeader",
    "CoffHeader",
    "OptionalHeader32",
    "OptionalHeader64",
    "DataDirectory",
    "SectionHeader",
    "ImportDescriptor",
    "ImportedFunction",
    "ExportDirectory",
    "TlsDirectory32",
    "TlsDirectory64",
    # Constants
    "PE_SIGNATURE",
    "IMAGE_NT_OPTIONAL_HDR32_MAGIC",
    "IMAGE_NT_OPTIONAL_HDR64_MAGIC",
    "IMAGE_NUMBEROF_DIRECTORY_ENTRIES",
    "DATA_DIRECTORY_TYPES",
    # Helper functions
    "section_name_to_bytes",
]
