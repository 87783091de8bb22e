"""Read-only parsers for the container formats an SDK installer ships in.

- Compound file: OLE structured storage holding the installer database
- Installer database: string pool, table catalogue and table rows
- Cabinet: MSCF archives with stored, MSZIP and LZX folders
- LZX: the LZ77/Huffman codec used by installer cabinets
"""

from msfs_sdk_tools.formats.base import FormatParser
from msfs_sdk_tools.formats.cabinet import (
    CabinetEntry,
    CabinetError,
    CabinetFile,
    CabinetFolder,
    CabinetHeader,
    CabinetParser,
    CompressionType,
    is_cabinet,
)
from msfs_sdk_tools.formats.compound import (
    CompoundFile,
    CompoundFileError,
    CompoundFileParser,
    CompoundHeader,
    DirectoryEntry,
    is_compound_file,
)
from msfs_sdk_tools.formats.lzx import LZXDecoder, LZXError
from msfs_sdk_tools.formats.msi import (
    Column,
    ColumnKind,
    MsiDatabase,
    MsiDatabaseParser,
    StringPool,
    TableSchema,
    decode_stream_name,
)

__all__ = [
    # Base
    "FormatParser",
    # Cabinet
    "CabinetEntry",
    "CabinetError",
    "CabinetFile",
    "CabinetFolder",
    "CabinetHeader",
    "CabinetParser",
    "CompressionType",
    "is_cabinet",
    # Compound file
    "CompoundFile",
    "CompoundFileError",
    "CompoundFileParser",
    "CompoundHeader",
    "DirectoryEntry",
    "is_compound_file",
    # LZX
    "LZXDecoder",
    "LZXError",
    # Installer database
    "Column",
    "ColumnKind",
    "MsiDatabase",
    "MsiDatabaseParser",
    "StringPool",
    "TableSchema",
    "decode_stream_name",
]
