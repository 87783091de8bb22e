"""Compound File Binary (OLE structured storage) reader.

Windows Installer databases are stored as compound files: a FAT-style
sector filesystem holding named streams in a red-black directory tree.
Only the read path is implemented, and only streams stored directly in the
root storage are exposed, which is where installer databases keep both
their tables and their embedded cabinets.
"""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field

from msfs_sdk_tools.core.errors import ArchiveFormatError, NotFoundError
from msfs_sdk_tools.formats.base import FormatParser, as_bytes

logger = structlog.get_logger()

CFB_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
HEADER_SIZE = 512
DIRECTORY_ENTRY_SIZE = 128
HEADER_DIFAT_ENTRIES = 109

# Special sector numbers
MAXREGSECT = 0xFFFFFFFA
DIFSECT = 0xFFFFFFFC
FATSECT = 0xFFFFFFFD
ENDOFCHAIN = 0xFFFFFFFE
FREESECT = 0xFFFFFFFF
NOSTREAM = 0xFFFFFFFF


class CompoundFileError(ArchiveFormatError):
    """Raised when a compound file is malformed."""


class EntryType(IntEnum):
    """Directory entry object types."""
    UNKNOWN = 0
    STORAGE = 1
    STREAM = 2
    ROOT = 5


class CompoundHeader(BaseModel):
    """Compound file header."""

    minor_version: int = Field(description="Minor format version")
    major_version: int = Field(description="Major format version (3 or 4)")
    sector_shift: int = Field(description="Sector size as a power of two")
    mini_sector_shift: int = Field(description="Mini sector size as a power of two")
    directory_sector_count: int = Field(description="Directory sectors (v4 only)")
    fat_sector_count: int = Field(description="Number of FAT sectors")
    first_directory_sector: int = Field(description="First directory sector")
    mini_stream_cutoff: int = Field(description="Streams below this size live in the mini stream")
    first_mini_fat_sector: int = Field(description="First mini FAT sector")
    mini_fat_sector_count: int = Field(description="Number of mini FAT sectors")
    first_difat_sector: int = Field(description="First DIFAT sector")
    difat_sector_count: int = Field(description="Number of DIFAT sectors")
    difat: list[int] = Field(description="FAT sector locations stored in the header")

    @property
    def sector_size(self) -> int:
        return 1 << self.sector_shift

    @property
    def mini_sector_size(self) -> int:
        return 1 << self.mini_sector_shift


class DirectoryEntry(BaseModel):
    """Compound file directory entry."""

    index: int = Field(description="Entry index in the directory stream")
    name: str = Field(description="Entry name")
    entry_type: EntryType = Field(description="Object type")
    left: int = Field(description="Left sibling entry")
    right: int = Field(description="Right sibling entry")
    child: int = Field(description="Child entry (storages only)")
    start_sector: int = Field(description="First sector of the stream")
    size: int = Field(description="Stream size in bytes")


def _sector_chain(start: int, table: list[int]) -> list[int]:
    """Follow an allocation chain, guarding against loops."""
    sectors: list[int] = []
    sector = start
    while sector != ENDOFCHAIN:
        if sector > MAXREGSECT or sector >= len(table):
            raise CompoundFileError(f"Invalid sector in chain: {sector:#x}", sector=sector)
        if len(sectors) > len(table):
            raise CompoundFileError("Sector chain loops", start=start)
        sectors.append(sector)
        sector = table[sector]
    return sectors


def _read_chain(
    data: bytes,
    sectors: list[int],
    sector_size: int,
    size: int | None,
    base: int = 0,
) -> bytes:
    """Concatenate the sectors of a chain and trim to the stream size."""
    chunks = []
    for sector in sectors:
        offset = base + sector * sector_size
        chunks.append(data[offset:offset + sector_size])
    result = b"".join(chunks)
    if size is None:
        return result
    if len(result) < size:
        raise CompoundFileError(
            f"Stream truncated: expected {size} bytes, found {len(result)}",
            expected=size, actual=len(result),
        )
    return result[:size]


class CompoundFile:
    """Parsed compound file with access to root-level streams."""

    def __init__(
        self,
        data: bytes,
        header: CompoundHeader,
        fat: list[int],
        mini_fat: list[int],
        entries: list[DirectoryEntry],
    ):
        self._data = data
        self.header = header
        self.fat = fat
        self.mini_fat = mini_fat
        self.entries = entries
        self._mini_stream: bytes | None = None
        self._streams = {entry.name: entry for entry in self._root_children()}

    @property
    def root(self) -> DirectoryEntry:
        return self.entries[0]

    def list_streams(self) -> list[str]:
        """List the names of streams stored in the root storage."""
        return [
            name for name, entry in self._streams.items()
            if entry.entry_type == EntryType.STREAM
        ]

    def has_stream(self, name: str) -> bool:
        entry = self._streams.get(name)
        return entry is not None and entry.entry_type == EntryType.STREAM

    def read_stream(self, name: str) -> bytes:
        """Read a root-level stream.

        Args:
            name: Stream name as stored in the directory

        Returns:
            Stream contents

        Raises:
            NotFoundError: If no such stream exists
        """
        entry = self._streams.get(name)
        if entry is None or entry.entry_type != EntryType.STREAM:
            raise NotFoundError(f"Stream not found in compound file: {name!r}", stream=name)
        if entry.size == 0:
            return b""
        if entry.size < self.header.mini_stream_cutoff:
            return _read_chain(
                self._get_mini_stream(),
                _sector_chain(entry.start_sector, self.mini_fat),
                self.header.mini_sector_size,
                entry.size,
            )
        return _read_chain(
            self._data,
            _sector_chain(entry.start_sector, self.fat),
            self.header.sector_size,
            entry.size,
            base=self.header.sector_size,
        )

    def _get_mini_stream(self) -> bytes:
        if self._mini_stream is None:
            self._mini_stream = _read_chain(
                self._data,
                _sector_chain(self.root.start_sector, self.fat),
                self.header.sector_size,
                self.root.size,
                base=self.header.sector_size,
            )
        return self._mini_stream

    def _root_children(self) -> list[DirectoryEntry]:
        """In-order walk of the root storage's sibling tree."""
        children: list[DirectoryEntry] = []
        visited: set[int] = set()
        stack: list[int] = []
        current = self.root.child

        while stack or current != NOSTREAM:
            while current != NOSTREAM:
                if current in visited or current >= len(self.entries):
                    raise CompoundFileError(
                        f"Invalid directory tree reference: {current}", entry=current
                    )
                visited.add(current)
                stack.append(current)
                current = self.entries[current].left
            entry = self.entries[stack.pop()]
            children.append(entry)
            current = entry.right

        return children


class CompoundFileParser(FormatParser[CompoundFile]):
    """Parser for compound files."""

    def parse(self, data: bytes | BinaryIO) -> CompoundFile:
        """Parse a compound file.

        Args:
            data: Binary data or stream

        Returns:
            Parsed compound file
        """
        raw = as_bytes(data)
        header = self._parse_header(raw)

        logger.debug(
            "Parsed compound file header",
            version=header.major_version,
            sector_size=header.sector_size,
            fat_sectors=header.fat_sector_count,
        )

        fat = self._parse_fat(raw, header)
        sector_size = header.sector_size

        mini_fat: list[int] = []
        if header.mini_fat_sector_count and header.first_mini_fat_sector <= MAXREGSECT:
            mini_fat_data = _read_chain(
                raw, _sector_chain(header.first_mini_fat_sector, fat),
                sector_size, None, base=sector_size,
            )
            mini_fat = list(struct.unpack_from(f"<{len(mini_fat_data) // 4}I", mini_fat_data))

        directory_data = _read_chain(
            raw, _sector_chain(header.first_directory_sector, fat),
            sector_size, None, base=sector_size,
        )
        entries = self._parse_directory(directory_data, header)

        return CompoundFile(raw, header, fat, mini_fat, entries)

    def _parse_header(self, raw: bytes) -> CompoundHeader:
        if len(raw) < HEADER_SIZE:
            raise CompoundFileError("Insufficient data for compound file header", size=len(raw))
        if raw[:8] != CFB_MAGIC:
            raise CompoundFileError(f"Invalid compound file magic: {raw[:8].hex()}")

        (minor_version, major_version, byte_order, sector_shift,
         mini_sector_shift) = struct.unpack_from("<HHHHH", raw, 24)
        if byte_order != 0xFFFE:
            raise CompoundFileError(f"Invalid byte order mark: {byte_order:#06x}")
        if (major_version, sector_shift) not in ((3, 9), (4, 12)):
            raise CompoundFileError(
                f"Unsupported compound file version {major_version} "
                f"with sector shift {sector_shift}"
            )

        (directory_sector_count, fat_sector_count, first_directory_sector,
         _transaction, mini_stream_cutoff, first_mini_fat_sector,
         mini_fat_sector_count, first_difat_sector,
         difat_sector_count) = struct.unpack_from("<9I", raw, 40)
        difat = list(struct.unpack_from(f"<{HEADER_DIFAT_ENTRIES}I", raw, 76))

        return CompoundHeader(
            minor_version=minor_version,
            major_version=major_version,
            sector_shift=sector_shift,
            mini_sector_shift=mini_sector_shift,
            directory_sector_count=directory_sector_count,
            fat_sector_count=fat_sector_count,
            first_directory_sector=first_directory_sector,
            mini_stream_cutoff=mini_stream_cutoff,
            first_mini_fat_sector=first_mini_fat_sector,
            mini_fat_sector_count=mini_fat_sector_count,
            first_difat_sector=first_difat_sector,
            difat_sector_count=difat_sector_count,
            difat=difat,
        )

    def _parse_fat(self, raw: bytes, header: CompoundHeader) -> list[int]:
        sector_size = header.sector_size
        per_sector = sector_size // 4

        fat_sectors = [s for s in header.difat if s <= MAXREGSECT]

        # Further FAT locations live in a chain of DIFAT sectors whose last
        # slot points at the next DIFAT sector
        difat_sector = header.first_difat_sector
        for _ in range(header.difat_sector_count):
            if difat_sector > MAXREGSECT:
                break
            offset = (difat_sector + 1) * sector_size
            if offset + sector_size > len(raw):
                raise CompoundFileError(f"DIFAT sector out of range: {difat_sector}")
            values = struct.unpack_from(f"<{per_sector}I", raw, offset)
            fat_sectors.extend(s for s in values[:-1] if s <= MAXREGSECT)
            difat_sector = values[-1]

        fat: list[int] = []
        for sector in fat_sectors[:header.fat_sector_count]:
            offset = (sector + 1) * sector_size
            if offset + sector_size > len(raw):
                raise CompoundFileError(f"FAT sector out of range: {sector}", sector=sector)
            fat.extend(struct.unpack_from(f"<{per_sector}I", raw, offset))
        return fat

    def _parse_directory(self, data: bytes, header: CompoundHeader) -> list[DirectoryEntry]:
        entries: list[DirectoryEntry] = []
        for index in range(len(data) // DIRECTORY_ENTRY_SIZE):
            offset = index * DIRECTORY_ENTRY_SIZE
            name_length = struct.unpack_from("<H", data, offset + 64)[0]
            entry_type = data[offset + 66]
            left, right, child = struct.unpack_from("<III", data, offset + 68)
            start_sector = struct.unpack_from("<I", data, offset + 116)[0]
            size = struct.unpack_from("<Q", data, offset + 120)[0]
            if header.major_version == 3:
                size &= 0xFFFFFFFF

            if entry_type not in EntryType._value2member_map_:
                raise CompoundFileError(f"Invalid directory entry type: {entry_type}", entry=index)

            # Name length counts the UTF-16 terminator
            name_bytes = data[offset:offset + max(min(name_length, 64) - 2, 0)]
            try:
                name = name_bytes.decode("utf-16-le")
            except UnicodeDecodeError as e:
                raise CompoundFileError(f"Invalid directory entry name: {e}", entry=index) from e

            entries.append(DirectoryEntry(
                index=index,
                name=name,
                entry_type=EntryType(entry_type),
                left=left,
                right=right,
                child=child,
                start_sector=start_sector,
                size=size,
            ))

        if not entries or entries[0].entry_type != EntryType.ROOT:
            raise CompoundFileError("Compound file has no root entry")
        return entries


def is_compound_file(data: bytes) -> bool:
    """Check if data starts with the compound file signature.

    Args:
        data: Binary data to check

    Returns:
        True if data looks like a compound file
    """
    return len(data) >= HEADER_SIZE and data[:8] == CFB_MAGIC
