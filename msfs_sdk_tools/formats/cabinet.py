"""Microsoft Cabinet (MSCF) archive reader.

Installer payloads live in cabinets, either embedded as streams of the
installer database or shipped beside it. A cabinet groups file entries into
folders; each folder is one compressed stream split into data blocks of at
most 32 KiB uncompressed. Listing entries never decompresses anything, and
extraction decompresses each folder only as far as the last wanted entry.
"""

from __future__ import annotations

import struct
import zlib
from collections.abc import Iterable, Iterator
from enum import IntEnum
from typing import BinaryIO, Protocol

import structlog
from pydantic import BaseModel, Field

from msfs_sdk_tools.core.errors import ArchiveFormatError, NotFoundError
from msfs_sdk_tools.formats.base import FormatParser, as_bytes
from msfs_sdk_tools.formats.lzx import LZXDecoder

logger = structlog.get_logger()

CAB_MAGIC = b"MSCF"
HEADER_SIZE = 36
FOLDER_ENTRY_SIZE = 8
FILE_ENTRY_SIZE = 16
DATA_HEADER_SIZE = 8
MSZIP_SIGNATURE = b"CK"
MSZIP_HISTORY = 32768

FLAG_PREV_CABINET = 0x0001
FLAG_NEXT_CABINET = 0x0002
FLAG_RESERVE_PRESENT = 0x0004

ATTRIBUTE_NAME_IS_UTF = 0x80

FOLDER_CONTINUED_FROM_PREV = 0xFFFD
FOLDER_CONTINUED_TO_NEXT = 0xFFFE
FOLDER_CONTINUED_PREV_AND_NEXT = 0xFFFF

COPY_CHUNK_SIZE = 64 * 1024


class CompressionType(IntEnum):
    """Folder compression methods (low nibble of the folder type field)."""
    NONE = 0
    MSZIP = 1
    QUANTUM = 2
    LZX = 3


class CabinetError(ArchiveFormatError):
    """Raised when a cabinet is malformed or uses an unsupported feature."""


class CabinetHeader(BaseModel):
    """Cabinet file header."""
    size: int = Field(description="Declared total cabinet size")
    files_offset: int = Field(description="Offset of the first file entry")
    version_major: int
    version_minor: int
    folder_count: int
    file_count: int
    flags: int
    set_id: int
    cabinet_index: int
    header_reserve: int = 0
    folder_reserve: int = 0
    data_reserve: int = 0
    prev_cabinet: str | None = None
    next_cabinet: str | None = None


class CabinetFolder(BaseModel):
    """Folder entry: one compressed stream of data blocks."""
    index: int
    data_offset: int
    block_count: int
    compression: int = Field(description="Raw compression type field")

    @property
    def compression_type(self) -> int:
        return self.compression & 0x000F

    @property
    def lzx_window_bits(self) -> int:
        return (self.compression >> 8) & 0x1F


class CabinetEntry(BaseModel):
    """File entry inside a cabinet."""
    name: str
    size: int
    folder_index: int
    folder_offset: int = Field(description="Offset within the uncompressed folder")
    date: int = 0
    time: int = 0
    attributes: int = 0

    @property
    def spanned(self) -> bool:
        return self.folder_index >= FOLDER_CONTINUED_FROM_PREV


class _BlockDecoder(Protocol):
    def decompress(self, data: bytes, out_size: int) -> bytes: ...


class _StoredDecoder:
    def decompress(self, data: bytes, out_size: int) -> bytes:
        if len(data) != out_size:
            raise CabinetError("Stored block size mismatch", expected=out_size, actual=len(data))
        return data


class _MszipDecoder:
    """Deflate blocks sharing a 32 KiB history with the previous block."""

    def __init__(self) -> None:
        self.history = b""

    def decompress(self, data: bytes, out_size: int) -> bytes:
        if data[:2] != MSZIP_SIGNATURE:
            raise CabinetError("MSZIP block missing signature")
        if self.history:
            decompressor = zlib.decompressobj(-15, zdict=self.history)
        else:
            decompressor = zlib.decompressobj(-15)
        try:
            output = decompressor.decompress(data[2:]) + decompressor.flush()
        except zlib.error as e:
            raise CabinetError(f"MSZIP block corrupt: {e}") from e
        if len(output) != out_size:
            raise CabinetError("MSZIP block size mismatch", expected=out_size, actual=len(output))
        self.history = (self.history + output)[-MSZIP_HISTORY:]
        return output


class FolderReader:
    """Sequential reader over the decompressed bytes of one folder."""

    def __init__(self, blocks: Iterator[bytes]):
        self._blocks = blocks
        self._buffer = b""
        self._offset = 0
        self.position = 0

    def _fill(self) -> bool:
        while self._offset >= len(self._buffer):
            try:
                self._buffer = next(self._blocks)
            except StopIteration:
                return False
            self._offset = 0
        return True

    def read(self, size: int) -> bytes:
        if not self._fill():
            return b""
        chunk = self._buffer[self._offset:self._offset + size]
        self._offset += len(chunk)
        self.position += len(chunk)
        return chunk

    def skip_to(self, position: int) -> None:
        while self.position < position:
            if not self.read(position - self.position):
                raise CabinetError("Folder ended before entry offset", offset=position)

    def iter_chunks(self, size: int) -> Iterator[bytes]:
        remaining = size
        while remaining > 0:
            chunk = self.read(min(remaining, COPY_CHUNK_SIZE))
            if not chunk:
                raise CabinetError("Folder ended inside entry", missing=remaining)
            remaining -= len(chunk)
            yield chunk


class CabinetFile:
    """Parsed cabinet: header, folders and file entries over the raw bytes."""

    def __init__(self, data: bytes, header: CabinetHeader,
                 folders: list[CabinetFolder], entries: list[CabinetEntry]):
        self.data = data
        self.header = header
        self.folders = folders
        self.entries = entries
        self._by_name = {entry.name: entry for entry in entries}

    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def entry(self, name: str) -> CabinetEntry:
        try:
            return self._by_name[name]
        except KeyError:
            raise NotFoundError(f"Cabinet has no entry {name!r}", entry=name) from None

    def open_folder(self, index: int) -> FolderReader:
        """Open a streaming reader over one folder's decompressed data."""
        if index >= len(self.folders):
            raise CabinetError(f"Folder index out of range: {index}", folder=index)
        return FolderReader(self._iter_blocks(self.folders[index]))

    def _decoder_for(self, folder: CabinetFolder) -> _BlockDecoder:
        method = folder.compression_type
        if method == CompressionType.NONE:
            return _StoredDecoder()
        if method == CompressionType.MSZIP:
            return _MszipDecoder()
        if method == CompressionType.LZX:
            return LZXDecoder(folder.lzx_window_bits)
        if method == CompressionType.QUANTUM:
            raise CabinetError("Quantum compression is not supported", folder=folder.index)
        raise CabinetError(f"Unknown compression type: {method}", folder=folder.index)

    def _iter_blocks(self, folder: CabinetFolder) -> Iterator[bytes]:
        decoder = self._decoder_for(folder)
        offset = folder.data_offset
        data = self.data
        for block in range(folder.block_count):
            if offset + DATA_HEADER_SIZE > len(data):
                raise CabinetError("Data block header truncated", folder=folder.index, block=block)
            _checksum, compressed_size, uncompressed_size = struct.unpack_from("<IHH", data, offset)
            offset += DATA_HEADER_SIZE + self.header.data_reserve
            payload = data[offset:offset + compressed_size]
            if len(payload) != compressed_size:
                raise CabinetError("Data block truncated", folder=folder.index, block=block)
            if uncompressed_size == 0:
                raise CabinetError("Data block continues in another cabinet", folder=folder.index)
            offset += compressed_size
            yield decoder.decompress(payload, uncompressed_size)

    def extract(self, names: Iterable[str]) -> Iterator[tuple[CabinetEntry, Iterator[bytes]]]:
        """Yield wanted entries with an iterator over each entry's content.

        Entries are produced folder by folder in folder order; each content
        iterator must be consumed before advancing to the next entry. Folders
        holding no wanted entry are never decompressed.

        Args:
            names: Entry names to extract; names not in the cabinet are ignored

        Yields:
            ``(entry, chunks)`` pairs
        """
        by_folder: dict[int, list[CabinetEntry]] = {}
        for name in names:
            entry = self._by_name.get(name)
            if entry is None:
                continue
            if entry.spanned:
                raise CabinetError(f"Entry {name!r} spans cabinets", entry=name)
            by_folder.setdefault(entry.folder_index, []).append(entry)

        for folder_index in sorted(by_folder):
            wanted = sorted(by_folder[folder_index], key=lambda e: e.folder_offset)
            reader = self.open_folder(folder_index)
            for entry in wanted:
                if reader.position > entry.folder_offset:
                    reader = self.open_folder(folder_index)
                reader.skip_to(entry.folder_offset)
                yield entry, reader.iter_chunks(entry.size)

    def read_file(self, name: str) -> bytes:
        """Decompress a single entry into memory."""
        entry = self.entry(name)
        for _, chunks in self.extract([entry.name]):
            return b"".join(chunks)
        return b""


def _read_cstring(data: bytes, offset: int, utf8: bool = False) -> tuple[str, int]:
    end = data.find(b"\x00", offset)
    if end < 0:
        raise CabinetError("Unterminated string in cabinet", offset=offset)
    raw = data[offset:end]
    try:
        text = raw.decode("utf-8") if utf8 else raw.decode("latin-1")
    except UnicodeDecodeError as e:
        raise CabinetError(f"Invalid entry name: {e}", offset=offset) from e
    return text, end + 1


class CabinetParser(FormatParser[CabinetFile]):
    """Parser for cabinet archives."""

    def parse(self, data: bytes | BinaryIO) -> CabinetFile:
        data = as_bytes(data)
        if len(data) < HEADER_SIZE:
            raise CabinetError("Data too short for cabinet header", size=len(data))

        (magic, _reserved1, size, _reserved2, files_offset, _reserved3,
         version_minor, version_major, folder_count, file_count,
         flags, set_id, cabinet_index) = struct.unpack_from("<4sIIIIIBBHHHHH", data, 0)
        if magic != CAB_MAGIC:
            raise CabinetError(f"Invalid cabinet magic: {magic!r}")
        if size > len(data):
            raise CabinetError("Cabinet truncated", declared=size, actual=len(data))

        offset = HEADER_SIZE
        header_reserve = folder_reserve = data_reserve = 0
        if flags & FLAG_RESERVE_PRESENT:
            if offset + 4 > len(data):
                raise CabinetError("Reserve fields truncated", size=len(data))
            header_reserve, folder_reserve, data_reserve = struct.unpack_from("<HBB", data, offset)
            offset += 4 + header_reserve

        prev_cabinet = next_cabinet = None
        if flags & FLAG_PREV_CABINET:
            prev_cabinet, offset = _read_cstring(data, offset)
            _, offset = _read_cstring(data, offset)
        if flags & FLAG_NEXT_CABINET:
            next_cabinet, offset = _read_cstring(data, offset)
            _, offset = _read_cstring(data, offset)

        header = CabinetHeader(
            size=size,
            files_offset=files_offset,
            version_major=version_major,
            version_minor=version_minor,
            folder_count=folder_count,
            file_count=file_count,
            flags=flags,
            set_id=set_id,
            cabinet_index=cabinet_index,
            header_reserve=header_reserve,
            folder_reserve=folder_reserve,
            data_reserve=data_reserve,
            prev_cabinet=prev_cabinet,
            next_cabinet=next_cabinet,
        )

        folders = []
        for index in range(folder_count):
            if offset + FOLDER_ENTRY_SIZE > len(data):
                raise CabinetError("Folder table truncated", folder=index)
            data_offset, block_count, compression = struct.unpack_from("<IHH", data, offset)
            offset += FOLDER_ENTRY_SIZE + folder_reserve
            folders.append(CabinetFolder(
                index=index,
                data_offset=data_offset,
                block_count=block_count,
                compression=compression,
            ))

        entries = []
        offset = files_offset
        for index in range(file_count):
            if offset + FILE_ENTRY_SIZE > len(data):
                raise CabinetError("File table truncated", entry=index)
            (entry_size, folder_offset, folder_index,
             date, time, attributes) = struct.unpack_from("<IIHHHH", data, offset)
            name, offset = _read_cstring(
                data, offset + FILE_ENTRY_SIZE, bool(attributes & ATTRIBUTE_NAME_IS_UTF)
            )
            if folder_index < FOLDER_CONTINUED_FROM_PREV and folder_index >= folder_count:
                raise CabinetError("File entry references missing folder", entry=name, folder=folder_index)
            entries.append(CabinetEntry(
                name=name,
                size=entry_size,
                folder_index=folder_index,
                folder_offset=folder_offset,
                date=date,
                time=time,
                attributes=attributes,
            ))

        logger.debug("cabinet_parsed", folders=folder_count, files=file_count, set_id=set_id)
        return CabinetFile(data, header, folders, entries)


def is_cabinet(data: bytes) -> bool:
    """Check whether data starts with a cabinet header."""
    return len(data) >= HEADER_SIZE and data[:4] == CAB_MAGIC
