"""Windows Installer database reader.

An installer database is a compound file whose streams hold relational
tables. Stream names are compressed into a private Unicode range, strings
are interned in a shared pool, and table data is stored column by column.

Layout summary:

- ``_StringPool``: code page header, then ``(length, refcount)`` pairs
- ``_StringData``: concatenated string bytes in pool order
- ``_Tables``: one string reference per table name
- ``_Columns``: ``(Table, Number, Name, Type)`` rows describing every table
- ``<Table>``: column-major cell data, row count derived from stream size
"""

from __future__ import annotations

import struct
from enum import StrEnum
from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field

from msfs_sdk_tools.core.errors import (
    ArchiveFormatError,
    EncodingError,
    NotFoundError,
    ParseError,
)
from msfs_sdk_tools.formats.base import FormatParser, as_bytes
from msfs_sdk_tools.formats.compound import CompoundFile, CompoundFileParser

logger = structlog.get_logger()

TABLE_PREFIX = "\u4840"
NAME_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz._"

# Column type bits
COL_FIELD_SIZE_MASK = 0x00FF
COL_VALID_BIT = 0x0100
COL_LOCALIZABLE_BIT = 0x0200
COL_NONBINARY_BIT = 0x0400
COL_STRING_BIT = 0x0800
COL_NULLABLE_BIT = 0x1000
COL_PRIMARY_KEY_BIT = 0x2000

LONG_STRING_REFS_BIT = 0x8000

Value = str | int | None


def decode_stream_name(encoded: str) -> tuple[str, bool]:
    """Decode a compressed installer stream name.

    Each code unit in ``U+3800..U+47FF`` packs two characters of the
    64-character name alphabet (low six bits first), ``U+4800..U+483F``
    packs one, and a leading ``U+4840`` marks a table stream.

    Args:
        encoded: Name as stored in the compound file directory

    Returns:
        Tuple of (decoded name, is_table)
    """
    is_table = encoded.startswith(TABLE_PREFIX)
    if is_table:
        encoded = encoded[1:]

    chars: list[str] = []
    for ch in encoded:
        code = ord(ch)
        if 0x3800 <= code < 0x4800:
            code -= 0x3800
            chars.append(NAME_ALPHABET[code & 0x3F])
            chars.append(NAME_ALPHABET[(code >> 6) & 0x3F])
        elif 0x4800 <= code < 0x4840:
            chars.append(NAME_ALPHABET[code - 0x4800])
        else:
            chars.append(ch)
    return "".join(chars), is_table


def codec_for_codepage(codepage: int) -> str:
    """Map a Windows code page number to a Python codec name."""
    if codepage == 0:
        return "cp1252"
    if codepage == 65001:
        return "utf-8"
    return f"cp{codepage}"


class ColumnKind(StrEnum):
    """Storage class of a table column."""
    INT16 = "int16"
    INT32 = "int32"
    STRING = "string"
    BINARY = "binary"


class Column(BaseModel):
    """Table column definition from ``_Columns``."""

    name: str = Field(description="Column name")
    number: int = Field(description="1-based column position")
    type_bits: int = Field(description="Raw column type bits")

    @property
    def kind(self) -> ColumnKind:
        if self.type_bits & COL_STRING_BIT:
            if self.type_bits & COL_NONBINARY_BIT:
                return ColumnKind.STRING
            return ColumnKind.BINARY
        if (self.type_bits & COL_FIELD_SIZE_MASK) == 4:
            return ColumnKind.INT32
        return ColumnKind.INT16

    @property
    def nullable(self) -> bool:
        return bool(self.type_bits & COL_NULLABLE_BIT)

    @property
    def primary_key(self) -> bool:
        return bool(self.type_bits & COL_PRIMARY_KEY_BIT)

    def width(self, long_string_refs: bool) -> int:
        """Bytes per cell for this column."""
        kind = self.kind
        if kind == ColumnKind.STRING:
            return 3 if long_string_refs else 2
        if kind == ColumnKind.INT32:
            return 4
        return 2


class TableSchema(BaseModel):
    """Table name and ordered columns."""

    name: str = Field(description="Table name")
    columns: list[Column] = Field(default_factory=list, description="Columns in position order")

    def column_index(self, name: str) -> int:
        for index, column in enumerate(self.columns):
            if column.name == name:
                return index
        raise NotFoundError(f"Column {name!r} not found in table {self.name!r}",
                            table=self.name, column=name)


class StringPool:
    """Interned strings shared by all tables. Reference 0 is null."""

    def __init__(self, codepage: int, long_refs: bool, strings: list[str]):
        self.codepage = codepage
        self.long_refs = long_refs
        self.strings = strings

    def __len__(self) -> int:
        return len(self.strings)

    def get(self, ref: int) -> str | None:
        if ref == 0:
            return None
        if ref >= len(self.strings):
            raise ParseError(f"String reference out of range: {ref}", ref=ref)
        return self.strings[ref]


def parse_string_pool(pool_data: bytes, string_data: bytes) -> StringPool:
    """Decode the ``_StringPool`` and ``_StringData`` streams.

    Args:
        pool_data: Raw ``_StringPool`` stream
        string_data: Raw ``_StringData`` stream

    Returns:
        Decoded string pool

    Raises:
        ParseError: If the pool is truncated or inconsistent
        EncodingError: If a string is not valid in the pool's code page
    """
    if len(pool_data) < 4:
        raise ParseError("Insufficient data for string pool header")

    words = struct.unpack(f"<{len(pool_data) // 2}H", pool_data[:len(pool_data) // 2 * 2])
    codepage = words[0] | ((words[1] & ~LONG_STRING_REFS_BIT) << 16)
    long_refs = bool(words[1] & LONG_STRING_REFS_BIT)
    codec = codec_for_codepage(codepage)

    strings: list[str] = [""]
    entry_count = len(words) // 2
    index = 1
    offset = 0
    while index < entry_count:
        length = words[index * 2]
        refcount = words[index * 2 + 1]

        if length == 0 and refcount == 0:
            strings.append("")
            index += 1
            continue

        if length == 0:
            # Strings over 64 KiB: the next entry holds the full length
            if index + 1 >= entry_count:
                raise ParseError("Truncated long string entry in string pool", entry=index)
            length = (words[index * 2 + 3] << 16) | words[index * 2 + 2]
            index += 2
        else:
            index += 1

        raw = string_data[offset:offset + length]
        if len(raw) < length:
            raise ParseError(
                "String data truncated",
                expected=offset + length, actual=len(string_data),
            )
        try:
            strings.append(raw.decode(codec))
        except (UnicodeDecodeError, LookupError) as e:
            raise EncodingError(
                f"Cannot decode string {len(strings)} with code page {codepage}: {e}",
                codepage=codepage,
            ) from e
        offset += length

    logger.debug("Parsed string pool", strings=len(strings) - 1,
                 codepage=codepage, long_refs=long_refs)
    return StringPool(codepage, long_refs, strings)


def _decode_columns(
    data: bytes,
    columns: list[Column],
    pool: StringPool,
    table: str,
) -> list[tuple[Value, ...]]:
    """Decode column-major table data into row tuples."""
    widths = [column.width(pool.long_refs) for column in columns]
    row_size = sum(widths)
    if row_size == 0 or not data:
        return []
    if len(data) % row_size:
        logger.warning("table_size_mismatch", table=table, size=len(data), row_size=row_size)
    row_count = len(data) // row_size

    decoded_columns: list[list[Value]] = []
    offset = 0
    for column, width in zip(columns, widths, strict=True):
        values: list[Value] = []
        kind = column.kind
        for row in range(row_count):
            start = offset + row * width
            if width == 3:
                raw = data[start] | (data[start + 1] << 8) | (data[start + 2] << 16)
            else:
                raw = int.from_bytes(data[start:start + width], "little")

            if kind == ColumnKind.STRING:
                values.append(pool.get(raw))
            elif raw == 0:
                values.append(None)
            elif kind == ColumnKind.INT32:
                values.append(raw - 0x80000000)
            elif kind == ColumnKind.INT16:
                values.append(raw - 0x8000)
            else:
                values.append(raw)
        decoded_columns.append(values)
        offset += row_count * width

    return list(zip(*decoded_columns, strict=True))


# Catalogue tables are not described in _Columns
_TABLES_SCHEMA = TableSchema(name="_Tables", columns=[
    Column(name="Name", number=1, type_bits=0x2D40),
])
_COLUMNS_SCHEMA = TableSchema(name="_Columns", columns=[
    Column(name="Table", number=1, type_bits=0x2D40),
    Column(name="Number", number=2, type_bits=0x2502),
    Column(name="Name", number=3, type_bits=0x0D40),
    Column(name="Type", number=4, type_bits=0x0502),
])


class MsiDatabase:
    """Read-only view of an installer database."""

    def __init__(self, compound: CompoundFile):
        self.compound = compound
        self._table_streams: dict[str, str] = {}
        self._streams: dict[str, str] = {}
        for encoded in compound.list_streams():
            name, is_table = decode_stream_name(encoded)
            if is_table:
                self._table_streams[name] = encoded
            else:
                self._streams[name] = encoded

        if "_StringPool" not in self._table_streams or "_StringData" not in self._table_streams:
            raise ArchiveFormatError("Compound file is not an installer database: no string pool")

        self.string_pool = parse_string_pool(
            self._read_table_stream("_StringPool"),
            self._read_table_stream("_StringData"),
        )
        self.tables = self._load_schemas()
        self._rows: dict[str, list[tuple[Value, ...]]] = {}

        logger.debug("Opened installer database", tables=len(self.tables),
                     streams=len(self._streams))

    def streams(self) -> list[str]:
        """Names of the non-table streams (embedded cabinets, binaries)."""
        return list(self._streams)

    def has_stream(self, name: str) -> bool:
        return name in self._streams

    def read_stream(self, name: str) -> bytes:
        if name not in self._streams:
            raise NotFoundError(f"Stream not found in installer database: {name!r}", stream=name)
        return self.compound.read_stream(self._streams[name])

    def has_table(self, name: str) -> bool:
        return name in self.tables

    def schema(self, table: str) -> TableSchema:
        schema = self.tables.get(table)
        if schema is None:
            raise NotFoundError(f"Table not found in installer database: {table!r}", table=table)
        return schema

    def rows(self, table: str) -> list[tuple[Value, ...]]:
        """All rows of a table as tuples in column order."""
        if table not in self._rows:
            schema = self.schema(table)
            self._rows[table] = _decode_columns(
                self._read_table_stream(table), schema.columns, self.string_pool, table
            )
        return self._rows[table]

    def select(self, table: str, columns: list[str]) -> list[tuple[Value, ...]]:
        """Project a table onto the named columns.

        Args:
            table: Table name
            columns: Column names to return, in output order

        Returns:
            One tuple per row
        """
        schema = self.schema(table)
        indices = [schema.column_index(column) for column in columns]
        return [tuple(row[i] for i in indices) for row in self.rows(table)]

    def _read_table_stream(self, table: str) -> bytes:
        encoded = self._table_streams.get(table)
        if encoded is None:
            # Empty tables have no stream
            return b""
        return self.compound.read_stream(encoded)

    def _load_schemas(self) -> dict[str, TableSchema]:
        names = [
            row[0] for row in _decode_columns(
                self._read_table_stream("_Tables"), _TABLES_SCHEMA.columns,
                self.string_pool, "_Tables",
            )
        ]
        tables = {name: TableSchema(name=name) for name in names if name}

        for table, number, name, type_bits in _decode_columns(
            self._read_table_stream("_Columns"), _COLUMNS_SCHEMA.columns,
            self.string_pool, "_Columns",
        ):
            if not isinstance(table, str) or not isinstance(name, str):
                raise ParseError("Malformed _Columns row", table=table, column=name)
            if not isinstance(number, int) or not isinstance(type_bits, int):
                raise ParseError("Malformed _Columns row", table=table, column=name)
            schema = tables.setdefault(table, TableSchema(name=table))
            schema.columns.append(Column(name=name, number=number, type_bits=type_bits))

        for schema in tables.values():
            schema.columns.sort(key=lambda column: column.number)
        return tables


class MsiDatabaseParser(FormatParser[MsiDatabase]):
    """Parser for installer databases."""

    def parse(self, data: bytes | BinaryIO) -> MsiDatabase:
        """Open an installer database.

        Args:
            data: Binary data or stream

        Returns:
            Database view
        """
        compound = CompoundFileParser().parse(as_bytes(data))
        return MsiDatabase(compound)
