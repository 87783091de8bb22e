"""Pytest configuration and shared fixtures for msfs_sdk_tools tests.

The fixtures below write small but structurally valid compound files,
installer databases and cabinets so the readers can be exercised without
shipping binary test data.
"""

import io
import struct
import tempfile
import zipfile
import zlib
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from msfs_sdk_tools.core.config import AppConfig

CFB_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
SECTOR_SIZE = 512
MINI_SECTOR_SIZE = 64
MINI_STREAM_CUTOFF = 4096
FATSECT = 0xFFFFFFFD
ENDOFCHAIN = 0xFFFFFFFE
FREESECT = 0xFFFFFFFF
NOSTREAM = 0xFFFFFFFF

NAME_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz._"

# Column type bits as the Windows Installer stores them
STRING_KEY = 0x2D48        # s72, primary key
STRING = 0x0D48            # s72
NULLABLE_STRING = 0x1D48   # S72
LOCALIZABLE_NAME = 0x0FFF  # l255
INT16 = 0x0502             # i2
NULLABLE_INT16 = 0x1502    # I2
INT32 = 0x0104             # i4


def encode_stream_name(name: str, table: bool = False) -> str:
    """Compress a stream name the way installer databases store it."""
    out = ["\u4840"] if table else []
    i = 0
    while i < len(name):
        ch = name[i]
        if ch in NAME_ALPHABET:
            code = NAME_ALPHABET.index(ch)
            if i + 1 < len(name) and name[i + 1] in NAME_ALPHABET:
                code += NAME_ALPHABET.index(name[i + 1]) << 6
                out.append(chr(0x3800 + code))
                i += 2
                continue
            out.append(chr(0x4800 + code))
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def _chain(start: int, count: int) -> list[int]:
    return [start + i + 1 if i < count - 1 else ENDOFCHAIN for i in range(count)]


def _directory_entry(
    name: str, entry_type: int, right: int = NOSTREAM, child: int = NOSTREAM,
    start: int = 0, size: int = 0,
) -> bytes:
    entry = bytearray(128)
    raw_name = name.encode("utf-16-le")
    entry[:len(raw_name)] = raw_name
    struct.pack_into("<HBB", entry, 64, len(raw_name) + 2 if name else 0, entry_type, 1)
    struct.pack_into("<III", entry, 68, NOSTREAM, right, child)
    struct.pack_into("<IQ", entry, 116, start, size)
    return bytes(entry)


def build_compound_file(streams: dict[str, bytes]) -> bytes:
    """Write a version 3 compound file holding ``streams`` in the root storage."""
    sectors: list[bytes] = []
    fat: list[int] = []

    def allocate(payload: bytes) -> int:
        if not payload:
            return ENDOFCHAIN
        count = -(-len(payload) // SECTOR_SIZE)
        start = len(sectors)
        for i in range(count):
            sectors.append(payload[i * SECTOR_SIZE:(i + 1) * SECTOR_SIZE].ljust(SECTOR_SIZE, b"\x00"))
        fat.extend(_chain(start, count))
        return start

    mini_stream = bytearray()
    mini_fat: list[int] = []
    locations: dict[str, tuple[int, int]] = {}
    for name, data in streams.items():
        if not data:
            locations[name] = (ENDOFCHAIN, 0)
        elif len(data) < MINI_STREAM_CUTOFF:
            count = -(-len(data) // MINI_SECTOR_SIZE)
            start = len(mini_fat)
            mini_fat.extend(_chain(start, count))
            mini_stream += data.ljust(count * MINI_SECTOR_SIZE, b"\x00")
            locations[name] = (start, len(data))
        else:
            locations[name] = (allocate(data), len(data))

    mini_stream_start = allocate(bytes(mini_stream))
    mini_fat_data = b"".join(struct.pack("<I", v) for v in mini_fat)
    if mini_fat_data:
        mini_fat_data = mini_fat_data.ljust(
            -(-len(mini_fat_data) // SECTOR_SIZE) * SECTOR_SIZE, b"\xff"
        )
    mini_fat_start = allocate(mini_fat_data)
    mini_fat_count = len(mini_fat_data) // SECTOR_SIZE

    names = list(streams)
    entries = [_directory_entry(
        "Root Entry", 5, child=1 if names else NOSTREAM,
        start=mini_stream_start, size=len(mini_stream),
    )]
    for index, name in enumerate(names, start=1):
        start, size = locations[name]
        right = index + 1 if index < len(names) else NOSTREAM
        entries.append(_directory_entry(name, 2, right=right, start=start, size=size))
    while len(entries) % (SECTOR_SIZE // 128):
        entries.append(_directory_entry("", 0))
    directory_start = allocate(b"".join(entries))

    per_sector = SECTOR_SIZE // 4
    fat_count = 1
    while len(sectors) + fat_count > fat_count * per_sector:
        fat_count += 1
    fat_start = len(sectors)
    fat.extend([FATSECT] * fat_count)
    fat.extend([FREESECT] * (fat_count * per_sector - len(fat)))
    for i in range(fat_count):
        sectors.append(struct.pack(f"<{per_sector}I", *fat[i * per_sector:(i + 1) * per_sector]))

    header = bytearray(SECTOR_SIZE)
    header[:8] = CFB_MAGIC
    struct.pack_into("<HHHHH", header, 24, 0x3E, 3, 0xFFFE, 9, 6)
    struct.pack_into(
        "<9I", header, 40,
        0, fat_count, directory_start, 0, MINI_STREAM_CUTOFF,
        mini_fat_start, mini_fat_count, ENDOFCHAIN, 0,
    )
    difat = list(range(fat_start, fat_start + fat_count))
    difat += [FREESECT] * (109 - len(difat))
    struct.pack_into("<109I", header, 76, *difat)
    return bytes(header) + b"".join(sectors)


def _codec(codepage: int) -> str:
    if codepage == 65001:
        return "utf-8"
    return f"cp{codepage}" if codepage else "cp1252"


class MsiBuilder:
    """Writes installer databases from table rows and named streams."""

    def __init__(self, codepage: int = 65001, long_refs: bool = False):
        self.codepage = codepage
        self.long_refs = long_refs
        self.tables: dict[str, tuple[list[tuple[str, int]], list[tuple[Any, ...]]]] = {}
        self.streams: dict[str, bytes] = {}
        self._strings: list[str] = []
        self._refs: dict[str, int] = {}

    def add_table(self, name: str, columns: list[tuple[str, int]], rows: list[tuple[Any, ...]]) -> "MsiBuilder":
        self.tables[name] = (columns, rows)
        return self

    def add_stream(self, name: str, data: bytes) -> "MsiBuilder":
        self.streams[name] = data
        return self

    def _ref(self, value: str | None) -> int:
        if not value:
            return 0
        if value not in self._refs:
            self._strings.append(value)
            self._refs[value] = len(self._strings)
        return self._refs[value]

    def _cell(self, value: Any, type_bits: int) -> bytes:
        if type_bits & 0x0800:
            width = 3 if self.long_refs and type_bits & 0x0400 else 2
            ref = self._ref(value) if type_bits & 0x0400 else 0
            return ref.to_bytes(width, "little")
        if (type_bits & 0xFF) == 4:
            return (0 if value is None else value + 0x80000000).to_bytes(4, "little")
        return (0 if value is None else value + 0x8000).to_bytes(2, "little")

    def _encode_rows(self, types: list[int], rows: list[tuple[Any, ...]]) -> bytes:
        out = bytearray()
        for column, type_bits in enumerate(types):
            for row in rows:
                out += self._cell(row[column], type_bits)
        return bytes(out)

    def _string_pool(self) -> tuple[bytes, bytes]:
        codec = _codec(self.codepage)
        high = (self.codepage >> 16) | (0x8000 if self.long_refs else 0)
        pool = bytearray(struct.pack("<HH", self.codepage & 0xFFFF, high))
        data = bytearray()
        for value in self._strings:
            raw = value.encode(codec)
            if len(raw) > 0xFFFF:
                pool += struct.pack("<HHHH", 0, 1, len(raw) & 0xFFFF, len(raw) >> 16)
            else:
                pool += struct.pack("<HH", len(raw), 1)
            data += raw
        return bytes(pool), bytes(data)

    def build(self) -> bytes:
        tables = self._encode_rows([0x2D40], [(name,) for name in self.tables])
        columns = self._encode_rows([0x2D40, 0x2502, 0x0D40, 0x0502], [
            (table, number, column, type_bits)
            for table, (cols, _) in self.tables.items()
            for number, (column, type_bits) in enumerate(cols, start=1)
        ])
        table_data = {
            name: self._encode_rows([type_bits for _, type_bits in cols], rows)
            for name, (cols, rows) in self.tables.items()
        }
        pool, string_data = self._string_pool()

        streams = {
            encode_stream_name("_StringPool", table=True): pool,
            encode_stream_name("_StringData", table=True): string_data,
            encode_stream_name("_Tables", table=True): tables,
            encode_stream_name("_Columns", table=True): columns,
        }
        for name, data in table_data.items():
            streams[encode_stream_name(name, table=True)] = data
        for name, data in self.streams.items():
            streams[encode_stream_name(name)] = data
        return build_compound_file(streams)


def build_cabinet(
    folders: list[list[tuple[str, bytes]]],
    compression: str = "none",
    block_size: int = 0x8000,
    compression_field: int | None = None,
    folder_indices: dict[str, int] | None = None,
) -> bytes:
    """Write a single-volume cabinet, one folder per list of ``(name, data)``."""
    if compression_field is None:
        compression_field = {"none": 0, "mszip": 1}[compression]
    folder_indices = folder_indices or {}

    file_table = bytearray()
    folder_data: list[tuple[bytes, int]] = []
    for folder_index, files in enumerate(folders):
        stream = b""
        for name, data in files:
            index = folder_indices.get(name, folder_index)
            file_table += struct.pack("<IIHHHH", len(data), len(stream), index, 0x5A21, 0x6000, 0x20)
            file_table += name.encode("latin-1") + b"\x00"
            stream += data

        blocks = bytearray()
        count = 0
        history = b""
        for start in range(0, len(stream), block_size):
            chunk = stream[start:start + block_size]
            if compression == "mszip":
                if history:
                    compressor = zlib.compressobj(9, zlib.DEFLATED, -15, zdict=history)
                else:
                    compressor = zlib.compressobj(9, zlib.DEFLATED, -15)
                payload = b"CK" + compressor.compress(chunk) + compressor.flush()
                history = (history + chunk)[-0x8000:]
            else:
                payload = chunk
            blocks += struct.pack("<IHH", 0, len(payload), len(chunk)) + payload
            count += 1
        folder_data.append((bytes(blocks), count))

    files_offset = 36 + 8 * len(folders)
    offset = files_offset + len(file_table)
    folder_table = bytearray()
    for blocks, count in folder_data:
        folder_table += struct.pack("<IHH", offset, count, compression_field)
        offset += len(blocks)

    file_count = sum(len(files) for files in folders)
    header = struct.pack(
        "<4sIIIIIBBHHHHH",
        b"MSCF", 0, offset, 0, files_offset, 0, 3, 1,
        len(folders), file_count, 0, 0x1234, 0,
    )
    return header + bytes(folder_table) + bytes(file_table) + b"".join(b for b, _ in folder_data)


def build_zip(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


SDK_FILES = {
    "fil001": b"/* stdio */\n",
    "fil002": b"/* stdlib */\n" * 40,
    "fil003": b"Read me first.\n",
    "fil004": b"[SDK]\nversion=1.1.0\n",
}

DIRECTORY_COLUMNS = [
    ("Directory", STRING_KEY),
    ("Directory_Parent", NULLABLE_STRING),
    ("DefaultDir", LOCALIZABLE_NAME),
]
COMPONENT_COLUMNS = [
    ("Component", STRING_KEY),
    ("ComponentId", NULLABLE_STRING),
    ("Directory_", STRING),
    ("Attributes", INT16),
    ("Condition", NULLABLE_STRING),
    ("KeyPath", NULLABLE_STRING),
]
FILE_COLUMNS = [
    ("File", STRING_KEY),
    ("Component_", STRING),
    ("FileName", LOCALIZABLE_NAME),
    ("FileSize", INT32),
    ("Version", NULLABLE_STRING),
    ("Language", NULLABLE_STRING),
    ("Attributes", NULLABLE_INT16),
    ("Sequence", INT16),
]


def sdk_msi_builder(prefix_name: str = "MSFSSDK|MSFS SDK") -> MsiBuilder:
    """Installer database laid out like a published SDK package, without cabinets.

    Installs ``MSFS SDK/WASM/wasi-sysroot/include/{stdio.h,stdlib.h}``,
    ``MSFS SDK/version.ini`` and ``Docs/readme.txt``.
    """
    builder = MsiBuilder()
    builder.add_table("Directory", DIRECTORY_COLUMNS, [
        ("TARGETDIR", None, "SourceDir"),
        ("SDKROOT", "TARGETDIR", prefix_name),
        ("WASM", "SDKROOT", "WASM"),
        ("SYSROOT", "WASM", "wasi-sys|wasi-sysroot"),
        ("INCLUDE", "SYSROOT", "include"),
        ("DOCS", "TARGETDIR", "Docs"),
    ])
    builder.add_table("Component", COMPONENT_COLUMNS, [
        ("CompInclude", "{11111111-0000-0000-0000-000000000001}", "INCLUDE", 0, None, "fil001"),
        ("CompDocs", "{11111111-0000-0000-0000-000000000002}", "DOCS", 0, None, "fil003"),
        ("CompRoot", "{11111111-0000-0000-0000-000000000003}", "SDKROOT", 0, None, "fil004"),
    ])
    builder.add_table("File", FILE_COLUMNS, [
        ("fil001", "CompInclude", "stdio.h", len(SDK_FILES["fil001"]), None, None, 512, 1),
        ("fil002", "CompInclude", "STDLIB~1.H|stdlib.h", len(SDK_FILES["fil002"]), None, None, 512, 2),
        ("fil003", "CompDocs", "readme.txt", len(SDK_FILES["fil003"]), None, None, None, 3),
        ("fil004", "CompRoot", "version.ini", len(SDK_FILES["fil004"]), None, None, None, 4),
    ])
    return builder


def sdk_cabinet(compression: str = "mszip") -> bytes:
    return build_cabinet([list(SDK_FILES.items())], compression=compression)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def compound_writer() -> Callable[[dict[str, bytes]], bytes]:
    return build_compound_file


@pytest.fixture
def stream_name_encoder() -> Callable[..., str]:
    return encode_stream_name


@pytest.fixture
def msi_builder() -> type[MsiBuilder]:
    return MsiBuilder


@pytest.fixture
def cabinet_writer() -> Callable[..., bytes]:
    return build_cabinet


@pytest.fixture
def zip_writer() -> Callable[[dict[str, bytes]], bytes]:
    return build_zip


@pytest.fixture
def sdk_files() -> dict[str, bytes]:
    """Content of every file in the sample SDK package, by file id."""
    return dict(SDK_FILES)


@pytest.fixture
def sdk_msi_data() -> bytes:
    """Sample SDK installer database with an embedded cabinet."""
    builder = sdk_msi_builder()
    builder.add_stream("cab1.cab", sdk_cabinet())
    builder.add_stream("Binary.Logo", b"\x89PNG not a cabinet")
    return builder.build()


@pytest.fixture
def sdk_zip_data() -> bytes:
    """Sample SDK zip bundle: database plus an external cabinet."""
    return build_zip({
        "MSFS_SDK/Setup.msi": sdk_msi_builder().build(),
        "MSFS_SDK/data1.cab": sdk_cabinet(),
        "MSFS_SDK/notes.txt": b"release notes",
    })


@pytest.fixture
def app_config(temp_dir: Path) -> AppConfig:
    """Application configuration rooted in a temporary directory."""
    return AppConfig(config_dir=temp_dir / "config", data_dir=temp_dir / "data")


@pytest.fixture
def config_file(app_config: AppConfig, temp_dir: Path) -> Path:
    """Saved configuration for CLI runs, so nothing touches the home directory."""
    path = temp_dir / "config.json"
    app_config.save(path)
    return path


@pytest.fixture
def manifest_document() -> dict[str, Any]:
    """Manifest with two releases, newest first."""
    return {
        "game_versions": [
            {
                "downloads_menu": {
                    "SDK Installer (Core)": {"value": "/1.1.0/MSFS_SDK_Core_Installer_1.1.0.msi"},
                    "SDK Installer (Samples)": {"value": "/1.1.0/Samples.zip"},
                },
                "release_notes": ["1.0.0", "1.1.0"],
            },
            {
                "downloads_menu": {
                    "SDK Installer (Core)": {"value": "/1.0.0/MSFS_SDK_Core_Installer_1.0.0.msi"},
                },
                "release_notes": ["0.9.0", "1.0.0"],
            },
        ]
    }


# Pytest configuration
def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
