"""Normalization of downloaded installer payloads.

Installers are published either as a bare installer database with embedded
cabinets, or as a zip bundle holding the database next to external
cabinets. Both shapes are turned into one :class:`NormalizedPackage` that
exposes every cabinet as a named stream, so extraction never needs to know
which shape was downloaded.
"""

from __future__ import annotations

import io
import zipfile
import zlib
from pathlib import PurePosixPath

import httpx
import structlog

from msfs_sdk_tools.core.errors import ArchiveFormatError, NotFoundError, SDKError
from msfs_sdk_tools.formats.msi import MsiDatabase, MsiDatabaseParser, Value

logger = structlog.get_logger()

DATABASE_EXTENSION = ".msi"
CABINET_EXTENSION = ".cab"
ZIP_EXTENSION = ".zip"


class NormalizedPackage:
    """Installer database plus any cabinets attached from outside it."""

    def __init__(self, database: MsiDatabase):
        self.database = database
        self._attached: dict[str, bytes] = {}

    def streams(self) -> list[str]:
        """Names of all non-table streams, embedded ones first."""
        return self.database.streams() + list(self._attached)

    def has_stream(self, name: str) -> bool:
        return name in self._attached or self.database.has_stream(name)

    def read_stream(self, name: str) -> bytes:
        if name in self._attached:
            return self._attached[name]
        if self.database.has_stream(name):
            return self.database.read_stream(name)
        raise NotFoundError(f"Stream not found in package: {name!r}", stream=name)

    def attach_stream(self, name: str, data: bytes) -> None:
        """Add an external file as a named stream.

        Raises:
            ArchiveFormatError: A stream with this name already exists
        """
        if self.has_stream(name):
            raise ArchiveFormatError(f"Stream name collision: {name!r}", stage="normalize", stream=name)
        self._attached[name] = data
        logger.debug("stream_attached", stream=name, size=len(data))

    def has_table(self, table: str) -> bool:
        return self.database.has_table(table)

    def select(self, table: str, columns: list[str]) -> list[tuple[Value, ...]]:
        return self.database.select(table, columns)


def is_zip_source(url: str) -> bool:
    """Whether a download URL names a zip bundle."""
    path = httpx.URL(url).path
    return path.lower().endswith(ZIP_EXTENSION)


def open_database(data: bytes) -> NormalizedPackage:
    """Open a bare installer database."""
    try:
        return NormalizedPackage(MsiDatabaseParser().parse(data))
    except SDKError as e:
        raise e.with_stage("normalize")


def open_zip_bundle(data: bytes) -> NormalizedPackage:
    """Open a zip bundle of one installer database and external cabinets."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = [info.filename for info in archive.infolist() if not info.is_dir()]
            databases = [name for name in names if name.lower().endswith(DATABASE_EXTENSION)]
            if not databases:
                raise ArchiveFormatError("No installer database in zip bundle", stage="normalize")
            if len(databases) > 1:
                raise ArchiveFormatError(
                    "Multiple installer databases in zip bundle",
                    stage="normalize",
                    databases=databases,
                )

            package = open_database(archive.read(databases[0]))
            logger.info("bundle_database_opened", entry=databases[0])

            for name in names:
                if not name.lower().endswith(CABINET_EXTENSION):
                    continue
                package.attach_stream(PurePosixPath(name).name, archive.read(name))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError, OSError) as e:
        raise ArchiveFormatError(f"Unreadable zip bundle: {e}", stage="normalize") from e

    return package


def normalize_package(data: bytes, source_url: str) -> NormalizedPackage:
    """Turn downloaded bytes into a normalized package.

    Args:
        data: Downloaded payload
        source_url: URL the payload came from; only its extension is used

    Returns:
        Package exposing all cabinets as named streams
    """
    if is_zip_source(source_url):
        package = open_zip_bundle(data)
    else:
        package = open_database(data)
    logger.info("package_normalized", streams=len(package.streams()))
    return package
