"""Selective extraction of one package subtree to disk."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import structlog

from msfs_sdk_tools.core.errors import FilesystemError, NotFoundError, SDKError
from msfs_sdk_tools.core.file_map import FileMap
from msfs_sdk_tools.core.package import NormalizedPackage
from msfs_sdk_tools.formats.cabinet import CabinetError, CabinetFile, CabinetParser, is_cabinet

logger = structlog.get_logger()


@dataclass
class ExtractionStats:
    """Counters for one extraction run."""

    cabinets: int = 0
    files_written: int = 0
    bytes_written: int = 0
    files_skipped: int = 0
    streams_skipped: int = 0


def relative_to_prefix(path: PurePosixPath, prefix: PurePosixPath) -> PurePosixPath | None:
    """Path below ``prefix``, or None when ``path`` is not strictly inside it."""
    if path == prefix or not path.is_relative_to(prefix):
        return None
    return path.relative_to(prefix)


def _open_cabinet(name: str, data: bytes) -> CabinetFile | None:
    if not is_cabinet(data):
        logger.debug("stream_not_cabinet", stream=name)
        return None
    try:
        return CabinetParser().parse(data)
    except CabinetError as e:
        logger.debug("stream_cabinet_invalid", stream=name, error=str(e))
        return None


def _write_file(target: Path, chunks) -> int:
    written = 0
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as f:
            for chunk in chunks:
                f.write(chunk)
                written += len(chunk)
    except OSError as e:
        raise FilesystemError(f"Cannot write {target}: {e}", stage="extract", path=str(target)) from e
    return written


def extract_subtree(
    package: NormalizedPackage,
    file_map: FileMap,
    prefix: str | PurePosixPath,
    install_root: Path,
) -> ExtractionStats:
    """Write every packaged file under ``prefix`` to ``install_root``.

    Each cabinet stream is listed in full, but only entries under the prefix
    are decompressed; output paths drop the prefix. Existing files are
    overwritten.

    Args:
        package: Normalized package
        file_map: File id to relative path
        prefix: Package directory to extract
        install_root: Destination directory

    Returns:
        Extraction counters

    Raises:
        NotFoundError: A cabinet entry has no file map entry
        FilesystemError: An output file could not be written
    """
    prefix = PurePosixPath(prefix)
    stats = ExtractionStats()

    for stream in package.streams():
        cabinet = _open_cabinet(stream, package.read_stream(stream))
        if cabinet is None:
            stats.streams_skipped += 1
            continue
        stats.cabinets += 1

        targets: dict[str, Path] = {}
        for entry in cabinet.entries:
            path = file_map.get(entry.name)
            if path is None:
                raise NotFoundError(
                    f"Cabinet entry {entry.name!r} has no file map entry",
                    stage="extract",
                    cabinet=stream,
                    entry=entry.name,
                )
            relative = relative_to_prefix(path, prefix)
            if relative is None:
                stats.files_skipped += 1
                continue
            targets[entry.name] = install_root.joinpath(*relative.parts)

        try:
            for entry, chunks in cabinet.extract(targets):
                stats.bytes_written += _write_file(targets[entry.name], chunks)
                stats.files_written += 1
        except SDKError as e:
            raise e.with_stage("extract")

        logger.debug("cabinet_extracted", stream=stream, selected=len(targets),
                     entries=len(cabinet.entries))

    logger.info(
        "extraction_complete",
        cabinets=stats.cabinets,
        files=stats.files_written,
        bytes=stats.bytes_written,
        skipped=stats.files_skipped,
    )
    return stats
