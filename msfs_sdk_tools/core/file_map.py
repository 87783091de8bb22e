"""Resolution of installer tables into output paths.

The File table names each file and its owning component, the Component
table places components in directories, and the Directory table links
directories to their parents. Joining the three yields the relative path of
every file the package installs. Names are stored as ``short|long`` pairs,
and directory names may additionally carry ``target:source`` forms.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import PurePosixPath

import structlog

from msfs_sdk_tools.core.errors import CorruptError, EncodingError, NotFoundError, SDKError
from msfs_sdk_tools.core.package import NormalizedPackage
from msfs_sdk_tools.formats.msi import Value

logger = structlog.get_logger()

MAX_DIRECTORY_DEPTH = 256
CURRENT_DIRECTORY = "."

FileMap = dict[str, PurePosixPath]


@dataclass(frozen=True)
class FileRow:
    """Row of the File table."""
    file_id: str
    raw_file_name: str
    component: str


@dataclass(frozen=True)
class DirectoryRow:
    """Row of the Directory table."""
    directory_id: str
    parent_id: str | None
    raw_dir_name: str

    @property
    def is_root(self) -> bool:
        return self.parent_id is None or self.parent_id == self.directory_id


def long_name(raw: str) -> str:
    """Long form of a ``short|long`` name, or the name itself."""
    return raw.rsplit("|", 1)[-1]


def directory_name(default_dir: str) -> str:
    """Long target name of a DefaultDir value."""
    return long_name(default_dir.split(":", 1)[0])


def validate_segment(name: str, field: str) -> str:
    """Check that a name can be used as one path segment.

    Raises:
        EncodingError: Empty, a dot reference, or contains a separator or NUL
    """
    if name in ("", ".", "..") or any(c in name for c in ("/", "\\", "\x00")):
        raise EncodingError(f"Invalid path segment in {field}: {name!r}", stage="resolve", field=field)
    return name


def _text(value: Value, field: str) -> str:
    if not isinstance(value, str):
        raise EncodingError(f"{field} is not text: {value!r}", stage="resolve", field=field)
    return value


class DirectoryResolver:
    """Memoized ascent from a directory to the package root.

    Args:
        rows: Directory table rows
        max_depth: Longest accepted parent chain
    """

    def __init__(self, rows: Iterable[DirectoryRow], max_depth: int = MAX_DIRECTORY_DEPTH):
        self.rows = {row.directory_id: row for row in rows}
        self.max_depth = max_depth
        self._cache: dict[str, PurePosixPath] = {}

    def resolve(self, directory_id: str) -> PurePosixPath:
        """Relative path of a directory; root directories resolve to an empty path.

        Raises:
            NotFoundError: Directory or one of its ancestors has no row
            CorruptError: Parent links form a cycle or exceed ``max_depth``
        """
        chain: list[DirectoryRow] = []
        seen: set[str] = set()
        current = directory_id

        while current not in self._cache:
            row = self.rows.get(current)
            if row is None:
                raise NotFoundError(
                    f"Directory not found: {current!r}", stage="resolve", directory=current
                )
            if row.is_root:
                self._cache[current] = PurePosixPath()
                break
            if current in seen:
                raise CorruptError(
                    f"Directory parent cycle at {current!r}", stage="resolve", directory=current
                )
            seen.add(current)
            chain.append(row)
            if len(chain) > self.max_depth:
                raise CorruptError(
                    f"Directory nesting deeper than {self.max_depth}",
                    stage="resolve",
                    directory=directory_id,
                )
            current = row.parent_id  # type: ignore[assignment]

        path = self._cache[current]
        for row in reversed(chain):
            segment = directory_name(row.raw_dir_name)
            if segment != CURRENT_DIRECTORY:
                path = path / validate_segment(segment, f"Directory {row.directory_id}")
            self._cache[row.directory_id] = path

        return self._cache[directory_id]


def load_directories(package: NormalizedPackage) -> list[DirectoryRow]:
    rows = []
    for directory_id, parent_id, default_dir in package.select(
        "Directory", ["Directory", "Directory_Parent", "DefaultDir"]
    ):
        rows.append(DirectoryRow(
            directory_id=_text(directory_id, "Directory.Directory"),
            parent_id=_text(parent_id, "Directory.Directory_Parent") if parent_id is not None else None,
            raw_dir_name=_text(default_dir, "Directory.DefaultDir"),
        ))
    return rows


def load_files(package: NormalizedPackage) -> list[tuple[FileRow, str]]:
    """Join File with Component, pairing each file with its directory id."""
    components: dict[str, str] = {}
    for component, directory in package.select("Component", ["Component", "Directory_"]):
        components[_text(component, "Component.Component")] = _text(directory, "Component.Directory_")

    joined = []
    for file_id, file_name, component in package.select("File", ["File", "FileName", "Component_"]):
        row = FileRow(
            file_id=_text(file_id, "File.File"),
            raw_file_name=_text(file_name, "File.FileName"),
            component=_text(component, "File.Component_"),
        )
        directory = components.get(row.component)
        if directory is None:
            raise NotFoundError(
                f"Component not found: {row.component!r}",
                stage="resolve",
                component=row.component,
                file=row.file_id,
            )
        joined.append((row, directory))
    return joined


def build_file_map(package: NormalizedPackage) -> FileMap:
    """Map every file id in the package to its relative output path.

    Args:
        package: Normalized package

    Returns:
        File id to relative path
    """
    try:
        resolver = DirectoryResolver(load_directories(package))
        file_map: FileMap = {}
        for row, directory_id in load_files(package):
            name = validate_segment(long_name(row.raw_file_name), f"File {row.file_id}")
            file_map[row.file_id] = resolver.resolve(directory_id) / name
    except SDKError as e:
        raise e.with_stage("resolve")

    logger.info("file_map_built", files=len(file_map), directories=len(resolver.rows))
    return file_map
