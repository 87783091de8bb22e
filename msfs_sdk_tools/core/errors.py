"""Error taxonomy for SDK download, normalization and extraction.

Every failure raised by the core derives from :class:`SDKError` and carries
an :class:`ErrorKind` plus an optional ``stage`` label naming the pipeline
step that failed (``manifest``, ``download``, ``normalize``, ``resolve``,
``extract``, ``install_state``). Errors are never retried inside the core.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar


class ErrorKind(StrEnum):
    """Broad failure categories."""
    NETWORK = "network"
    PARSE = "parse"
    ARCHIVE_FORMAT = "archive_format"
    NOT_FOUND = "not_found"
    ENCODING = "encoding"
    CORRUPT = "corrupt"
    FILESYSTEM = "filesystem"


class SDKError(Exception):
    """Base class for all SDK pipeline failures.

    Attributes:
        kind: Failure category
        stage: Pipeline stage that raised the error, if known
        context: Additional key/value details for logging
    """

    kind: ClassVar[ErrorKind]

    def __init__(self, message: str, *, stage: str | None = None, **context: Any):
        self.stage = stage
        self.context = context
        super().__init__(message)

    def with_stage(self, stage: str) -> SDKError:
        """Attach a stage label if none was set yet."""
        if self.stage is None:
            self.stage = stage
        return self

    def describe(self) -> str:
        """Format the error for user-facing output."""
        prefix = f"[{self.kind.value}"
        if self.stage:
            prefix += f"@{self.stage}"
        return f"{prefix}] {self}"


class NetworkError(SDKError):
    """Transport or HTTP status failure."""
    kind = ErrorKind.NETWORK


class ParseError(SDKError):
    """Malformed manifest JSON or archive metadata."""
    kind = ErrorKind.PARSE


class ArchiveFormatError(SDKError):
    """Zip, compound file, database or cabinet could not be opened."""
    kind = ErrorKind.ARCHIVE_FORMAT


class NotFoundError(SDKError):
    """Missing table row, file map entry or download option."""
    kind = ErrorKind.NOT_FOUND


class EncodingError(SDKError):
    """Name field not representable as text or as a path segment."""
    kind = ErrorKind.ENCODING


class CorruptError(SDKError):
    """Structural corruption such as a cyclic directory table."""
    kind = ErrorKind.CORRUPT


class FilesystemError(SDKError):
    """I/O failure creating directories or writing files."""
    kind = ErrorKind.FILESYSTEM
