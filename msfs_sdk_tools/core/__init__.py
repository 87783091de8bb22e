"""Core functionality for msfs_sdk_tools.

This module provides shared functionality used across the entire package:
- Configuration management
- Type definitions
- Error taxonomy
- Utility functions

The installation pipeline lives in the submodules ``manifest``, ``package``,
``file_map``, ``extractor``, ``install_state`` and ``installer``.
"""

from msfs_sdk_tools.core.config import AppConfig, SDKConfig, SDKSourceConfig
from msfs_sdk_tools.core.errors import (
    ArchiveFormatError,
    CorruptError,
    EncodingError,
    ErrorKind,
    FilesystemError,
    NetworkError,
    NotFoundError,
    ParseError,
    SDKError,
)
from msfs_sdk_tools.core.types import InstallOutcome, SimulatorVersion
from msfs_sdk_tools.core.utils import display_name, format_size

__all__ = [
    # Config
    "AppConfig",
    "SDKConfig",
    "SDKSourceConfig",
    # Errors
    "ErrorKind",
    "SDKError",
    "NetworkError",
    "ParseError",
    "ArchiveFormatError",
    "NotFoundError",
    "EncodingError",
    "CorruptError",
    "FilesystemError",
    # Types
    "InstallOutcome",
    "SimulatorVersion",
    # Utils
    "display_name",
    "format_size",
]
