"""MSFS SDK Tools - install the Microsoft Flight Simulator SDK without Windows.

This package downloads the SDK installer for MSFS 2020 or 2024, reads the
Windows Installer database and cabinets it ships in, and extracts the SDK
directory tree into a local data directory so WASM modules can be built
against it.

Key modules:
- core: Configuration, manifest client, extraction pipeline, install state
- formats: Compound file, installer database, cabinet and LZX readers
- commands: CLI command implementations
"""

__version__ = "0.1.0"
__author__ = "MSFS SDK Tools Contributors"

# Re-export commonly used types
from msfs_sdk_tools.core.types import InstallOutcome, SimulatorVersion

__all__ = [
    "__version__",
    "__author__",
    "InstallOutcome",
    "SimulatorVersion",
]
