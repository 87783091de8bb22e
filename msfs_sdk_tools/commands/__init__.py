"""CLI command implementations for msfs_sdk_tools.

This module contains all command-line interface implementations:
- install: Download and extract the latest SDK
- update: Replace an installed SDK with a newer release
- remove: Delete an installed SDK
- info: Show installed and latest SDK versions
- build: Build a crate for the simulator's WASM target
"""

from msfs_sdk_tools.commands.build import build
from msfs_sdk_tools.commands.sdk import info, install, remove, update

__all__ = ["build", "info", "install", "remove", "update"]
