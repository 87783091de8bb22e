"""Core type definitions for msfs_sdk_tools."""

from enum import StrEnum


class SimulatorVersion(StrEnum):
    """Supported simulator product lines."""
    MSFS2020 = "msfs2020"
    MSFS2024 = "msfs2024"


class InstallOutcome(StrEnum):
    """Successful results of an install, update or remove flow."""
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already_installed"
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    NOT_INSTALLED = "not_installed"
    REMOVED = "removed"
