"""Configuration management for msfs-sdk-tools."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

from msfs_sdk_tools.core.types import SimulatorVersion

logger = structlog.get_logger()


class SDKSourceConfig(BaseModel):
    """Where one product line's SDK comes from and where it is installed."""

    base_url: str = Field(description="Base URL serving the manifest and installers")
    extract_from: str = Field(description="Package directory whose contents are installed")
    folder_name: str = Field(description="Installation folder under the data directory")
    newest_release_last: bool = Field(
        description="Whether release notes are ordered oldest to newest"
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate base URL value."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Base URL must be http(s): {v}")
        if not v.endswith("/"):
            v += "/"
        return v

    @field_validator("extract_from")
    @classmethod
    def validate_extract_from(cls, v: str) -> str:
        """Normalize the package prefix to forward slashes."""
        v = v.replace("\\", "/").strip("/")
        if not v:
            raise ValueError("Extraction prefix cannot be empty")
        return v


def default_sources() -> dict[SimulatorVersion, SDKSourceConfig]:
    """Built-in download sources for both product lines."""
    return {
        SimulatorVersion.MSFS2020: SDKSourceConfig(
            base_url="https://sdk.flightsimulator.com/files/",
            extract_from="MSFS SDK",
            folder_name="msfs2020",
            newest_release_last=True,
        ),
        SimulatorVersion.MSFS2024: SDKSourceConfig(
            base_url="https://sdk.flightsimulator.com/msfs2024/files/",
            extract_from="MSFS 2024 SDK",
            folder_name="msfs2024",
            newest_release_last=False,
        ),
    }


class SDKConfig(BaseModel):
    """SDK download and installation settings."""

    manifest_file: str = Field(default="sdk.json", description="Manifest file name")
    core_installer_key: str = Field(
        default="SDK Installer (Core)",
        description="Download option holding the core installer URL"
    )
    version_file_name: str = Field(default="version.txt", description="Install record file name")
    wasi_sysroot_path: str = Field(
        default="WASM/wasi-sysroot",
        description="WASI sysroot relative to the installation root"
    )
    chunk_size: int = Field(default=1024, description="Download chunk size in bytes")
    timeout: float = Field(default=300.0, description="Request timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    sources: dict[SimulatorVersion, SDKSourceConfig] = Field(
        default_factory=default_sources,
        description="Download sources per product line"
    )

    def source(self, version: SimulatorVersion) -> SDKSourceConfig:
        """Get the source settings for a product line."""
        try:
            return self.sources[SimulatorVersion(version)]
        except KeyError:
            raise ValueError(f"No SDK source configured for {version}") from None

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        """Validate chunk size value."""
        if v <= 0:
            raise ValueError("Chunk size must be positive")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("sources")
    @classmethod
    def validate_sources(
        cls, v: dict[SimulatorVersion, SDKSourceConfig]
    ) -> dict[SimulatorVersion, SDKSourceConfig]:
        """Fill in product lines missing from a partial configuration."""
        merged = default_sources()
        merged.update(v)
        return merged


class AppConfig(BaseModel):
    """Application configuration."""

    # Directory settings
    config_dir: Path = Field(
        default=Path.home() / ".config" / "msfs-sdk-tools",
        description="Configuration directory"
    )
    data_dir: Path = Field(
        default=Path.home() / ".local" / "share" / "msfs-sdk-tools",
        description="Data directory holding one installation root per product line"
    )

    sdk: SDKConfig = Field(default_factory=SDKConfig, description="SDK settings")

    # Output settings
    output_format: str = Field(
        default="rich",
        description="Output format (rich, json, plain)"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    def model_post_init(self, __context) -> None:
        """Ensure directories exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def sdk_path(self, version: SimulatorVersion) -> Path:
        """Installation root for a product line."""
        return self.data_dir / self.sdk.source(version).folder_name

    def wasi_sysroot(self, version: SimulatorVersion) -> Path:
        """WASI sysroot inside a product line's installation root."""
        return self.sdk_path(version) / self.sdk.wasi_sysroot_path

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "msfs-sdk-tools" / "config.json"

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
                return cls(**data)

        # Return defaults
        return cls()

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = self.config_dir / "config.json"

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        """Validate output format."""
        valid_formats = {"rich", "json", "plain"}
        if v not in valid_formats:
            raise ValueError(f"Invalid output format: {v}. Valid formats: {valid_formats}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v
