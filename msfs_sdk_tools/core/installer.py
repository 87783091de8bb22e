"""Install, update and remove flows for one product line's SDK."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import structlog

from msfs_sdk_tools.core.config import AppConfig, SDKSourceConfig
from msfs_sdk_tools.core.extractor import ExtractionStats, extract_subtree
from msfs_sdk_tools.core.file_map import build_file_map
from msfs_sdk_tools.core.install_state import InstallLock, InstallStateStore
from msfs_sdk_tools.core.manifest import DownloadProgress, SDKManifestClient
from msfs_sdk_tools.core.package import normalize_package
from msfs_sdk_tools.core.types import InstallOutcome, SimulatorVersion

logger = structlog.get_logger()


@dataclass
class InstallResult:
    """Outcome of a flow plus what it left installed."""

    outcome: InstallOutcome
    version: str | None = None
    previous_version: str | None = None
    stats: ExtractionStats | None = None


class SDKInstaller:
    """Manages the installation root of one product line.

    Args:
        version: Product line
        config: Application configuration
        client: Manifest client; one is created from ``config`` when omitted
    """

    def __init__(
        self,
        version: SimulatorVersion,
        config: AppConfig | None = None,
        client: SDKManifestClient | None = None,
    ):
        self.version = SimulatorVersion(version)
        self.config = config or AppConfig.load()
        self.client = client or SDKManifestClient(self.version, self.config.sdk)
        self.store = InstallStateStore(self.config.sdk.version_file_name)

    @property
    def source(self) -> SDKSourceConfig:
        return self.config.sdk.source(self.version)

    @property
    def install_root(self) -> Path:
        return self.config.sdk_path(self.version)

    @property
    def wasi_sysroot(self) -> Path:
        return self.config.wasi_sysroot(self.version)

    def installed_version(self) -> str | None:
        return self.store.read(self.install_root)

    def latest_version(self) -> str:
        return self.client.get_latest_version()

    def install(self, progress: DownloadProgress | None = None) -> InstallResult:
        """Install the newest release unless something is already installed."""
        with InstallLock(self.config.data_dir):
            installed = self.installed_version()
            if installed is not None:
                logger.info("sdk_already_installed", version=self.version.value, installed=installed)
                return InstallResult(InstallOutcome.ALREADY_INSTALLED, version=installed)
            return self._install_latest(InstallOutcome.INSTALLED, progress)

    def update(self, progress: DownloadProgress | None = None) -> InstallResult:
        """Replace an installed SDK when a newer release is available."""
        with InstallLock(self.config.data_dir):
            installed = self.installed_version()
            if installed is None:
                return InstallResult(InstallOutcome.NOT_INSTALLED)

            latest = self.latest_version()
            if installed == latest:
                logger.info("sdk_up_to_date", version=self.version.value, installed=installed)
                return InstallResult(InstallOutcome.UP_TO_DATE, version=installed)

            result = self._install_latest(InstallOutcome.UPDATED, progress)
            result.previous_version = installed
            return result

    def remove(self) -> InstallResult:
        """Delete the installation root."""
        with InstallLock(self.config.data_dir):
            root = self.install_root
            if not root.exists():
                return InstallResult(InstallOutcome.NOT_INSTALLED)
            installed = self.installed_version()
            self.store.clear(root)
            return InstallResult(InstallOutcome.REMOVED, previous_version=installed)

    def _install_latest(
        self, outcome: InstallOutcome, progress: DownloadProgress | None
    ) -> InstallResult:
        root = self.install_root
        self.store.clear(root)
        root.mkdir(parents=True, exist_ok=True)

        release = self.client.get_latest_release()
        identifier = self.client.release_identifier(release)
        url = self.client.download_url(release)
        logger.info("sdk_install_started", version=self.version.value, release=identifier, url=url)

        data = self.client.download(url, progress)
        package = normalize_package(data, url)
        file_map = build_file_map(package)
        stats = extract_subtree(package, file_map, self.source.extract_from, root)

        # Record only after a complete extraction
        self.store.write(root, identifier)
        logger.info(
            "sdk_installed",
            version=self.version.value,
            release=identifier,
            files=stats.files_written,
        )
        return InstallResult(outcome, version=identifier, stats=stats)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> SDKInstaller:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
