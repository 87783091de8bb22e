"""SDK manifest client.

Each product line publishes ``sdk.json`` next to its installers. The
document lists game versions newest first; every entry carries a menu of
download options and the release notes, whose ordering differs between the
product lines.
"""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from msfs_sdk_tools.core.config import SDKConfig, SDKSourceConfig
from msfs_sdk_tools.core.errors import NetworkError, NotFoundError, ParseError
from msfs_sdk_tools.core.types import SimulatorVersion

logger = structlog.get_logger()


class DownloadProgress(Protocol):
    """Receives download progress once per chunk, on the downloading thread."""

    def on_progress(self, downloaded: int, total: int) -> None:
        """Report progress.

        Args:
            downloaded: Bytes received so far
            total: Content-Length of the response, 0 when unknown
        """
        ...


class DownloadOption(BaseModel):
    """Entry of a release's downloads menu."""
    value: str | None = Field(None, description="Download URL relative to the base URL")

    model_config = ConfigDict(extra="allow")


class GameVersion(BaseModel):
    """One SDK release."""
    downloads_menu: dict[str, DownloadOption] = Field(
        default_factory=dict, description="Download options by title"
    )
    release_notes: list[str] = Field(default_factory=list, description="Release identifiers")

    model_config = ConfigDict(extra="allow")

    def release_identifier(self, newest_last: bool) -> str:
        """Newest release identifier of this entry.

        Args:
            newest_last: Whether release notes run oldest to newest

        Returns:
            Release identifier
        """
        if not self.release_notes:
            raise NotFoundError("Release has no release notes", stage="manifest")
        return self.release_notes[-1] if newest_last else self.release_notes[0]

    def download_path(self, key: str) -> str:
        """URL of a named download option."""
        option = self.downloads_menu.get(key)
        if option is None:
            raise NotFoundError(f"Download option not found: {key}", stage="manifest", option=key)
        if not option.value:
            raise NotFoundError(f"Download option has no URL: {key}", stage="manifest", option=key)
        return option.value


class SdkManifest(BaseModel):
    """Parsed manifest document."""
    game_versions: list[GameVersion] = Field(..., description="Releases, newest first")

    model_config = ConfigDict(extra="allow")


def _content_length(response: httpx.Response) -> int:
    """Declared body size, 0 when absent or malformed."""
    try:
        return max(int(response.headers.get("content-length", "0")), 0)
    except ValueError:
        return 0


class SDKManifestClient:
    """Blocking client for one product line's manifest and installer downloads."""

    def __init__(self, version: SimulatorVersion, config: SDKConfig | None = None):
        """Initialize manifest client.

        Args:
            version: Product line to query
            config: Optional SDK configuration
        """
        self.version = SimulatorVersion(version)
        self.config = config or SDKConfig()
        self._client: httpx.Client | None = None

    @property
    def source(self) -> SDKSourceConfig:
        return self.config.source(self.version)

    @property
    def client(self) -> httpx.Client:
        """Get or create sync HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
                follow_redirects=True,
            )
        return self._client

    @property
    def manifest_url(self) -> str:
        return f"{self.source.base_url}{self.config.manifest_file}"

    def fetch_manifest(self) -> SdkManifest:
        """Fetch and parse the manifest document.

        Raises:
            NetworkError: Transport failure or HTTP error status
            ParseError: Response is not a valid manifest
        """
        url = self.manifest_url
        try:
            response = self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("manifest_fetch_failed", url=url, error=str(e))
            raise NetworkError(f"Failed to fetch manifest {url}: {e}", stage="manifest", url=url) from e

        try:
            manifest = SdkManifest.model_validate_json(response.content)
        except ValidationError as e:
            logger.error("manifest_parse_failed", url=url, error=str(e))
            raise ParseError(f"Invalid manifest from {url}: {e}", stage="manifest", url=url) from e

        logger.debug("manifest_fetched", version=self.version.value, releases=len(manifest.game_versions))
        return manifest

    def get_latest_release(self) -> GameVersion:
        """Get the newest release entry."""
        manifest = self.fetch_manifest()
        if not manifest.game_versions:
            raise NotFoundError("Manifest lists no releases", stage="manifest", url=self.manifest_url)
        return manifest.game_versions[0]

    def get_latest_version(self) -> str:
        """Get the newest release identifier."""
        return self.release_identifier(self.get_latest_release())

    def release_identifier(self, release: GameVersion) -> str:
        return release.release_identifier(self.source.newest_release_last)

    def download_url(self, release: GameVersion) -> str:
        """Absolute URL of a release's core installer."""
        path = release.download_path(self.config.core_installer_key)
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.source.base_url}{path.lstrip('/')}"

    def download(self, url: str, progress: DownloadProgress | None = None) -> bytes:
        """Download a file into memory in fixed-size chunks.

        Args:
            url: Absolute URL
            progress: Optional progress receiver, called after every chunk

        Returns:
            Downloaded bytes
        """
        buffer = bytearray()
        try:
            with self.client.stream("GET", url) as response:
                response.raise_for_status()
                total = _content_length(response)
                logger.info("download_started", url=url, total=total)
                for chunk in response.iter_bytes(chunk_size=self.config.chunk_size):
                    buffer.extend(chunk)
                    if progress is not None:
                        progress.on_progress(len(buffer), total)
        except httpx.HTTPError as e:
            logger.error("download_failed", url=url, error=str(e))
            raise NetworkError(f"Failed to download {url}: {e}", stage="download", url=url) from e

        logger.info("download_complete", url=url, size=len(buffer))
        return bytes(buffer)

    def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> SDKManifestClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()
