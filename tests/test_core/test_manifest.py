"""Tests for manifest.py module."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from msfs_sdk_tools.core.config import SDKConfig
from msfs_sdk_tools.core.errors import NetworkError, NotFoundError, ParseError
from msfs_sdk_tools.core.manifest import GameVersion, SDKManifestClient
from msfs_sdk_tools.core.types import SimulatorVersion


def _client_with(handler, version=SimulatorVersion.MSFS2020, **config):
    client = SDKManifestClient(version, SDKConfig(**config))
    client._client = httpx.Client(transport=httpx.MockTransport(handler))
    return client


class RecordingProgress:
    def __init__(self):
        self.calls = []

    def on_progress(self, downloaded, total):
        self.calls.append((downloaded, total))


class TestGameVersion:
    """Test GameVersion class."""

    def test_release_identifier_newest_last(self):
        release = GameVersion(release_notes=["1.0.0", "1.1.0"])
        assert release.release_identifier(newest_last=True) == "1.1.0"

    def test_release_identifier_newest_first(self):
        release = GameVersion(release_notes=["1.1.0", "1.0.0"])
        assert release.release_identifier(newest_last=False) == "1.1.0"

    def test_release_identifier_missing(self):
        with pytest.raises(NotFoundError):
            GameVersion().release_identifier(newest_last=True)

    def test_download_path(self):
        release = GameVersion.model_validate({
            "downloads_menu": {"SDK Installer (Core)": {"value": "/sdk.msi", "size": "1 GB"}},
        })
        assert release.download_path("SDK Installer (Core)") == "/sdk.msi"

    def test_download_path_missing_or_null(self):
        release = GameVersion.model_validate({
            "downloads_menu": {"SDK Installer (Core)": {"value": None}},
        })
        with pytest.raises(NotFoundError):
            release.download_path("SDK Installer (Core)")
        with pytest.raises(NotFoundError):
            release.download_path("SDK Installer (Samples)")


class TestSDKManifestClient:
    """Test SDKManifestClient class."""

    def test_init_default_values(self):
        client = SDKManifestClient(SimulatorVersion.MSFS2024)

        assert client.version == SimulatorVersion.MSFS2024
        assert isinstance(client.config, SDKConfig)
        assert client._client is None
        assert client.manifest_url == "https://sdk.flightsimulator.com/msfs2024/files/sdk.json"

    def test_lazy_http_client(self):
        client = SDKManifestClient(SimulatorVersion.MSFS2020, SDKConfig(timeout=12.0))
        http = client.client
        assert isinstance(http, httpx.Client)
        assert client.client is http
        client.close()
        assert client._client is None

    def test_fetch_manifest(self, manifest_document):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, json=manifest_document)

        with _client_with(handler) as client:
            manifest = client.fetch_manifest()

        assert requested == ["https://sdk.flightsimulator.com/files/sdk.json"]
        assert len(manifest.game_versions) == 2

    def test_latest_version_newest_last(self, manifest_document):
        """Test the 2020 line reads the last release note."""
        with _client_with(lambda r: httpx.Response(200, json=manifest_document)) as client:
            assert client.get_latest_version() == "1.1.0"

    def test_latest_version_newest_first(self, manifest_document):
        """Test the 2024 line reads the first release note."""
        manifest_document["game_versions"][0]["release_notes"] = ["2.0.0", "1.9.0"]
        handler = lambda r: httpx.Response(200, json=manifest_document)  # noqa: E731
        with _client_with(handler, SimulatorVersion.MSFS2024) as client:
            assert client.get_latest_version() == "2.0.0"

    def test_empty_manifest(self):
        with _client_with(lambda r: httpx.Response(200, json={"game_versions": []})) as client:
            with pytest.raises(NotFoundError):
                client.get_latest_release()

    def test_http_error_status(self):
        with _client_with(lambda r: httpx.Response(404)) as client:
            with pytest.raises(NetworkError) as exc_info:
                client.fetch_manifest()
        assert exc_info.value.stage == "manifest"

    def test_transport_error(self):
        client = SDKManifestClient(SimulatorVersion.MSFS2020)
        with patch.object(client, "_client", MagicMock()) as mock_http:
            mock_http.get.side_effect = httpx.ConnectError("connection refused")
            with pytest.raises(NetworkError):
                client.fetch_manifest()

    def test_invalid_json(self):
        with _client_with(lambda r: httpx.Response(200, content=b"{not json")) as client:
            with pytest.raises(ParseError):
                client.fetch_manifest()

    def test_missing_game_versions(self):
        with _client_with(lambda r: httpx.Response(200, json={"versions": []})) as client:
            with pytest.raises(ParseError):
                client.fetch_manifest()

    def test_download_url_relative(self, manifest_document):
        client = SDKManifestClient(SimulatorVersion.MSFS2020)
        release = GameVersion.model_validate(manifest_document["game_versions"][0])

        assert client.download_url(release) == (
            "https://sdk.flightsimulator.com/files/1.1.0/MSFS_SDK_Core_Installer_1.1.0.msi"
        )

    def test_download_url_absolute(self):
        client = SDKManifestClient(SimulatorVersion.MSFS2024)
        release = GameVersion.model_validate({
            "downloads_menu": {"SDK Installer (Core)": {"value": "https://cdn.example.com/sdk.zip"}},
        })
        assert client.download_url(release) == "https://cdn.example.com/sdk.zip"

    def test_download_reports_progress(self):
        """Test every chunk is reported with the running total."""
        payload = bytes(range(256)) * 10

        def handler(request):
            return httpx.Response(200, content=payload, headers={"Content-Length": str(len(payload))})

        progress = RecordingProgress()
        with _client_with(handler, chunk_size=1024) as client:
            data = client.download("https://example.com/sdk.msi", progress)

        assert data == payload
        assert progress.calls[-1] == (len(payload), len(payload))
        assert [downloaded for downloaded, _ in progress.calls] == sorted(
            downloaded for downloaded, _ in progress.calls
        )

    def test_download_without_content_length(self):
        """Test an unknown size is reported as zero."""

        def handler(request):
            return httpx.Response(200, content=iter([b"abc", b"def"]))

        progress = RecordingProgress()
        with _client_with(handler) as client:
            assert client.download("https://example.com/sdk.msi", progress) == b"abcdef"
        assert all(total == 0 for _, total in progress.calls)

    def test_download_malformed_content_length(self):
        def handler(request):
            return httpx.Response(200, content=b"abcdef", headers={"Content-Length": "six"})

        progress = RecordingProgress()
        with _client_with(handler) as client:
            assert client.download("https://example.com/sdk.msi", progress) == b"abcdef"
        assert progress.calls == [(6, 0)]

    def test_download_error(self):
        with _client_with(lambda r: httpx.Response(500)) as client:
            with pytest.raises(NetworkError) as exc_info:
                client.download("https://example.com/sdk.msi")
        assert exc_info.value.stage == "download"
        assert exc_info.value.describe().startswith("[network@download]")

    def test_manifest_is_json_document(self, manifest_document):
        """Test extra manifest keys are tolerated."""
        manifest_document["schema"] = 3
        content = json.dumps(manifest_document).encode()
        with _client_with(lambda r: httpx.Response(200, content=content)) as client:
            assert client.fetch_manifest().game_versions[1].release_notes == ["0.9.0", "1.0.0"]
