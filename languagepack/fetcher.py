"""
Artifact fetching from the buildpack package store.

An ArtifactFetcher is bound to one base URL (the ruby bucket, the JVM
bucket, the rubinius host) and resolves artifact names against it. Archives
are downloaded to a scratch directory and extracted in place.
"""

import logging
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

import requests
import yaml

from languagepack.core.download import DownloadError, download_file
from languagepack.core.exceptions import ArtifactFetchError
from languagepack.core.filesystem import ArchiveExtractionError, extract_archive

logger = logging.getLogger(__name__)


class ArtifactFetcher:
    """
    Fetches named artifacts from a remote base URL.

    Example:
        >>> fetcher = ArtifactFetcher("https://packages.example.com/buildpack-ruby")
        >>> fetcher.fetch_untar("ruby-2.0.0.tgz", Path("vendor/ruby-2.0.0"))
    """

    def __init__(
        self,
        host_url: str,
        cdn: Optional[Mapping[str, str]] = None,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        max_retries: int = 3,
    ):
        """
        Initialize fetcher.

        Args:
            host_url: Base URL artifacts are resolved against
            cdn: Optional mapping of base URL to CDN URL
            session: Optional requests session shared between fetchers
            timeout: Per-request timeout in seconds
            max_retries: Download attempts before failing
        """
        cdn = cdn or {}
        self.host_url = cdn.get(host_url, host_url).rstrip("/")
        self.session = session
        self.timeout = timeout
        self.max_retries = max_retries

        if self.host_url != host_url.rstrip("/"):
            logger.debug(f"Using CDN {self.host_url} for {host_url}")

    def url_for(self, name: str) -> str:
        """Resolve an artifact name to its full URL."""
        return f"{self.host_url}/{name.lstrip('/')}"

    def fetch(self, name: str, directory: Path) -> Path:
        """
        Download an artifact into directory, keeping its file name.

        Raises:
            ArtifactFetchError: If the transport fails
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        destination = directory / Path(name).name
        self._download(name, destination)
        return destination

    def fetch_untar(self, name: str, directory: Path) -> Path:
        """Download a gzip'd tarball and extract it into directory."""
        return self._fetch_and_extract(name, Path(directory), "archive.tar.gz")

    def fetch_bunzip2(self, name: str, directory: Path) -> Path:
        """Download a bzip2'd tarball and extract it into directory."""
        return self._fetch_and_extract(name, Path(directory), "archive.tar.bz2")

    def read_yaml(self, name: str) -> Any:
        """
        Download a YAML document and parse it.

        Raises:
            ArtifactFetchError: If the transport fails or the YAML is invalid
        """
        with tempfile.TemporaryDirectory(prefix="languagepack-") as tmpdir:
            path = self.fetch(name, Path(tmpdir))
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ArtifactFetchError(
                    f"Invalid YAML in {self.url_for(name)}: {e}"
                ) from e

    def _fetch_and_extract(self, name: str, directory: Path, archive_name: str) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="languagepack-") as tmpdir:
            archive = Path(tmpdir) / archive_name
            self._download(name, archive)
            try:
                extract_archive(archive, directory)
            except ArchiveExtractionError as e:
                raise ArtifactFetchError(
                    f"Failed to extract {self.url_for(name)}: {e}"
                ) from e
        return directory

    def _download(self, name: str, destination: Path) -> None:
        url = self.url_for(name)
        try:
            download_file(
                url,
                destination,
                timeout=self.timeout,
                max_retries=self.max_retries,
                session=self.session,
            )
        except DownloadError as e:
            raise ArtifactFetchError(str(e)) from e
