"""
Network download manager with retry logic.

Artifacts are streamed to disk with `requests`; transient transport errors
are retried with exponential backoff before giving up.
"""

import logging
import time
from pathlib import Path

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    """Exception raised when download fails."""

    pass


def download_file(
    url: str,
    destination: Path,
    timeout: int = 30,
    max_retries: int = 3,
    session: requests.Session = None,
) -> Path:
    """
    Download file from URL to destination with retry logic.

    Args:
        url: URL to download from
        destination: Local path to save file
        timeout: Request timeout in seconds
        max_retries: Maximum number of attempts
        session: Optional requests session to reuse connections

    Returns:
        Path to downloaded file

    Raises:
        DownloadError: If download fails after retries
        ValueError: If URL or destination is invalid

    Example:
        >>> download_file(
        ...     "https://packages.example.com/buildpack-ruby/ruby-2.0.0.tgz",
        ...     Path("/tmp/ruby-2.0.0.tgz"),
        ... )
    """
    if not url:
        raise ValueError("URL cannot be empty")

    if not destination:
        raise ValueError("Destination path cannot be empty")

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    for attempt in range(max_retries):
        try:
            return _download(url, destination, timeout, session)
        except RequestException as e:
            destination.unlink(missing_ok=True)
            if attempt == max_retries - 1:
                raise DownloadError(
                    f"Download of {url} failed after {max_retries} attempts: {e}"
                ) from e

            backoff_seconds = 2**attempt
            logger.warning(
                f"Download attempt {attempt + 1} failed: {e}. "
                f"Retrying in {backoff_seconds}s..."
            )
            time.sleep(backoff_seconds)

    raise DownloadError(f"Download of {url} failed for unknown reason")


def _download(
    url: str, destination: Path, timeout: int, session: requests.Session = None
) -> Path:
    """Stream a single download attempt to disk."""
    logger.debug(f"Downloading from {url}")

    getter = session.get if session is not None else requests.get
    downloaded = 0
    start_time = time.time()
    with getter(url, stream=True, timeout=timeout, allow_redirects=True) as response:
        response.raise_for_status()
        with open(destination, "wb") as f:
            for chunk in response.iter_content(chunk_size=8192):
                if chunk:
                    f.write(chunk)
                    downloaded += len(chunk)

    elapsed = time.time() - start_time
    logger.debug(f"Downloaded {downloaded} bytes to {destination} in {elapsed:.2f}s")
    return destination
