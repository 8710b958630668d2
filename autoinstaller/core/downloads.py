"""
HTTP file downloads for release images and checksum manifests.

Files are streamed to `<dest>.part` and renamed into place once complete,
so a cached file in the download dir is always a finished one.
"""
import logging
from pathlib import Path
from typing import Optional

import httpx

from autoinstaller.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
PARTIAL_SUFFIX = ".part"


class DownloadError(Exception):
    """A file could not be fetched."""
    pass


class Downloader:
    """Fetches URLs into local files."""

    def __init__(self, settings: Optional[Settings] = None, timeout: Optional[float] = None):
        settings = settings or get_settings()
        self.timeout = settings.download_timeout_s if timeout is None else timeout

    def fetch(self, url: str, dest: Path) -> Path:
        """
        Download `url` into `dest`, replacing any existing file.

        Raises:
            DownloadError: on HTTP errors, timeouts or local write failures
        """
        dest = Path(dest)
        partial = dest.with_name(dest.name + PARTIAL_SUFFIX)
        logger.info(f"download_start url={url} dest={dest}")

        size = 0
        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise DownloadError(
                            f"failed to download {url}: HTTP {response.status_code}"
                        )
                    with open(partial, "wb") as f:
                        for chunk in response.iter_bytes(CHUNK_SIZE):
                            f.write(chunk)
                            size += len(chunk)
            partial.replace(dest)
        except httpx.TimeoutException:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"download of {url} timed out")
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"download of {url} failed: {type(e).__name__}")
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"failed to write {dest}: {e}") from e
        except DownloadError:
            partial.unlink(missing_ok=True)
            raise

        logger.info(f"download_done dest={dest} size={size}")
        return dest

    def fetch_if_missing(self, url: str, dest: Path) -> Path:
        """Download unless `dest` already exists."""
        dest = Path(dest)
        if dest.exists():
            logger.info(f"download_cached dest={dest}")
            return dest
        return self.fetch(url, dest)
