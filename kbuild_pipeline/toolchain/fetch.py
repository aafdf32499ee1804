"""Archive fetch helpers for the Toolchain Fetcher.

This module handles:
- Download with checksum verification (httpx, streamed)
- Safe extraction of tar archives
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import httpx

from kbuild_pipeline.errors import FetchError

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass
class DownloadResult:
    """Result of a download."""

    archive_path: Path
    checksum: str
    size_bytes: int


def make_http_client() -> httpx.Client:
    """Create the HTTP client used for source downloads."""
    return httpx.Client(follow_redirects=True)


def archive_filename(url_or_path: str) -> str:
    """Return the last path component of a URL or local path."""
    return url_or_path.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        FetchError: If the download fails or the checksum does not match.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    computed_checksum = sha256.hexdigest()

    if expected_checksum and computed_checksum != expected_checksum.lower():
        # Remove the corrupted file
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"Checksum mismatch for {url}: "
            f"expected {expected_checksum}, got {computed_checksum}",
            code="checksum_mismatch",
        )

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        archive_path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


def _check_members(tar: tarfile.TarFile, archive_path: Path) -> None:
    members = tar.getmembers()
    if not members:
        raise FetchError(f"Archive {archive_path} is empty", code="empty_archive")

    for member in members:
        member_path = PurePosixPath(member.name.lstrip("/"))
        if ".." in member_path.parts:
            raise FetchError(
                f"Refusing to extract {member.name}: path traversal detected",
                code="path_traversal",
            )
        if member.islnk() and ".." in PurePosixPath(member.linkname).parts:
            raise FetchError(
                f"Refusing to extract hard link {member.name} -> {member.linkname}",
                code="path_traversal",
            )


def extract_archive(
    archive_path: Path,
    dest_dir: Path,
    strip_single_root: bool = True,
) -> Path:
    """Extract a tar archive (any compression tarfile understands).

    Symlinks are extracted as they are, including absolute targets, since
    root filesystem archives rely on them. They are never followed here.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Destination directory for extraction (created).
        strip_single_root: Return the only top-level directory when the
            archive contains exactly one.

    Returns:
        Directory holding the extracted content.

    Raises:
        FetchError: If extraction fails (code 'extraction_error',
            'path_traversal' or 'empty_archive').
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)

    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            _check_members(tar, archive_path)
            tar.extractall(dest_dir, filter="tar")
    except tarfile.TarError as e:
        raise FetchError(
            f"Failed to extract {archive_path}: {e}",
            code="extraction_error",
        ) from e
    except OSError as e:
        raise FetchError(
            f"OS error extracting {archive_path}: {e}",
            code="extraction_error",
        ) from e

    if strip_single_root:
        entries = list(dest_dir.iterdir())
        if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
            return entries[0]
    return dest_dir


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "DownloadResult",
    "archive_filename",
    "download_file",
    "extract_archive",
    "make_http_client",
    "remove_path",
]
