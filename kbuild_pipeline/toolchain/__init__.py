"""Toolchain Fetcher module.

This module handles:
- Downloading and verifying toolchain and root filesystem archives
- Safe extraction into the source cache
- Git checkouts of test corpora at pinned revisions
- Repository synchronization (submodules, LFS assets)
- Locking for concurrent fetch prevention
"""

from kbuild_pipeline.toolchain.fetch import DownloadResult, download_file, extract_archive
from kbuild_pipeline.toolchain.service import ToolchainFetcher
from kbuild_pipeline.toolchain.sources import SourceMarker

__all__ = [
    "DownloadResult",
    "SourceMarker",
    "ToolchainFetcher",
    "download_file",
    "extract_archive",
]
