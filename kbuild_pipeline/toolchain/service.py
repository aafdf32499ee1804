"""Toolchain Fetcher service.

This module provides the high-level fetch API:
- fetch(): Ensure a list of sources exists locally at its pinned version
- fetch_for_arch(): Fetch everything one architecture needs
- sync_repository(): Update git submodules and LFS assets of the project

Fetches are serialized per source with a file lock. A fetch that fails
part way leaves the previous good copy and its marker untouched.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from kbuild_pipeline.errors import FetchError
from kbuild_pipeline.manifest.schema import (
    ArchiveSourceSchema,
    GitSourceSchema,
    LocalSourceSchema,
    SourceSchema,
)
from kbuild_pipeline.stages.runner import CommandRunner, run_checked, run_command
from kbuild_pipeline.store.fingerprint import compute_file_hash
from kbuild_pipeline.store.locks import file_lock, source_lock
from kbuild_pipeline.toolchain.fetch import (
    archive_filename,
    download_file,
    extract_archive,
    make_http_client,
    remove_path,
)
from kbuild_pipeline.toolchain.sources import (
    clone_git_source,
    complete_marker,
    has_submodules,
    incomplete_marker,
    read_source_marker,
    uses_lfs,
    write_source_marker,
)
from kbuild_pipeline.types import Arch, FetchResult

if TYPE_CHECKING:
    from kbuild_pipeline.config import Settings
    from kbuild_pipeline.manifest.schema import PipelineManifest

logger = logging.getLogger(__name__)


class ToolchainFetcher:
    """Acquires toolchains, root filesystem archives and test corpora."""

    def __init__(
        self,
        settings: Settings,
        manifest: PipelineManifest,
        runner: CommandRunner = run_command,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.manifest = manifest
        self.runner = runner
        self._client = client
        self._manage_client = client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = make_http_client()
        return self._client

    def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._manage_client and self._client is not None:
            self._client.close()
            self._client = None

    # Paths

    def source_path(self, source: SourceSchema) -> Path:
        """Return the directory holding a source's content."""
        if isinstance(source, LocalSourceSchema):
            return self._project_path(source.path)
        return self.settings.sources_dir / source.name

    def marker_path(self, name: str) -> Path:
        return self.settings.work_root / ".state" / "sources" / f"{name}.json"

    def log_path(self, name: str) -> Path:
        return self.settings.logs_dir / "fetch" / f"{name}.log"

    def _project_path(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.settings.project_root / p

    def is_fetched(self, source: SourceSchema) -> bool:
        """Return True if a source is present at its pinned version."""
        dest = self.source_path(source)
        if isinstance(source, LocalSourceSchema):
            return dest.is_dir()
        marker = read_source_marker(self.marker_path(source.name))
        return (
            marker is not None
            and marker.status == "complete"
            and marker.pin == source.pin()
            and dest.exists()
        )

    def toolchain_root(self, arch: Arch) -> Path:
        """Return the extracted cross toolchain directory for an architecture."""
        return self.source_path(self.manifest.arch_spec(arch).toolchain)

    # Fetching

    def fetch(self, sources: list[SourceSchema], force: bool = False) -> list[FetchResult]:
        """Ensure every source exists locally at its pinned version.

        Already present sources are left alone unless force is set.

        Args:
            sources: Sources to fetch (duplicates by name are fetched once).
            force: Refetch even when the source is up to date.

        Returns:
            One FetchResult per distinct source.

        Raises:
            FetchError: If any source cannot be acquired.
        """
        unique: dict[str, SourceSchema] = {}
        for source in sources:
            unique.setdefault(source.name, source)

        results: list[FetchResult] = []
        for source in unique.values():
            results.append(self._fetch_one(source, force=force))
        return results

    def fetch_for_arch(self, arch: Arch, force: bool = False) -> list[FetchResult]:
        """Fetch the toolchain, minimal rootfs and test corpora of an architecture."""
        return self.fetch(self.manifest.sources_for(arch), force=force)

    def fetch_all(self, force: bool = False) -> list[FetchResult]:
        """Fetch the sources of every configured architecture."""
        return self.fetch(self.manifest.all_sources(), force=force)

    def _fetch_one(self, source: SourceSchema, force: bool) -> FetchResult:
        dest = self.source_path(source)

        if isinstance(source, LocalSourceSchema):
            if not dest.is_dir():
                raise FetchError(
                    f"Local source {source.name} not found at {dest}",
                    code="source_missing",
                )
            return FetchResult(name=source.name, path=str(dest), kind=source.kind, fetched=False)

        if not force and self.is_fetched(source):
            logger.debug("Source %s is up to date", source.name)
            return self._cached_result(source, dest)

        try:
            with source_lock(
                self.settings.locks_dir, source.name, timeout=self.settings.lock_timeout
            ):
                # Another process may have fetched it while we waited
                if not force and self.is_fetched(source):
                    return self._cached_result(source, dest)

                checksum: str | None = None
                if isinstance(source, GitSourceSchema):
                    self._fetch_git(source, dest)
                else:
                    checksum = self._fetch_archive(source, dest)
        except TimeoutError as e:
            raise FetchError(
                f"Timeout waiting for lock on source {source.name}",
                code="lock_timeout",
            ) from e

        logger.info("Fetched source %s into %s", source.name, dest)
        return FetchResult(
            name=source.name,
            path=str(dest),
            kind=source.kind,
            fetched=True,
            checksum=checksum,
        )

    def _cached_result(self, source: SourceSchema, dest: Path) -> FetchResult:
        marker = read_source_marker(self.marker_path(source.name))
        return FetchResult(
            name=source.name,
            path=str(dest),
            kind=source.kind,
            fetched=False,
            checksum=marker.checksum if marker else None,
        )

    def _partial_dir(self, name: str) -> Path:
        return self.settings.sources_dir / f".{name}.partial-{uuid.uuid4().hex[:8]}"

    def _swap_into_place(
        self,
        source: SourceSchema,
        content: Path,
        dest: Path,
        checksum: str | None,
    ) -> None:
        """Replace dest with content, tagging the source incomplete in between."""
        marker_path = self.marker_path(source.name)
        write_source_marker(marker_path, incomplete_marker(source.name, source.kind, source.pin()))
        remove_path(dest)
        os.replace(content, dest)
        write_source_marker(
            marker_path,
            complete_marker(source.name, source.kind, source.pin(), checksum=checksum),
        )

    def _fetch_archive(self, source: ArchiveSourceSchema, dest: Path) -> str:
        self.settings.sources_dir.mkdir(parents=True, exist_ok=True)
        partial = self._partial_dir(source.name)
        filename = archive_filename(source.url or source.path or source.name)
        tmp_archive = self.settings.sources_dir / f".{source.name}.{uuid.uuid4().hex[:8]}.download"

        if source.sha256 is None:
            logger.warning("No checksum pinned for %s, skipping verification", source.name)

        try:
            if source.url is not None:
                if self.settings.offline:
                    raise FetchError(
                        f"Cannot download {source.name} in offline mode",
                        code="offline_mode",
                    )
                result = download_file(
                    self.client,
                    source.url,
                    tmp_archive,
                    expected_checksum=source.sha256,
                    timeout=self.settings.download_timeout,
                )
                checksum = result.checksum
            else:
                checksum = self._copy_local_archive(source, tmp_archive)

            if source.extract:
                content = extract_archive(tmp_archive, partial / "content")
            else:
                partial.mkdir(parents=True)
                content = partial / "content"
                content.mkdir()
                shutil.move(str(tmp_archive), content / filename)

            self._swap_into_place(source, content, dest, checksum)
            return checksum
        finally:
            tmp_archive.unlink(missing_ok=True)
            if partial.exists():
                shutil.rmtree(partial, ignore_errors=True)

    def _copy_local_archive(self, source: ArchiveSourceSchema, tmp_archive: Path) -> str:
        local = self._project_path(source.path or "")
        if not local.is_file():
            raise FetchError(
                f"Archive for {source.name} not found at {local}",
                code="source_missing",
            )
        shutil.copyfile(local, tmp_archive)
        checksum = compute_file_hash(tmp_archive)
        if source.sha256 is not None and checksum != source.sha256:
            raise FetchError(
                f"Checksum mismatch for {local}: expected {source.sha256}, got {checksum}",
                code="checksum_mismatch",
            )
        return checksum

    def _fetch_git(self, source: GitSourceSchema, dest: Path) -> None:
        if self.settings.offline:
            raise FetchError(
                f"Cannot clone {source.name} in offline mode",
                code="offline_mode",
            )
        self.settings.sources_dir.mkdir(parents=True, exist_ok=True)
        partial = self._partial_dir(source.name)
        try:
            clone_git_source(
                self.runner,
                source,
                partial,
                self.log_path(source.name),
                timeout=self.settings.command_timeout,
            )
            self._swap_into_place(source, partial, dest, checksum=None)
        finally:
            if partial.exists():
                shutil.rmtree(partial, ignore_errors=True)

    # Repository synchronization

    def sync_repository(self, log_path: Path) -> None:
        """Update the project's submodules and large-file assets.

        Runs ``git submodule update`` when the checkout has submodules,
        ``git lfs pull`` when it tracks LFS files, then the manifest's
        extra setup commands.

        Raises:
            FetchError: If any command fails.
        """
        root = self.settings.project_root
        setup = self.manifest.setup
        commands: list[list[str]] = []

        if setup.submodules and has_submodules(root):
            commands.append(["git", "submodule", "update", "--init", "--recursive"])
        if setup.lfs and uses_lfs(root):
            commands.append(["git", "lfs", "pull"])
        commands.extend(setup.commands)

        if not commands:
            return
        if self.settings.offline:
            logger.warning("Offline mode: skipping repository synchronization")
            return

        try:
            with file_lock(
                self.settings.locks_dir, "repository", timeout=self.settings.lock_timeout
            ):
                for argv in commands:
                    run_checked(
                        self.runner,
                        argv,
                        cwd=root,
                        log_path=log_path,
                        error_cls=FetchError,
                        code="sync_failed",
                        message="Repository synchronization failed",
                        timeout=self.settings.command_timeout,
                    )
        except TimeoutError as e:
            raise FetchError(
                "Timeout waiting for the repository lock",
                code="lock_timeout",
            ) from e


__all__ = ["ToolchainFetcher"]
