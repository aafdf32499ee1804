"""Rootfs Builder.

This module handles:
- Computing the rootfs input fingerprint
- Extracting the minimal root filesystem for an architecture
- Installing the dynamic loader and shared libraries from the cross toolchain
- Tagging the tree incomplete until it is fully written

The builder only touches rootfs/<arch>/ and the markers of that
architecture; other architectures' trees are never read or written.
"""

from __future__ import annotations

import errno
import logging
import shutil
from pathlib import Path

from kbuild_pipeline.errors import BuildError, FetchError
from kbuild_pipeline.manifest.schema import ArchiveSourceSchema, ArchSchema
from kbuild_pipeline.stages.context import StageContext, StageResult
from kbuild_pipeline.store.artifacts import ROOTFS
from kbuild_pipeline.store.fingerprint import (
    compute_fingerprint,
    compute_tree_hash,
    count_entries,
)
from kbuild_pipeline.toolchain.fetch import extract_archive
from kbuild_pipeline.types import Arch, StageName

logger = logging.getLogger(__name__)

# Permission bits of installed libraries
LIBRARY_MODE = 0o755


def toolchain_lib_dir(ctx: StageContext, arch: Arch) -> Path:
    """Return the target library directory of the cross toolchain."""
    spec = ctx.manifest.arch_spec(arch)
    return ctx.fetcher.toolchain_root(arch) / spec.triple / "lib"


def rootfs_inputs(ctx: StageContext, arch: Arch | str) -> dict[str, object]:
    """Return every input that affects the rootfs content."""
    arch = Arch(arch)
    spec = ctx.manifest.arch_spec(arch)
    return {
        "arch": arch.value,
        "triple": spec.triple,
        "toolchain": spec.toolchain.pin(),
        "minirootfs": spec.minirootfs.pin(),
        "loader": spec.loader,
        "shared_libs": list(ctx.manifest.shared_libs),
    }


def rootfs_fingerprint(ctx: StageContext, arch: Arch | str) -> str:
    return compute_fingerprint(rootfs_inputs(ctx, arch))


def _install_library(src: Path, dest: Path) -> None:
    # Copies link targets so the rootfs never points into the host toolchain
    dest.unlink(missing_ok=True)
    shutil.copyfile(src, dest)
    dest.chmod(LIBRARY_MODE)


def _unpack_minirootfs(ctx: StageContext, spec: ArchSchema, rootfs: Path) -> None:
    source_dir = ctx.fetcher.source_path(spec.minirootfs)
    if not source_dir.is_dir():
        raise BuildError(
            f"Minimal root filesystem {spec.minirootfs.name} has not been fetched",
            code="missing_minirootfs",
        )

    if isinstance(spec.minirootfs, ArchiveSourceSchema) and not spec.minirootfs.extract:
        archives = sorted(p for p in source_dir.iterdir() if p.is_file())
        if len(archives) != 1:
            raise BuildError(
                f"Expected one archive in {source_dir}, found {len(archives)}",
                code="extraction_error",
            )
        try:
            extract_archive(archives[0], rootfs, strip_single_root=False)
        except FetchError as e:
            raise BuildError(
                f"Failed to extract {archives[0].name}: {e.message}",
                code="extraction_error",
            ) from e
    else:
        shutil.copytree(source_dir, rootfs, symlinks=True)


def _populate(ctx: StageContext, arch: Arch, spec: ArchSchema, rootfs: Path) -> None:
    _unpack_minirootfs(ctx, spec, rootfs)

    for subpath in ctx.store.reserved_subpaths():
        candidate = rootfs / subpath
        if candidate.exists() or candidate.is_symlink():
            raise BuildError(
                f"Root filesystem archive populates reserved path /{subpath}",
                code="reserved_subpath",
                details={"subpath": subpath},
            )

    lib_dir = rootfs / "lib"
    if lib_dir.is_symlink():
        raise BuildError(
            f"{lib_dir} is a symlink; refusing to install libraries through it",
            code="malformed_rootfs",
        )
    lib_dir.mkdir(exist_ok=True)

    toolchain_libs = toolchain_lib_dir(ctx, arch)
    _install_library(toolchain_libs / "libc.so", lib_dir / spec.loader)
    logger.debug("Installed %s into %s", spec.loader, lib_dir)

    for name in ctx.manifest.shared_libs:
        src = toolchain_libs / name
        if not src.exists():
            raise BuildError(
                f"Shared library {name} not found in {toolchain_libs}",
                code="missing_shared_lib",
                details={"library": name},
            )
        _install_library(src, lib_dir / name)
        logger.debug("Installed %s into %s", name, lib_dir)


def build_rootfs(ctx: StageContext, arch: Arch | str, force: bool = False) -> StageResult:
    """Build the root filesystem tree for an architecture.

    Args:
        ctx: Stage context.
        arch: Target architecture.
        force: Rebuild even when the existing tree is fresh.

    Returns:
        StageResult with the rootfs artifact.

    Raises:
        BuildError: If the toolchain is missing (code 'missing_toolchain'),
            the disk is full ('disk_full'), extraction fails
            ('extraction_error'), a reserved path is populated
            ('reserved_subpath') or the result is empty ('empty_rootfs').
    """
    arch = Arch(arch)
    spec = ctx.manifest.arch_spec(arch)
    store = ctx.store
    fingerprint = rootfs_fingerprint(ctx, arch)

    if not force and store.is_fresh(arch, ROOTFS, fingerprint):
        logger.info("Rootfs for %s is up to date", arch.value)
        return StageResult(executed=False, artifact=store.describe(arch, ROOTFS))

    libc = toolchain_lib_dir(ctx, arch) / "libc.so"
    if not libc.is_file():
        raise BuildError(
            f"Cross toolchain for {arch.value} is missing ({libc} not found)",
            code="missing_toolchain",
            details={"expected": str(libc)},
        )

    logger.info("Building rootfs for %s", arch.value)
    store.mark_incomplete(arch, ROOTFS, StageName.ROOTFS.value, fingerprint)
    store.remove_output(arch, ROOTFS)
    rootfs = store.rootfs_path(arch)
    rootfs.parent.mkdir(parents=True, exist_ok=True)

    try:
        _populate(ctx, arch, spec, rootfs)
    except OSError as e:
        if e.errno == errno.ENOSPC:
            raise BuildError(
                f"No space left while building rootfs for {arch.value}",
                code="disk_full",
            ) from e
        raise BuildError(
            f"Failed to build rootfs for {arch.value}: {e}",
            code="install_error",
        ) from e

    if count_entries(rootfs) == 0:
        raise BuildError(
            f"Rootfs for {arch.value} is empty after extraction",
            code="empty_rootfs",
        )

    content_hash = compute_tree_hash(rootfs, exclude=store.reserved_subpaths())
    store.mark_complete(
        arch, ROOTFS, StageName.ROOTFS.value, fingerprint, content_hash=content_hash
    )
    logger.info("Rootfs for %s complete (content hash %s)", arch.value, content_hash[:16])
    return StageResult(executed=True, artifact=store.describe(arch, ROOTFS))


__all__ = ["build_rootfs", "rootfs_fingerprint", "rootfs_inputs", "toolchain_lib_dir"]
