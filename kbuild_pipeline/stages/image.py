"""Image Packager.

This module handles:
- Pre-flight checks of the rootfs (present, complete, loader installed)
- Capacity checks against the image size
- Writing the image to <arch>.img.partial and renaming it into place

The image is a function of the rootfs tree on disk and the image
settings only: the filesystem UUID and hash seed are derived from the
input fingerprint and the timestamp is pinned.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from kbuild_pipeline.errors import MissingPrerequisiteError, PackError
from kbuild_pipeline.stages.context import StageContext, StageResult
from kbuild_pipeline.stages.runner import render_command, render_env, run_checked
from kbuild_pipeline.store.artifacts import IMAGE, ROOTFS
from kbuild_pipeline.store.fingerprint import (
    compute_file_hash,
    compute_fingerprint,
    compute_tree_hash,
    estimate_tree_usage,
)
from kbuild_pipeline.types import Arch, ArtifactState, StageName

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


def image_size_mib(ctx: StageContext, arch: Arch | str) -> int:
    """Return the image capacity for an architecture in MiB."""
    override = ctx.manifest.arch_spec(Arch(arch)).image_size_mib
    return override if override is not None else ctx.manifest.image.size_mib


def check_rootfs(ctx: StageContext, arch: Arch | str) -> Path:
    """Verify the rootfs can be packaged.

    Returns:
        Path of the rootfs tree.

    Raises:
        MissingPrerequisiteError: If no rootfs was ever built.
        PackError: If the rootfs or a staged suite is tagged incomplete
            ('incomplete_rootfs') or the loader is missing ('malformed_rootfs').
    """
    arch = Arch(arch)
    store = ctx.store

    state = store.state(arch, ROOTFS)
    if state is ArtifactState.MISSING:
        raise MissingPrerequisiteError(
            f"No rootfs for {arch.value}; run 'rootfs {arch.value}' first",
            missing=[ROOTFS],
            stage=StageName.IMAGE.value,
            arch=arch.value,
        )
    if state is ArtifactState.INCOMPLETE:
        raise PackError(
            f"Rootfs for {arch.value} is tagged incomplete",
            code="incomplete_rootfs",
            details={"artifact": ROOTFS},
        )
    for suite in store.suite_names():
        if store.state(arch, suite) is ArtifactState.INCOMPLETE:
            raise PackError(
                f"Staged suite {suite} for {arch.value} is tagged incomplete",
                code="incomplete_rootfs",
                details={"artifact": suite},
            )

    rootfs = store.rootfs_path(arch)
    loader = rootfs / "lib" / ctx.manifest.arch_spec(arch).loader
    if not (loader.is_file() or loader.is_symlink()):
        raise PackError(
            f"Rootfs for {arch.value} has no dynamic loader at {loader}",
            code="malformed_rootfs",
        )
    return rootfs


def image_inputs(ctx: StageContext, arch: Arch | str) -> dict[str, object]:
    """Return every input of the image: settings plus the full rootfs tree."""
    arch = Arch(arch)
    return {
        "arch": arch.value,
        "image": ctx.manifest.image.model_dump(mode="json"),
        "size_mib": image_size_mib(ctx, arch),
        "epoch": ctx.settings.source_date_epoch,
        "rootfs_tree": compute_tree_hash(ctx.store.rootfs_path(arch)),
    }


def image_fingerprint(ctx: StageContext, arch: Arch | str) -> str:
    return compute_fingerprint(image_inputs(ctx, arch))


def image_uuid(fingerprint: str) -> str:
    """Derive a stable filesystem UUID from a fingerprint."""
    digest = fingerprint.split(":", 1)[-1]
    return str(uuid.UUID(hex=digest[:32]))


def pack_image(ctx: StageContext, arch: Arch | str, force: bool = False) -> StageResult:
    """Package rootfs/<arch>/ into <image_dir>/<arch>.img.

    Args:
        ctx: Stage context.
        arch: Target architecture.
        force: Repackage even when the image is fresh.

    Returns:
        StageResult with the image artifact.

    Raises:
        MissingPrerequisiteError: If no rootfs exists.
        PackError: If the rootfs is incomplete or malformed, the tree does
            not fit ('capacity_exceeded') or the image tool fails
            ('pack_failed').
    """
    arch = Arch(arch)
    store = ctx.store
    rootfs = check_rootfs(ctx, arch)

    size_mib = image_size_mib(ctx, arch)
    capacity = size_mib * MIB
    usage = estimate_tree_usage(rootfs)
    if usage > capacity:
        raise PackError(
            f"Rootfs for {arch.value} needs about {usage // MIB + 1} MiB, "
            f"image capacity is {size_mib} MiB",
            code="capacity_exceeded",
            details={"usage_bytes": usage, "capacity_bytes": capacity},
        )

    fingerprint = image_fingerprint(ctx, arch)
    if not force and store.is_fresh(arch, IMAGE, fingerprint):
        logger.info("Image for %s is up to date", arch.value)
        return StageResult(executed=False, artifact=store.describe(arch, IMAGE))

    image = store.image_path(arch)
    partial = store.partial_image_path(arch)
    log_path = ctx.start_log(StageName.IMAGE.value, arch)
    spec = ctx.manifest.image
    values: dict[str, object] = {
        "arch": arch.value,
        "rootfs": str(rootfs),
        "image": str(partial),
        "size_mib": size_mib,
        "label": spec.label,
        "uuid": image_uuid(fingerprint),
        "epoch": ctx.settings.source_date_epoch,
    }
    env = render_env(spec.env, values)

    logger.info("Packing image for %s (%d MiB)", arch.value, size_mib)
    store.mark_incomplete(arch, IMAGE, StageName.IMAGE.value, fingerprint)
    store.remove_output(arch, IMAGE)
    image.parent.mkdir(parents=True, exist_ok=True)

    try:
        partial.unlink(missing_ok=True)
        with partial.open("wb") as f:
            f.truncate(capacity)

        for argv in [spec.command, *spec.post_commands]:
            run_checked(
                ctx.runner,
                render_command(argv, values),
                cwd=ctx.settings.project_root,
                log_path=log_path,
                error_cls=PackError,
                code="pack_failed",
                message=f"Packing image for {arch.value} failed",
                timeout=ctx.settings.command_timeout,
                env_override=env,
            )

        if not partial.is_file() or partial.stat().st_size == 0:
            raise PackError(
                f"Image tool left no image at {partial}",
                code="pack_failed",
                log_path=str(log_path),
            )
        os.replace(partial, image)
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise PackError(
            f"Failed to write image for {arch.value}: {e}",
            code="pack_failed",
            log_path=str(log_path),
        ) from e
    except BaseException:
        partial.unlink(missing_ok=True)
        raise

    store.mark_complete(
        arch, IMAGE, StageName.IMAGE.value, fingerprint, content_hash=compute_file_hash(image)
    )
    logger.info("Image for %s written to %s", arch.value, image)
    return StageResult(executed=True, artifact=store.describe(arch, IMAGE), log_path=log_path)


__all__ = [
    "check_rootfs",
    "image_fingerprint",
    "image_inputs",
    "image_size_mib",
    "image_uuid",
    "pack_image",
]
