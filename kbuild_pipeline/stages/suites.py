"""Test Stager.

This module handles:
- Copying a test corpus into a per-architecture build tree
- Cross-building it with the architecture's toolchain
- Replacing the suite's reserved subpath inside rootfs/<arch>/

Each suite writes its own subpath and marker, so the suites can run in
any order or concurrently against the same rootfs. The rt-test suite is
optional and usually limited to the architectures it builds for.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
from pathlib import Path

from kbuild_pipeline.errors import StageError
from kbuild_pipeline.manifest.schema import LocalSourceSchema, SuiteSchema
from kbuild_pipeline.stages.context import StageContext, StageResult
from kbuild_pipeline.stages.rootfs import toolchain_lib_dir
from kbuild_pipeline.stages.runner import render_command, render_env, run_checked
from kbuild_pipeline.store.artifacts import (
    LIBC_TEST,
    OTHER_TEST,
    ROOTFS,
    RT_TEST,
    SUITE_ARTIFACTS,
    SUITE_SECTIONS,
)
from kbuild_pipeline.store.fingerprint import (
    compute_fingerprint,
    compute_tree_hash,
    count_entries,
)
from kbuild_pipeline.toolchain.fetch import remove_path
from kbuild_pipeline.types import Arch, StageName

logger = logging.getLogger(__name__)


def suite_spec(ctx: StageContext, name: str) -> SuiteSchema:
    """Return the manifest entry of a test suite artifact.

    Raises:
        ValueError: If the name is not a test suite.
        StageError: If the suite has no manifest entry ('suite_not_configured').
    """
    if name not in SUITE_ARTIFACTS:
        raise ValueError(f"Unknown test suite: {name}")
    spec = ctx.manifest.suites().get(SUITE_SECTIONS[name])
    if spec is None:
        raise StageError(
            f"Test suite {name} is not configured in the manifest",
            code="suite_not_configured",
        )
    return spec


def template_values(ctx: StageContext, arch: Arch, name: str) -> dict[str, object]:
    """Return the placeholders available to suite build commands."""
    spec = ctx.manifest.arch_spec(arch)
    toolchain_bin = ctx.fetcher.toolchain_root(arch) / "bin"
    return {
        "arch": arch.value,
        "triple": spec.triple,
        "jobs": ctx.settings.jobs,
        "toolchain_bin": str(toolchain_bin),
        "cross_compile": f"{toolchain_bin}/{spec.triple}-",
        "source_dir": str(ctx.fetcher.source_path(suite_spec(ctx, name).source)),
        "build_dir": str(ctx.build_dir(arch, name)),
    }


def suite_inputs(ctx: StageContext, arch: Arch | str, name: str) -> dict[str, object]:
    """Return every input that affects a staged suite.

    Includes the rootfs generation, so a rebuilt rootfs forces restaging.
    """
    arch = Arch(arch)
    spec = suite_spec(ctx, name)
    source_dir = ctx.fetcher.source_path(spec.source)
    rootfs_marker = ctx.store.read_marker(arch, ROOTFS)

    inputs: dict[str, object] = {
        "arch": arch.value,
        "suite": name,
        "spec": spec.model_dump(mode="json"),
        "toolchain": ctx.manifest.arch_spec(arch).toolchain.pin(),
        "rootfs_generation": rootfs_marker.generation if rootfs_marker else None,
    }
    if isinstance(spec.source, LocalSourceSchema):
        # Local corpora have no pin; their content is the version
        inputs["source_tree"] = compute_tree_hash(source_dir, exclude=spec.exclude)
    return inputs


def suite_fingerprint(ctx: StageContext, arch: Arch | str, name: str) -> str:
    return compute_fingerprint(suite_inputs(ctx, arch, name))


def _copy_tree(src: Path, dest: Path, exclude: list[str]) -> None:
    ignore = shutil.ignore_patterns(*exclude) if exclude else None
    shutil.copytree(src, dest, symlinks=True, ignore=ignore)


def stage_test_suite(
    ctx: StageContext,
    arch: Arch | str,
    name: str,
    force: bool = False,
) -> StageResult:
    """Build a test suite and stage it into its reserved rootfs subpath.

    Args:
        ctx: Stage context.
        arch: Target architecture.
        name: Suite artifact name ('libc-test', 'other-test' or 'rt-test').
        force: Restage even when the staged suite is fresh.

    Returns:
        StageResult with the staged suite artifact.

    Raises:
        StageError: If the suite is not configured for the architecture
            ('suite_not_configured', 'unsupported_arch'), the rootfs is not
            complete ('missing_rootfs'), the source is missing
            ('missing_source'), a build command fails ('build_failed'), the
            build output is missing ('missing_output'),
            the subpath is occupied by a link ('subpath_conflict') or
            copying fails ('copy_failed', 'disk_full').
    """
    arch = Arch(arch)
    if name not in SUITE_ARTIFACTS:
        raise ValueError(f"Unknown test suite: {name}")
    store = ctx.store
    spec = suite_spec(ctx, name)
    if not spec.supports(arch):
        raise StageError(
            f"Test suite {name} is not built for {arch.value}",
            code="unsupported_arch",
            details={"arches": [a.value for a in spec.arches]},
        )

    try:
        rootfs = store.require_complete(arch, ROOTFS, arch)
    except StageError as e:
        raise StageError(
            f"Cannot stage {name}: rootfs for {arch.value} is not complete",
            code="missing_rootfs",
            details=e.details,
        ) from e
    if count_entries(rootfs) == 0:
        raise StageError(
            f"Cannot stage {name}: rootfs for {arch.value} is empty",
            code="missing_rootfs",
        )

    source_dir = ctx.fetcher.source_path(spec.source)
    if not source_dir.is_dir():
        raise StageError(
            f"Source of {name} not found at {source_dir}",
            code="missing_source",
        )

    fingerprint = suite_fingerprint(ctx, arch, name)
    if not force and store.is_fresh(arch, name, fingerprint):
        logger.info("%s for %s is up to date", name, arch.value)
        return StageResult(executed=False, artifact=store.describe(arch, name))

    toolchain_libc = toolchain_lib_dir(ctx, arch) / "libc.so"
    if spec.build and not toolchain_libc.is_file():
        raise StageError(
            f"Cross toolchain for {arch.value} is missing ({toolchain_libc} not found)",
            code="missing_toolchain",
        )

    log_path = ctx.start_log(name, arch)
    target = store.path_for(arch, name)
    build_dir = ctx.build_dir(arch, name)
    values = template_values(ctx, arch, name)

    logger.info("Staging %s for %s", name, arch.value)
    store.mark_incomplete(arch, name, StageName(name).value, fingerprint)

    try:
        remove_path(build_dir)
        build_dir.parent.mkdir(parents=True, exist_ok=True)
        _copy_tree(source_dir, build_dir, spec.exclude)
    except OSError as e:
        raise StageError(
            f"Failed to copy {name} sources into {build_dir}: {e}",
            code="disk_full" if e.errno == errno.ENOSPC else "copy_failed",
        ) from e

    env = render_env(spec.env, values)
    env["PATH"] = f"{values['toolchain_bin']}{os.pathsep}{os.environ.get('PATH', '')}"
    for argv in spec.build:
        run_checked(
            ctx.runner,
            render_command(argv, values),
            cwd=build_dir,
            log_path=log_path,
            error_cls=StageError,
            code="build_failed",
            message=f"Building {name} for {arch.value} failed",
            timeout=ctx.settings.command_timeout,
            env_override=env,
        )

    output_dir = build_dir / spec.output
    if not output_dir.is_dir():
        raise StageError(
            f"Build output {output_dir} of {name} does not exist",
            code="missing_output",
        )

    if target.is_symlink():
        raise StageError(
            f"Reserved path {target} is a symlink",
            code="subpath_conflict",
        )

    try:
        remove_path(target)
        _copy_tree(output_dir, target, spec.exclude)
    except OSError as e:
        raise StageError(
            f"Failed to stage {name} into {target}: {e}",
            code="disk_full" if e.errno == errno.ENOSPC else "copy_failed",
        ) from e

    content_hash = compute_tree_hash(target)
    store.mark_complete(arch, name, StageName(name).value, fingerprint, content_hash=content_hash)
    logger.info("Staged %s for %s into %s", name, arch.value, target)
    return StageResult(
        executed=True,
        artifact=store.describe(arch, name),
        log_path=log_path if spec.build else None,
    )


def stage_libc_tests(ctx: StageContext, arch: Arch | str, force: bool = False) -> StageResult:
    """Stage the C library conformance suite into rootfs/<arch>/."""
    return stage_test_suite(ctx, arch, LIBC_TEST, force=force)


def stage_other_tests(ctx: StageContext, arch: Arch | str, force: bool = False) -> StageResult:
    """Stage the secondary test suite into rootfs/<arch>/."""
    return stage_test_suite(ctx, arch, OTHER_TEST, force=force)


def stage_rt_tests(ctx: StageContext, arch: Arch | str, force: bool = False) -> StageResult:
    """Stage the real-time latency suite into rootfs/<arch>/."""
    return stage_test_suite(ctx, arch, RT_TEST, force=force)


__all__ = [
    "stage_libc_tests",
    "stage_other_tests",
    "stage_rt_tests",
    "stage_test_suite",
    "suite_fingerprint",
    "suite_inputs",
    "suite_spec",
    "template_values",
]
