"""Source and developer-facing stages: setup, update, check, doc, clean.

These stages own no architecture artifact (except that clean deletes them
all); they always run when requested.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from kbuild_pipeline.errors import DevToolError
from kbuild_pipeline.stages.context import StageContext, StageResult
from kbuild_pipeline.stages.runner import run_checked
from kbuild_pipeline.types import Arch, StageName

logger = logging.getLogger(__name__)


def _run_commands(
    ctx: StageContext,
    commands: list[list[str]],
    log_path: Path,
    code: str,
    message: str,
) -> None:
    for argv in commands:
        run_checked(
            ctx.runner,
            argv,
            cwd=ctx.settings.project_root,
            log_path=log_path,
            error_cls=DevToolError,
            code=code,
            message=message,
            timeout=ctx.settings.command_timeout,
        )


def run_setup(ctx: StageContext, arch: Arch | str) -> StageResult:
    """Synchronize the repository and fetch every source an architecture needs.

    Raises:
        FetchError: If synchronization or any fetch fails.
    """
    arch = Arch(arch)
    log_path = ctx.start_log(StageName.SETUP.value, arch)
    ctx.fetcher.sync_repository(log_path)
    results = ctx.fetcher.fetch_for_arch(arch)
    fetched = [r.name for r in results if r.fetched]
    logger.info(
        "Setup for %s: %d source(s) ready, %d fetched",
        arch.value,
        len(results),
        len(fetched),
    )
    return StageResult(
        executed=True,
        log_path=log_path,
        details={"sources": [r.name for r in results], "fetched": fetched},
    )


def run_update(ctx: StageContext) -> StageResult:
    """Run the update commands, then refetch every pinned source.

    Raises:
        DevToolError: If an update command fails (code 'update_failed').
        FetchError: If refetching fails.
    """
    log_path = ctx.start_log(StageName.UPDATE.value)
    _run_commands(
        ctx, ctx.manifest.update.commands, log_path, "update_failed", "Update failed"
    )
    results = ctx.fetcher.fetch_all(force=True)
    return StageResult(
        executed=True,
        log_path=log_path,
        details={"fetched": [r.name for r in results if r.fetched]},
    )


def run_check(ctx: StageContext) -> StageResult:
    """Run the style checks.

    Raises:
        DevToolError: If a check fails (code 'check_failed').
    """
    log_path = ctx.start_log(StageName.CHECK.value)
    _run_commands(
        ctx, ctx.manifest.check.commands, log_path, "check_failed", "Style check failed"
    )
    logger.info("Style checks passed")
    return StageResult(executed=True, log_path=log_path)


def run_doc(ctx: StageContext, open_docs: bool = True) -> StageResult:
    """Generate documentation and open it for viewing unless open_docs is False.

    Raises:
        DevToolError: If the generator fails (code 'doc_failed').
    """
    commands = [list(argv) for argv in ctx.manifest.doc.commands]
    if open_docs and commands:
        commands[-1].append("--open")
    log_path = ctx.start_log(StageName.DOC.value)
    _run_commands(ctx, commands, log_path, "doc_failed", "Documentation generation failed")
    return StageResult(executed=True, log_path=log_path)


def clean_log_path(ctx: StageContext) -> Path:
    # Kept outside the build scratch, which clean deletes
    return ctx.settings.work_root / "clean.log"


def run_clean(ctx: StageContext) -> StageResult:
    """Delete every architecture's artifacts, images and the build scratch.

    Fetched sources are kept. Callers hold every architecture lock.

    Raises:
        DevToolError: If a clean command fails ('clean_failed') or the
            store cannot be deleted ('clean_failed').
    """
    log_path = clean_log_path(ctx)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_text("")
    _run_commands(ctx, ctx.manifest.clean.commands, log_path, "clean_failed", "Clean failed")

    try:
        removed = ctx.store.clean_all()
        target_dir = ctx.settings.target_dir
        if target_dir.exists():
            shutil.rmtree(target_dir)
            removed.append(target_dir)
    except OSError as e:
        raise DevToolError(f"Failed to delete build outputs: {e}", code="clean_failed") from e

    logger.info("Clean removed %d path(s)", len(removed))
    return StageResult(
        executed=True,
        log_path=log_path,
        details={"removed": [str(p) for p in removed]},
    )


__all__ = ["clean_log_path", "run_check", "run_clean", "run_doc", "run_setup", "run_update"]
