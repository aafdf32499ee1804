"""Fetched-source bookkeeping and git checkouts.

Every fetched source has a marker under ``<work>/.state/sources/<name>.json``
recording the pin it was fetched with. A source is reused only when its
marker is complete, its pin matches the manifest and its directory exists.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from kbuild_pipeline.errors import FetchError
from kbuild_pipeline.manifest.schema import GitSourceSchema
from kbuild_pipeline.stages.runner import CommandRunner, run_checked

logger = logging.getLogger(__name__)


class SourceMarker(BaseModel):
    """Fetch state of one source."""

    model_config = ConfigDict(extra="ignore")

    name: str
    kind: str
    status: Literal["incomplete", "complete"]
    pin: dict[str, object]
    checksum: str | None = None
    fetched_at: datetime | None = None


def read_source_marker(path: Path) -> SourceMarker | None:
    """Read a source marker, treating unreadable markers as absent."""
    if not path.exists():
        return None
    try:
        return SourceMarker.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning("Ignoring unreadable source marker %s: %s", path, e)
        return None


def write_source_marker(path: Path, marker: SourceMarker) -> None:
    """Atomically write a source marker."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{marker.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(marker.model_dump_json(indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def incomplete_marker(name: str, kind: str, pin: dict[str, object]) -> SourceMarker:
    return SourceMarker(name=name, kind=kind, status="incomplete", pin=pin)


def complete_marker(
    name: str,
    kind: str,
    pin: dict[str, object],
    checksum: str | None = None,
) -> SourceMarker:
    return SourceMarker(
        name=name,
        kind=kind,
        status="complete",
        pin=pin,
        checksum=checksum,
        fetched_at=datetime.now(timezone.utc),
    )


def clone_git_source(
    runner: CommandRunner,
    source: GitSourceSchema,
    dest: Path,
    log_path: Path,
    timeout: int | None = None,
) -> None:
    """Clone a repository into dest and detach at the pinned revision.

    Args:
        runner: Command runner.
        source: Git source definition.
        dest: Directory to clone into (must not exist).
        log_path: Fetch log file.
        timeout: Timeout per git invocation.

    Raises:
        FetchError: If cloning fails (code 'git_error') or the revision
            cannot be checked out (code 'revision_not_found').
    """
    logger.info("Cloning %s at %s", source.url, source.revision)
    run_checked(
        runner,
        ["git", "clone", "--quiet", source.url, str(dest)],
        cwd=dest.parent,
        log_path=log_path,
        error_cls=FetchError,
        code="git_error",
        message=f"Failed to clone {source.url}",
        timeout=timeout,
    )
    run_checked(
        runner,
        ["git", "checkout", "--quiet", "--detach", source.revision],
        cwd=dest,
        log_path=log_path,
        error_cls=FetchError,
        code="revision_not_found",
        message=f"Revision {source.revision} not found in {source.url}",
        timeout=timeout,
    )


def uses_lfs(repo_root: Path) -> bool:
    """Return True if the repository tracks files with git LFS."""
    attributes = repo_root / ".gitattributes"
    if not attributes.is_file():
        return False
    return "filter=lfs" in attributes.read_text(encoding="utf-8", errors="replace")


def has_submodules(repo_root: Path) -> bool:
    return (repo_root / ".gitmodules").is_file()


__all__ = [
    "SourceMarker",
    "clone_git_source",
    "complete_marker",
    "has_submodules",
    "incomplete_marker",
    "read_source_marker",
    "uses_lfs",
    "write_source_marker",
]
