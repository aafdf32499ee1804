"""Shared state handed to every stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from kbuild_pipeline.stages.runner import CommandRunner, run_command
from kbuild_pipeline.types import Arch, ArtifactInfo

if TYPE_CHECKING:
    from kbuild_pipeline.config import Settings
    from kbuild_pipeline.manifest.schema import PipelineManifest
    from kbuild_pipeline.store.artifacts import ArtifactStore
    from kbuild_pipeline.toolchain.service import ToolchainFetcher


@dataclass
class StageContext:
    """Collaborators of a stage.

    Attributes:
        settings: Effective settings.
        manifest: Pipeline manifest.
        store: Artifact Store.
        fetcher: Toolchain Fetcher.
        runner: Command runner used for every external tool.
    """

    settings: Settings
    manifest: PipelineManifest
    store: ArtifactStore
    fetcher: ToolchainFetcher
    runner: CommandRunner = run_command

    def log_path(self, stage: str, arch: Arch | str | None = None) -> Path:
        """Return the log file of a stage (per architecture when arch is given)."""
        if arch is None:
            return self.settings.logs_dir / f"{stage}.log"
        return self.settings.logs_dir / Arch(arch).value / f"{stage}.log"

    def start_log(self, stage: str, arch: Arch | str | None = None) -> Path:
        """Return the log file of a stage, emptied for a new run."""
        path = self.log_path(stage, arch)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("")
        return path

    def build_dir(self, arch: Arch | str, name: str) -> Path:
        return self.settings.target_dir / Arch(arch).value / name


@dataclass
class StageResult:
    """Outcome of one stage function.

    Attributes:
        executed: False when the output was fresh and the stage did nothing.
        artifact: Artifact produced or reused, for stages that own one.
        log_path: Log file of the stage, if it ran external tools.
        details: Extra information for reports.
    """

    executed: bool
    artifact: ArtifactInfo | None = None
    log_path: Path | None = None
    details: dict[str, object] = field(default_factory=dict)


__all__ = ["StageContext", "StageResult"]
