"""Pipeline Driver.

This module provides the orchestration API:
- plan(): Resolve the stages a request needs, grouped into levels
- run() / run_stages(): Execute a request for one architecture
- run_arches(): Execute a request for several architectures concurrently
- status(): Report the artifacts in the store

A run holds its architecture's lock from planning to the last stage, so
freshness decisions cannot be invalidated by a concurrent run for the same
architecture. The first failing stage stops the run; nothing is retried.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx

from kbuild_pipeline.config import get_settings
from kbuild_pipeline.errors import MissingPrerequisiteError, PipelineError, StageError
from kbuild_pipeline.manifest.io import load_manifest
from kbuild_pipeline.pipeline.graph import STAGE_ORDER, STAGES, get_stage, topological_levels
from kbuild_pipeline.stages.context import StageContext, StageResult
from kbuild_pipeline.stages.devtools import (
    run_check,
    run_clean,
    run_doc,
    run_setup,
    run_update,
)
from kbuild_pipeline.stages.image import image_fingerprint, pack_image
from kbuild_pipeline.stages.rootfs import build_rootfs, rootfs_fingerprint
from kbuild_pipeline.stages.runner import CommandRunner, run_command
from kbuild_pipeline.stages.suites import (
    stage_libc_tests,
    stage_other_tests,
    stage_rt_tests,
    suite_fingerprint,
    suite_spec,
)
from kbuild_pipeline.store.artifacts import SUITE_ARTIFACTS, ArtifactStore
from kbuild_pipeline.store.locks import arch_lock
from kbuild_pipeline.toolchain.service import ToolchainFetcher
from kbuild_pipeline.types import (
    Arch,
    ArtifactInfo,
    ArtifactSet,
    ArtifactState,
    StageName,
    StageOutcome,
)

if TYPE_CHECKING:
    from kbuild_pipeline.config import Settings
    from kbuild_pipeline.manifest.schema import PipelineManifest

logger = logging.getLogger(__name__)


@dataclass
class RunOptions:
    """Options of a pipeline run.

    Attributes:
        force: Rebuild the requested stages even when fresh.
        force_all: Rebuild every stage in the dependency closure.
        no_deps: Fail instead of running stale prerequisites.
        build_missing: Build 'requires' prerequisites that do not exist.
        jobs: Stages of one level run concurrently when greater than 1.
        open_docs: Open generated documentation (the doc stage passes --open).
    """

    force: bool = False
    force_all: bool = False
    no_deps: bool = False
    build_missing: bool = False
    jobs: int = 1
    open_docs: bool = True


@dataclass
class StageRecord:
    """What happened to one stage of a run."""

    stage: str
    arch: str | None
    outcome: StageOutcome
    started_at: datetime
    finished_at: datetime
    artifact: ArtifactInfo | None = None
    log_path: str | None = None
    details: dict[str, object] = field(default_factory=dict)
    error: PipelineError | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stage": self.stage,
            "arch": self.arch,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "log_path": self.log_path,
            "details": self.details,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class RunReport:
    """Result of a pipeline run for one architecture."""

    arch: str
    requested: list[str]
    plan: list[list[str]] = field(default_factory=list)
    records: list[StageRecord] = field(default_factory=list)
    artifacts: ArtifactSet = field(default_factory=ArtifactSet)
    error: PipelineError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def failed_stage(self) -> str | None:
        for record in self.records:
            if record.outcome is StageOutcome.FAILED:
                return record.stage
        return self.error.stage if self.error else None

    def outcome_of(self, stage: StageName | str) -> StageOutcome | None:
        """Return the outcome of a stage, or None if it was not part of the run."""
        name = StageName(stage).value
        for record in self.records:
            if record.stage == name:
                return record.outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "arch": self.arch,
            "requested": self.requested,
            "plan": self.plan,
            "success": self.success,
            "failed_stage": self.failed_stage,
            "stages": [r.to_dict() for r in self.records],
            "artifacts": {
                name: info.to_dict() for name, info in sorted(self.artifacts.items.items())
            },
            "error": self.error.to_dict() if self.error else None,
        }


class PipelineDriver:
    """Runs named stages for an architecture in dependency order."""

    def __init__(
        self,
        settings: Settings | None = None,
        manifest: PipelineManifest | None = None,
        runner: CommandRunner = run_command,
        client: httpx.Client | None = None,
    ) -> None:
        if settings is None:
            settings = get_settings()
        if manifest is None:
            manifest = load_manifest(settings.resolve_manifest_path())

        self.settings = settings
        self.manifest = manifest
        self.store = ArtifactStore.from_settings(settings, manifest)
        self.fetcher = ToolchainFetcher(settings, manifest, runner=runner, client=client)
        self.ctx = StageContext(
            settings=settings,
            manifest=manifest,
            store=self.store,
            fetcher=self.fetcher,
            runner=runner,
        )

    def close(self) -> None:
        self.fetcher.close()

    def __enter__(self) -> PipelineDriver:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _arch(self, arch: Arch | str | None) -> Arch:
        return Arch(arch) if arch is not None else self.settings.default_arch

    # Freshness

    def is_satisfied(self, stage: StageName | str, arch: Arch | str) -> bool:
        """Return True if a stage's output is present and built from current inputs.

        Phony stages other than setup are never satisfied.
        """
        definition = get_stage(stage)
        stage = definition.name
        arch = Arch(arch)

        if stage is StageName.SETUP:
            return all(self.fetcher.is_fetched(s) for s in self.manifest.sources_for(arch))
        if definition.phony:
            return False

        name = str(definition.artifact)
        if stage is StageName.ROOTFS:
            fingerprint = rootfs_fingerprint(self.ctx, arch)
        elif stage is StageName.IMAGE:
            if self.store.state(arch, name) is not ArtifactState.COMPLETE:
                return False
            fingerprint = image_fingerprint(self.ctx, arch)
        else:
            fingerprint = suite_fingerprint(self.ctx, arch, name)
        return self.store.is_fresh(arch, name, fingerprint)

    # Planning

    def _check_suites(self, requested: Sequence[StageName], arch: Arch) -> None:
        """Reject suite stages the manifest does not stage for arch.

        Raises:
            StageError: 'suite_not_configured' or 'unsupported_arch'.
        """
        for stage in requested:
            artifact = STAGES[stage].artifact
            if artifact not in SUITE_ARTIFACTS:
                continue
            try:
                spec = suite_spec(self.ctx, artifact)
            except StageError as e:
                e.attribute(stage.value, arch.value)
                raise
            if not spec.supports(arch):
                raise StageError(
                    f"Test suite {artifact} is not built for {arch.value}",
                    code="unsupported_arch",
                    stage=stage.value,
                    arch=arch.value,
                    details={"arches": [a.value for a in spec.arches]},
                )

    def _resolve(
        self,
        requested: Sequence[StageName],
        arch: Arch,
        options: RunOptions,
    ) -> set[StageName]:
        """Return the requested stages plus the prerequisites that must run.

        Raises:
            MissingPrerequisiteError: If a prerequisite may not be built
                implicitly and is not satisfied.
            StageError: If a requested suite is not staged for arch.
        """
        self._check_suites(requested, arch)

        # clean invalidates every artifact it shares a run with
        cleaning = StageName.CLEAN in requested
        selected: set[StageName] = set(requested)
        pending = [s for s in STAGE_ORDER if s in selected]

        while pending:
            stage = pending.pop(0)
            definition = STAGES[stage]

            for dep in definition.depends_on:
                if dep in selected:
                    continue
                if not (options.force_all or cleaning) and self.is_satisfied(dep, arch):
                    logger.debug("Prerequisite %s of %s is satisfied", dep.value, stage.value)
                    continue
                if options.no_deps:
                    raise MissingPrerequisiteError(
                        f"Stage {stage.value} needs {dep.value} for {arch.value}, "
                        "which is not up to date",
                        missing=[dep.value],
                        stage=stage.value,
                        arch=arch.value,
                    )
                selected.add(dep)
                pending.append(dep)

            for req in definition.requires:
                if req in selected:
                    continue
                artifact = STAGES[req].artifact
                state = (
                    ArtifactState.MISSING
                    if cleaning or artifact is None
                    else self.store.state(arch, artifact)
                )
                if state is ArtifactState.MISSING and not options.build_missing:
                    raise MissingPrerequisiteError(
                        f"Stage {stage.value} requires {req.value} for {arch.value}; "
                        f"run '{req.value} {arch.value}' first",
                        missing=[req.value],
                        stage=stage.value,
                        arch=arch.value,
                    )
                if state is not ArtifactState.COMPLETE and options.build_missing:
                    selected.add(req)
                    pending.append(req)

        return selected

    def plan(
        self,
        stages: Sequence[StageName | str],
        arch: Arch | str | None = None,
        options: RunOptions | None = None,
    ) -> list[list[StageName]]:
        """Return the stages a request would run, grouped into levels.

        Raises:
            MissingPrerequisiteError: If the request cannot be satisfied.
        """
        options = options or RunOptions()
        requested = [StageName(s) for s in stages]
        return topological_levels(self._resolve(requested, self._arch(arch), options))

    # Execution

    @contextmanager
    def _locks(self, requested: Sequence[StageName], arch: Arch) -> Iterator[None]:
        # clean deletes and update replaces the inputs of every architecture
        shared = {StageName.CLEAN, StageName.UPDATE}.intersection(requested)
        arches = list(Arch) if shared else [arch]
        with ExitStack() as stack:
            for a in sorted(arches, key=lambda a: a.value):
                try:
                    stack.enter_context(
                        arch_lock(
                            self.settings.locks_dir,
                            a.value,
                            timeout=self.settings.lock_timeout,
                        )
                    )
                except TimeoutError as e:
                    raise PipelineError(
                        f"Timeout waiting for the {a.value} pipeline lock",
                        code="lock_timeout",
                        arch=a.value,
                    ) from e
            yield

    def _dispatch(
        self,
        stage: StageName,
        arch: Arch,
        force: bool,
        options: RunOptions,
    ) -> StageResult:
        ctx = self.ctx
        if stage is StageName.SETUP:
            return run_setup(ctx, arch)
        if stage is StageName.UPDATE:
            return run_update(ctx)
        if stage is StageName.ROOTFS:
            return build_rootfs(ctx, arch, force=force)
        if stage is StageName.LIBC_TEST:
            return stage_libc_tests(ctx, arch, force=force)
        if stage is StageName.OTHER_TEST:
            return stage_other_tests(ctx, arch, force=force)
        if stage is StageName.RT_TEST:
            return stage_rt_tests(ctx, arch, force=force)
        if stage is StageName.IMAGE:
            return pack_image(ctx, arch, force=force)
        if stage is StageName.CHECK:
            return run_check(ctx)
        if stage is StageName.DOC:
            return run_doc(ctx, open_docs=options.open_docs)
        return run_clean(ctx)

    def _execute(
        self,
        stage: StageName,
        arch: Arch,
        requested: Sequence[StageName],
        options: RunOptions,
    ) -> StageRecord:
        definition = STAGES[stage]
        stage_arch = arch.value if definition.per_arch else None
        force = options.force_all or (options.force and stage in requested)
        started_at = datetime.now(timezone.utc)

        logger.info(
            "Running stage %s%s",
            stage.value,
            f" for {stage_arch}" if stage_arch else "",
        )
        try:
            result = self._dispatch(stage, arch, force, options)
        except PipelineError as e:
            e.attribute(stage.value, stage_arch)
            logger.error("Stage %s failed: %s", stage.value, e.message)
            return StageRecord(
                stage=stage.value,
                arch=stage_arch,
                outcome=StageOutcome.FAILED,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                log_path=e.log_path,
                error=e,
            )

        outcome = StageOutcome.EXECUTED if result.executed else StageOutcome.SKIPPED
        return StageRecord(
            stage=stage.value,
            arch=stage_arch,
            outcome=outcome,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            artifact=result.artifact,
            log_path=str(result.log_path) if result.log_path else None,
            details=result.details,
        )

    def _run_level(
        self,
        level: list[StageName],
        arch: Arch,
        requested: Sequence[StageName],
        options: RunOptions,
        report: RunReport,
    ) -> None:
        """Run one level; raise the first failure once the level has settled."""
        records: list[StageRecord] = []
        if options.jobs > 1 and len(level) > 1:
            with ThreadPoolExecutor(max_workers=min(options.jobs, len(level))) as pool:
                futures = [
                    pool.submit(self._execute, stage, arch, requested, options)
                    for stage in level
                ]
            records = [f.result() for f in futures]
        else:
            for stage in level:
                record = self._execute(stage, arch, requested, options)
                records.append(record)
                if record.error is not None:
                    break

        failure: PipelineError | None = None
        for record in records:
            report.records.append(record)
            if record.artifact is not None:
                report.artifacts.add(record.artifact)
            if record.error is not None and failure is None:
                failure = record.error
        if failure is not None:
            raise failure

    def run_stages(
        self,
        stages: Sequence[StageName | str],
        arch: Arch | str | None = None,
        options: RunOptions | None = None,
    ) -> RunReport:
        """Run stages for one architecture, with their prerequisites.

        Args:
            stages: Requested stage names.
            arch: Target architecture (default from settings).
            options: Run options.

        Returns:
            RunReport of the successful run.

        Raises:
            PipelineError: The first failure, attributed to its stage and
                architecture, with the partial report in ``error.report``.
        """
        options = options or RunOptions()
        target = self._arch(arch)
        requested = [StageName(s) for s in stages]
        if not requested:
            raise ValueError("At least one stage must be requested")

        report = RunReport(
            arch=target.value,
            requested=[s.value for s in requested],
            artifacts=ArtifactSet(arch=target.value),
        )

        try:
            with self._locks(requested, target):
                levels = topological_levels(self._resolve(requested, target, options))
                report.plan = [[s.value for s in level] for level in levels]
                logger.info(
                    "Plan for %s: %s",
                    target.value,
                    " -> ".join("+".join(level) for level in report.plan),
                )
                for level in levels:
                    self._run_level(level, target, requested, options, report)
        except PipelineError as e:
            if e.arch is None and any(STAGES[s].per_arch for s in requested):
                e.arch = target.value
            e.report = report
            report.error = e
            raise

        logger.info("Pipeline for %s finished", target.value)
        return report

    def run(
        self,
        stage: StageName | str,
        arch: Arch | str | None = None,
        options: RunOptions | None = None,
    ) -> RunReport:
        """Run one stage for an architecture, with its prerequisites."""
        return self.run_stages([stage], arch, options)

    def run_arches(
        self,
        stages: StageName | str | Sequence[StageName | str],
        arches: Sequence[Arch | str],
        options: RunOptions | None = None,
    ) -> dict[Arch, RunReport | PipelineError]:
        """Run the same request for several architectures concurrently.

        A failure for one architecture does not stop the others.

        Returns:
            Report or error per architecture, in the order given.
        """
        requested = [stages] if isinstance(stages, (str, StageName)) else list(stages)
        targets = list(dict.fromkeys(Arch(a) for a in arches))
        if not targets:
            return {}

        results: dict[Arch, RunReport | PipelineError] = {}
        workers = min(self.settings.max_parallel_arches, len(targets))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.run_stages, requested, a, options): a for a in targets
            }
            for future in as_completed(futures):
                a = futures[future]
                try:
                    results[a] = future.result()
                except PipelineError as e:
                    results[a] = e

        return {a: results[a] for a in targets}

    def status(self, arch: Arch | str | None = None) -> list[ArtifactInfo]:
        """List the artifacts present in the store."""
        return self.store.list_artifacts(arch)


__all__ = [
    "PipelineDriver",
    "RunOptions",
    "RunReport",
    "StageRecord",
]
