"""Stage graph.

Stages form a directed acyclic graph with two kinds of edges:

- depends_on: the prerequisite is run automatically when it is not satisfied
- requires: the prerequisite artifact must already exist; it is only built
  on request (build_missing)

``after`` edges only order stages that happen to be in the same run.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter

from kbuild_pipeline.store.artifacts import IMAGE, LIBC_TEST, OTHER_TEST, ROOTFS, RT_TEST
from kbuild_pipeline.types import StageName


@dataclass(frozen=True)
class StageDef:
    """Static definition of a stage.

    Attributes:
        name: Stage name.
        per_arch: Whether the stage is parameterized by architecture.
        artifact: Artifact the stage produces, if any.
        depends_on: Prerequisites run automatically when stale.
        requires: Prerequisites that must already exist.
        after: Stages that must finish first when they are in the same run.
        description: One-line help text.
    """

    name: StageName
    per_arch: bool
    artifact: str | None = None
    depends_on: tuple[StageName, ...] = ()
    requires: tuple[StageName, ...] = ()
    after: tuple[StageName, ...] = ()
    description: str = ""

    @property
    def phony(self) -> bool:
        """Phony stages own no artifact and always run when requested."""
        return self.artifact is None


STAGES: dict[StageName, StageDef] = {
    StageName.SETUP: StageDef(
        name=StageName.SETUP,
        per_arch=True,
        description="Synchronize the repository and fetch sources",
    ),
    StageName.UPDATE: StageDef(
        name=StageName.UPDATE,
        per_arch=False,
        depends_on=(StageName.SETUP,),
        description="Update toolchains and dependencies, refetch sources",
    ),
    StageName.ROOTFS: StageDef(
        name=StageName.ROOTFS,
        per_arch=True,
        artifact=ROOTFS,
        depends_on=(StageName.SETUP,),
        description="Build the root filesystem tree",
    ),
    StageName.LIBC_TEST: StageDef(
        name=StageName.LIBC_TEST,
        per_arch=True,
        artifact=LIBC_TEST,
        depends_on=(StageName.ROOTFS,),
        description="Stage the libc conformance suite into the rootfs",
    ),
    StageName.OTHER_TEST: StageDef(
        name=StageName.OTHER_TEST,
        per_arch=True,
        artifact=OTHER_TEST,
        depends_on=(StageName.ROOTFS,),
        description="Stage the secondary test suite into the rootfs",
    ),
    StageName.RT_TEST: StageDef(
        name=StageName.RT_TEST,
        per_arch=True,
        artifact=RT_TEST,
        depends_on=(StageName.ROOTFS,),
        description="Build the real-time latency tests into the rootfs",
    ),
    StageName.IMAGE: StageDef(
        name=StageName.IMAGE,
        per_arch=True,
        artifact=IMAGE,
        requires=(StageName.ROOTFS,),
        after=(StageName.LIBC_TEST, StageName.OTHER_TEST, StageName.RT_TEST),
        description="Package the rootfs into a disk image",
    ),
    StageName.CHECK: StageDef(
        name=StageName.CHECK,
        per_arch=False,
        description="Run style checks",
    ),
    StageName.DOC: StageDef(
        name=StageName.DOC,
        per_arch=False,
        description="Generate documentation",
    ),
    StageName.CLEAN: StageDef(
        name=StageName.CLEAN,
        per_arch=False,
        description="Delete all build outputs and artifact stores",
    ),
}

# Declaration order, used to keep plans deterministic
STAGE_ORDER: tuple[StageName, ...] = tuple(STAGES)


def get_stage(name: StageName | str) -> StageDef:
    """Return a stage definition.

    Raises:
        ValueError: If the stage does not exist.
    """
    return STAGES[StageName(name)]


def predecessors(name: StageName, selected: Iterable[StageName]) -> list[StageName]:
    """Return the stages in selected that must finish before name."""
    stage = STAGES[name]
    chosen = set(selected)
    edges = {*stage.depends_on, *stage.requires, *stage.after}
    # clean deletes every output, so it goes before anything it shares a run with
    if name is not StageName.CLEAN:
        edges.add(StageName.CLEAN)
    return [s for s in STAGE_ORDER if s in edges and s in chosen]


def topological_levels(stages: Iterable[StageName]) -> list[list[StageName]]:
    """Group stages into levels that can run once all earlier levels finished.

    Only edges between the given stages are considered; stages of one level
    have no ordering between them.

    Raises:
        CycleError: If the definitions contain a cycle.
    """
    selected = [s for s in STAGE_ORDER if s in set(stages)]
    sorter: TopologicalSorter[StageName] = TopologicalSorter()
    for stage in selected:
        sorter.add(stage, *predecessors(stage, selected))
    sorter.prepare()

    levels: list[list[StageName]] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready(), key=STAGE_ORDER.index)
        levels.append(ready)
        sorter.done(*ready)
    return levels


__all__ = [
    "STAGES",
    "STAGE_ORDER",
    "CycleError",
    "StageDef",
    "get_stage",
    "predecessors",
    "topological_levels",
]
