"""Shared type definitions for kbuild_pipeline.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class Arch(str, Enum):
    """Supported target architectures."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"
    RISCV64 = "riscv64"


DEFAULT_ARCH = Arch.X86_64


class StageName(str, Enum):
    """Named pipeline stages. The values are the public stage names."""

    SETUP = "setup"
    UPDATE = "update"
    ROOTFS = "rootfs"
    LIBC_TEST = "libc-test"
    OTHER_TEST = "other-test"
    RT_TEST = "rt-test"
    IMAGE = "image"
    CHECK = "check"
    DOC = "doc"
    CLEAN = "clean"


class ArtifactState(str, Enum):
    """State of an artifact in the store."""

    MISSING = "missing"
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"


class StageOutcome(str, Enum):
    """Outcome of a stage within a pipeline run."""

    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ArtifactInfo:
    """Information about an artifact in the store."""

    arch: str
    name: str
    path: str
    kind: str
    state: ArtifactState
    fingerprint: str | None = None
    content_hash: str | None = None
    generation: str | None = None
    size_bytes: int | None = None
    finished_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "arch": self.arch,
            "name": self.name,
            "path": self.path,
            "kind": self.kind,
            "state": self.state.value,
            "fingerprint": self.fingerprint,
            "content_hash": self.content_hash,
            "generation": self.generation,
            "size_bytes": self.size_bytes,
            "finished_at": self.finished_at,
        }


@dataclass
class ArtifactSet:
    """Artifacts produced or reused by a pipeline run, keyed by logical name."""

    arch: str | None = None
    items: dict[str, ArtifactInfo] = field(default_factory=dict)

    def add(self, artifact: ArtifactInfo) -> None:
        """Add an artifact, replacing any earlier entry with the same name."""
        if self.arch is not None and artifact.arch != self.arch:
            raise ValueError(
                f"Artifact {artifact.name} belongs to {artifact.arch}, "
                f"not {self.arch}"
            )
        self.items[artifact.name] = artifact

    def get(self, name: str) -> ArtifactInfo | None:
        return self.items.get(name)

    def names(self) -> list[str]:
        return sorted(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __contains__(self, name: object) -> bool:
        return name in self.items


@dataclass
class FetchResult:
    """Result of fetching a single source."""

    name: str
    path: str
    kind: str
    fetched: bool
    checksum: str | None = None
    details: dict[str, object] = field(default_factory=dict)


__all__ = [
    "DEFAULT_ARCH",
    "Arch",
    "ArtifactInfo",
    "ArtifactSet",
    "ArtifactState",
    "FetchResult",
    "StageName",
    "StageOutcome",
]
