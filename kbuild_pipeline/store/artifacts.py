"""Artifact Store: architecture-keyed outputs and their markers.

This module handles:
- Mapping (architecture, logical name) to on-disk paths
- Writing incomplete/complete markers around stage work
- Deciding artifact state and freshness from markers
- Refusing cross-architecture reads
- Deleting artifacts and the whole store

Layout:
    <rootfs_root>/<arch>/                 rootfs
    <rootfs_root>/<arch>/<suite subpath>/ staged test suites
    <rootfs_root>/.state/<arch>/<name>.json markers
    <image_root>/<arch>.img               disk image
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from kbuild_pipeline.errors import StageError
from kbuild_pipeline.types import Arch, ArtifactInfo, ArtifactState

if TYPE_CHECKING:
    from kbuild_pipeline.config import Settings
    from kbuild_pipeline.manifest.schema import PipelineManifest

logger = logging.getLogger(__name__)

# Logical artifact names
ROOTFS = "rootfs"
LIBC_TEST = "libc-test"
OTHER_TEST = "other-test"
RT_TEST = "rt-test"
IMAGE = "image"
ARTIFACT_NAMES = (ROOTFS, LIBC_TEST, OTHER_TEST, RT_TEST, IMAGE)
SUITE_ARTIFACTS = (LIBC_TEST, OTHER_TEST, RT_TEST)

# Manifest section of each suite artifact
SUITE_SECTIONS = {LIBC_TEST: "libc_test", OTHER_TEST: "other_test", RT_TEST: "rt_test"}

MARKER_SCHEMA_VERSION = "1"
STATE_DIR_NAME = ".state"
IMAGE_SUFFIX = ".img"
PARTIAL_SUFFIX = ".partial"


class ArtifactMarker(BaseModel):
    """Marker recorded next to every artifact.

    Attributes:
        name: Logical artifact name.
        arch: Architecture the artifact belongs to.
        stage: Stage that produced it.
        status: 'incomplete' while the stage runs, 'complete' on success.
        fingerprint: Input fingerprint of the producing run.
        content_hash: Hash of the produced content, when computed.
        generation: Random id assigned on every completion.
        started_at: When the producing stage started writing.
        finished_at: When the producing stage completed.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: str = MARKER_SCHEMA_VERSION
    name: str
    arch: str
    stage: str
    status: Literal["incomplete", "complete"]
    fingerprint: str
    content_hash: str | None = None
    generation: str | None = None
    started_at: datetime
    finished_at: datetime | None = None


class ArtifactStore:
    """Path-addressed artifact store partitioned by architecture."""

    def __init__(
        self,
        rootfs_root: Path,
        image_root: Path,
        suite_subpaths: dict[str, str] | None = None,
    ) -> None:
        self.rootfs_root = rootfs_root
        self.image_root = image_root
        self.suite_subpaths = suite_subpaths or {
            LIBC_TEST: LIBC_TEST,
            OTHER_TEST: OTHER_TEST,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        manifest: PipelineManifest | None = None,
    ) -> ArtifactStore:
        """Create a store for the configured project layout."""
        subpaths = None
        if manifest is not None:
            suites = manifest.suites()
            subpaths = {
                name: suites[SUITE_SECTIONS[name]].subpath
                for name in SUITE_ARTIFACTS
                if SUITE_SECTIONS[name] in suites
            }
        return cls(settings.rootfs_root, settings.image_root, subpaths)

    # Paths

    @property
    def state_dir(self) -> Path:
        return self.rootfs_root / STATE_DIR_NAME

    def rootfs_path(self, arch: Arch | str) -> Path:
        return self.rootfs_root / Arch(arch).value

    def image_path(self, arch: Arch | str) -> Path:
        return self.image_root / f"{Arch(arch).value}{IMAGE_SUFFIX}"

    def partial_image_path(self, arch: Arch | str) -> Path:
        return self.image_root / f"{Arch(arch).value}{IMAGE_SUFFIX}{PARTIAL_SUFFIX}"

    def suite_names(self) -> tuple[str, ...]:
        """Return the configured test suite artifacts."""
        return tuple(name for name in SUITE_ARTIFACTS if name in self.suite_subpaths)

    def reserved_subpaths(self) -> tuple[str, ...]:
        return tuple(self.suite_subpaths[name] for name in self.suite_names())

    def path_for(self, arch: Arch | str, name: str) -> Path:
        """Return the on-disk path of an artifact.

        Raises:
            ValueError: If the name is not a known artifact.
        """
        if name == ROOTFS:
            return self.rootfs_path(arch)
        if name in self.suite_subpaths:
            return self.rootfs_path(arch) / self.suite_subpaths[name]
        if name in SUITE_ARTIFACTS:
            raise ValueError(f"Test suite {name} is not configured")
        if name == IMAGE:
            return self.image_path(arch)
        raise ValueError(f"Unknown artifact: {name}")

    @staticmethod
    def kind_for(name: str) -> str:
        return "file" if name == IMAGE else "directory"

    def marker_path(self, arch: Arch | str, name: str) -> Path:
        if name not in ARTIFACT_NAMES:
            raise ValueError(f"Unknown artifact: {name}")
        return self.state_dir / Arch(arch).value / f"{name}.json"

    # Markers

    def read_marker(self, arch: Arch | str, name: str) -> ArtifactMarker | None:
        """Read an artifact marker.

        Unreadable markers are reported and treated as absent, which makes
        any existing output untrusted.
        """
        path = self.marker_path(arch, name)
        if not path.exists():
            return None
        try:
            return ArtifactMarker.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable marker %s: %s", path, e)
            return None

    def _write_marker(self, marker: ArtifactMarker) -> None:
        path = self.marker_path(marker.arch, marker.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{marker.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(marker.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def mark_incomplete(
        self,
        arch: Arch | str,
        name: str,
        stage: str,
        fingerprint: str,
    ) -> ArtifactMarker:
        """Tag an artifact as being written. Must precede any output change."""
        marker = ArtifactMarker(
            name=name,
            arch=Arch(arch).value,
            stage=stage,
            status="incomplete",
            fingerprint=fingerprint,
            started_at=datetime.now(timezone.utc),
        )
        self._write_marker(marker)
        logger.debug("Marked %s/%s incomplete", marker.arch, name)
        return marker

    def mark_complete(
        self,
        arch: Arch | str,
        name: str,
        stage: str,
        fingerprint: str,
        content_hash: str | None = None,
    ) -> ArtifactMarker:
        """Record a successfully written artifact."""
        now = datetime.now(timezone.utc)
        previous = self.read_marker(arch, name)
        started_at = previous.started_at if previous is not None else now
        marker = ArtifactMarker(
            name=name,
            arch=Arch(arch).value,
            stage=stage,
            status="complete",
            fingerprint=fingerprint,
            content_hash=content_hash,
            generation=uuid.uuid4().hex,
            started_at=started_at,
            finished_at=now,
        )
        self._write_marker(marker)
        logger.debug("Marked %s/%s complete", marker.arch, name)
        return marker

    # State

    def state(self, arch: Arch | str, name: str) -> ArtifactState:
        """Return the state of an artifact.

        Output without a marker has unknown provenance and counts as
        incomplete, so it is never reused.
        """
        path = self.path_for(arch, name)
        exists = path.exists() or path.is_symlink()
        marker = self.read_marker(arch, name)

        if marker is None:
            return ArtifactState.INCOMPLETE if exists else ArtifactState.MISSING
        if marker.status == "incomplete":
            return ArtifactState.INCOMPLETE
        if not exists:
            return ArtifactState.MISSING
        return ArtifactState.COMPLETE

    def is_fresh(self, arch: Arch | str, name: str, fingerprint: str) -> bool:
        """Return True if the artifact is complete and built from these inputs."""
        if self.state(arch, name) is not ArtifactState.COMPLETE:
            return False
        marker = self.read_marker(arch, name)
        return marker is not None and marker.fingerprint == fingerprint

    def require_complete(
        self,
        arch: Arch | str,
        name: str,
        consumer_arch: Arch | str,
    ) -> Path:
        """Return the path of a complete artifact for use by another stage.

        Raises:
            StageError: If the consumer targets another architecture
                (code 'arch_mismatch') or the artifact is not complete
                (code 'artifact_not_ready').
        """
        if Arch(arch) != Arch(consumer_arch):
            raise StageError(
                f"Artifact {Arch(arch).value}/{name} cannot be used for "
                f"architecture {Arch(consumer_arch).value}",
                code="arch_mismatch",
                arch=Arch(consumer_arch).value,
            )
        state = self.state(arch, name)
        if state is not ArtifactState.COMPLETE:
            raise StageError(
                f"Artifact {Arch(arch).value}/{name} is {state.value}",
                code="artifact_not_ready",
                arch=Arch(arch).value,
                details={"artifact": name, "state": state.value},
            )
        return self.path_for(arch, name)

    def describe(self, arch: Arch | str, name: str) -> ArtifactInfo:
        """Return information about an artifact."""
        path = self.path_for(arch, name)
        marker = self.read_marker(arch, name)
        size_bytes: int | None = None
        if name == IMAGE and path.is_file():
            size_bytes = path.stat().st_size

        return ArtifactInfo(
            arch=Arch(arch).value,
            name=name,
            path=str(path),
            kind=self.kind_for(name),
            state=self.state(arch, name),
            fingerprint=marker.fingerprint if marker else None,
            content_hash=marker.content_hash if marker else None,
            generation=marker.generation if marker else None,
            size_bytes=size_bytes,
            finished_at=marker.finished_at.isoformat()
            if marker and marker.finished_at
            else None,
        )

    def list_artifacts(self, arch: Arch | str | None = None) -> list[ArtifactInfo]:
        """List every artifact that is not missing."""
        arches = [Arch(arch)] if arch is not None else list(Arch)
        artifacts: list[ArtifactInfo] = []
        for a in arches:
            for name in (ROOTFS, *self.suite_names(), IMAGE):
                info = self.describe(a, name)
                if info.state is not ArtifactState.MISSING:
                    artifacts.append(info)
        return artifacts

    # Deletion

    def remove_output(self, arch: Arch | str, name: str) -> None:
        """Delete an artifact's output, keeping its own marker.

        Removing the rootfs also drops the markers of the suites staged into it.
        """
        path = self.path_for(arch, name)
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()

        if name == ROOTFS:
            for suite in SUITE_ARTIFACTS:
                self.marker_path(arch, suite).unlink(missing_ok=True)

    def remove(self, arch: Arch | str, name: str) -> None:
        """Delete an artifact's output and marker."""
        self.remove_output(arch, name)
        self.marker_path(arch, name).unlink(missing_ok=True)
        logger.debug("Removed artifact %s/%s", Arch(arch).value, name)

    def clean_all(self) -> list[Path]:
        """Delete every architecture's artifacts, markers and image files.

        Returns:
            Paths that were removed.
        """
        removed: list[Path] = []
        if self.rootfs_root.exists():
            shutil.rmtree(self.rootfs_root)
            removed.append(self.rootfs_root)

        if self.image_root.is_dir():
            for pattern in (f"*{IMAGE_SUFFIX}", f"*{IMAGE_SUFFIX}{PARTIAL_SUFFIX}"):
                for path in sorted(self.image_root.glob(pattern)):
                    if path.is_file() or path.is_symlink():
                        path.unlink()
                        removed.append(path)

        logger.info("Removed %d artifact path(s)", len(removed))
        return removed


__all__ = [
    "ARTIFACT_NAMES",
    "IMAGE",
    "LIBC_TEST",
    "OTHER_TEST",
    "ROOTFS",
    "RT_TEST",
    "SUITE_ARTIFACTS",
    "SUITE_SECTIONS",
    "ArtifactMarker",
    "ArtifactStore",
]
