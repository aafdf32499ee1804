"""Tests for the Artifact Store."""

import json
import shutil
from pathlib import Path

import pytest

from kbuild_pipeline.errors import StageError
from kbuild_pipeline.store.artifacts import (
    IMAGE,
    LIBC_TEST,
    OTHER_TEST,
    ROOTFS,
    RT_TEST,
    ArtifactStore,
)
from kbuild_pipeline.types import Arch, ArtifactState

FP = "sha256:" + "a" * 64
OTHER_FP = "sha256:" + "b" * 64


@pytest.fixture
def artifact_store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "rootfs", tmp_path)


def _complete_rootfs(store: ArtifactStore, arch: str = "x86_64") -> Path:
    store.mark_incomplete(arch, ROOTFS, "rootfs", FP)
    rootfs = store.rootfs_path(arch)
    (rootfs / "bin").mkdir(parents=True)
    (rootfs / "bin" / "busybox").write_text("busybox")
    store.mark_complete(arch, ROOTFS, "rootfs", FP, content_hash="c0ffee")
    return rootfs


class TestPaths:
    """Tests for path mapping."""

    def test_layout(self, artifact_store: ArtifactStore, tmp_path: Path):
        """Artifacts are keyed by architecture."""
        assert artifact_store.path_for("x86_64", ROOTFS) == tmp_path / "rootfs" / "x86_64"
        assert (
            artifact_store.path_for(Arch.AARCH64, LIBC_TEST)
            == tmp_path / "rootfs" / "aarch64" / "libc-test"
        )
        assert artifact_store.path_for("x86_64", IMAGE) == tmp_path / "x86_64.img"
        assert artifact_store.partial_image_path("x86_64") == tmp_path / "x86_64.img.partial"

    def test_markers_outside_rootfs(self, artifact_store: ArtifactStore):
        """Markers never land inside a rootfs tree."""
        marker = artifact_store.marker_path("x86_64", ROOTFS)
        assert artifact_store.rootfs_path("x86_64") not in marker.parents

    def test_unknown_artifact(self, artifact_store: ArtifactStore):
        """Unknown names are programming errors."""
        with pytest.raises(ValueError):
            artifact_store.path_for("x86_64", "kernel")

    def test_unknown_arch(self, artifact_store: ArtifactStore):
        """Unknown architectures are rejected."""
        with pytest.raises(ValueError):
            artifact_store.rootfs_path("mips")

    def test_custom_subpaths(self, tmp_path: Path):
        """Suite subpaths come from the manifest."""
        store = ArtifactStore(
            tmp_path / "rootfs", tmp_path, {LIBC_TEST: "conformance", OTHER_TEST: "extra"}
        )
        assert store.reserved_subpaths() == ("conformance", "extra")
        assert store.path_for("x86_64", OTHER_TEST).name == "extra"

    def test_unconfigured_suite(self, artifact_store: ArtifactStore, tmp_path: Path):
        """rt-test has a path only once the manifest configures it."""
        assert artifact_store.suite_names() == (LIBC_TEST, OTHER_TEST)
        with pytest.raises(ValueError, match="not configured"):
            artifact_store.path_for("x86_64", RT_TEST)

        store = ArtifactStore(
            tmp_path / "rootfs",
            tmp_path,
            {LIBC_TEST: "libc-test", OTHER_TEST: "other-test", RT_TEST: "rt-tests"},
        )
        assert store.suite_names() == (LIBC_TEST, OTHER_TEST, RT_TEST)
        assert store.path_for("x86_64", RT_TEST) == tmp_path / "rootfs" / "x86_64" / "rt-tests"


class TestState:
    """Tests for state and freshness."""

    def test_missing(self, artifact_store: ArtifactStore):
        """Nothing on disk and no marker is missing."""
        assert artifact_store.state("x86_64", ROOTFS) is ArtifactState.MISSING

    def test_incomplete_while_writing(self, artifact_store: ArtifactStore):
        """The incomplete marker wins over existing output."""
        _complete_rootfs(artifact_store)
        artifact_store.mark_incomplete("x86_64", ROOTFS, "rootfs", OTHER_FP)
        assert artifact_store.state("x86_64", ROOTFS) is ArtifactState.INCOMPLETE
        assert not artifact_store.is_fresh("x86_64", ROOTFS, OTHER_FP)

    def test_output_without_marker_is_incomplete(self, artifact_store: ArtifactStore):
        """Output of unknown provenance is never trusted."""
        artifact_store.rootfs_path("x86_64").mkdir(parents=True)
        assert artifact_store.state("x86_64", ROOTFS) is ArtifactState.INCOMPLETE

    def test_complete_marker_without_output_is_missing(self, artifact_store: ArtifactStore):
        """A complete marker whose output was deleted is missing."""
        _complete_rootfs(artifact_store)
        shutil.rmtree(artifact_store.rootfs_path("x86_64"))
        assert artifact_store.state("x86_64", ROOTFS) is ArtifactState.MISSING

    def test_fresh_only_with_same_fingerprint(self, artifact_store: ArtifactStore):
        """Freshness needs a complete marker with equal fingerprint."""
        _complete_rootfs(artifact_store)
        assert artifact_store.is_fresh("x86_64", ROOTFS, FP)
        assert not artifact_store.is_fresh("x86_64", ROOTFS, OTHER_FP)

    def test_corrupt_marker_treated_as_absent(self, artifact_store: ArtifactStore):
        """A garbled marker makes the output untrusted."""
        _complete_rootfs(artifact_store)
        artifact_store.marker_path("x86_64", ROOTFS).write_text("{not json")
        assert artifact_store.read_marker("x86_64", ROOTFS) is None
        assert artifact_store.state("x86_64", ROOTFS) is ArtifactState.INCOMPLETE

    def test_complete_marker_content(self, artifact_store: ArtifactStore):
        """Completion records fingerprint, hash and a fresh generation."""
        _complete_rootfs(artifact_store)
        first = artifact_store.read_marker("x86_64", ROOTFS)
        data = json.loads(artifact_store.marker_path("x86_64", ROOTFS).read_text())
        assert data["status"] == "complete"
        assert data["fingerprint"] == FP
        assert data["content_hash"] == "c0ffee"

        artifact_store.mark_complete("x86_64", ROOTFS, "rootfs", FP)
        second = artifact_store.read_marker("x86_64", ROOTFS)
        assert first.generation != second.generation

    def test_architectures_isolated(self, artifact_store: ArtifactStore):
        """One architecture's artifacts do not affect another's state."""
        _complete_rootfs(artifact_store, "x86_64")
        assert artifact_store.state("aarch64", ROOTFS) is ArtifactState.MISSING


class TestRequireComplete:
    """Tests for require_complete."""

    def test_returns_path(self, artifact_store: ArtifactStore):
        """A complete artifact of the same architecture is returned."""
        rootfs = _complete_rootfs(artifact_store)
        assert artifact_store.require_complete("x86_64", ROOTFS, "x86_64") == rootfs

    def test_cross_arch_refused(self, artifact_store: ArtifactStore):
        """An aarch64 consumer cannot read x86_64 artifacts."""
        _complete_rootfs(artifact_store)
        with pytest.raises(StageError) as exc_info:
            artifact_store.require_complete("x86_64", ROOTFS, "aarch64")
        assert exc_info.value.code == "arch_mismatch"

    def test_incomplete_refused(self, artifact_store: ArtifactStore):
        """Incomplete artifacts cannot be consumed."""
        artifact_store.mark_incomplete("x86_64", ROOTFS, "rootfs", FP)
        with pytest.raises(StageError) as exc_info:
            artifact_store.require_complete("x86_64", ROOTFS, "x86_64")
        assert exc_info.value.code == "artifact_not_ready"
        assert exc_info.value.details["state"] == "incomplete"


class TestListing:
    """Tests for describe and list_artifacts."""

    def test_describe_image_size(self, artifact_store: ArtifactStore):
        """Image descriptions carry the file size."""
        artifact_store.mark_incomplete("x86_64", IMAGE, "image", FP)
        artifact_store.image_path("x86_64").write_bytes(b"\0" * 1024)
        artifact_store.mark_complete("x86_64", IMAGE, "image", FP)

        info = artifact_store.describe("x86_64", IMAGE)
        assert info.state is ArtifactState.COMPLETE
        assert info.kind == "file"
        assert info.size_bytes == 1024
        assert info.finished_at is not None

    def test_list_skips_missing(self, artifact_store: ArtifactStore):
        """Only present artifacts are listed."""
        _complete_rootfs(artifact_store)
        names = [(a.arch, a.name) for a in artifact_store.list_artifacts()]
        assert names == [("x86_64", ROOTFS)]
        assert artifact_store.list_artifacts("aarch64") == []


class TestDeletion:
    """Tests for remove_output, remove and clean_all."""

    def test_remove_output_keeps_marker(self, artifact_store: ArtifactStore):
        """remove_output leaves the artifact's own marker in place."""
        artifact_store.mark_incomplete("x86_64", IMAGE, "image", FP)
        artifact_store.image_path("x86_64").write_bytes(b"img")

        artifact_store.remove_output("x86_64", IMAGE)

        assert not artifact_store.image_path("x86_64").exists()
        assert artifact_store.marker_path("x86_64", IMAGE).exists()

    def test_removing_rootfs_drops_suite_markers(self, artifact_store: ArtifactStore):
        """Suites staged into a deleted rootfs lose their markers."""
        rootfs = _complete_rootfs(artifact_store)
        (rootfs / "libc-test").mkdir()
        artifact_store.mark_complete("x86_64", LIBC_TEST, "libc-test", FP)

        artifact_store.remove("x86_64", ROOTFS)

        assert not rootfs.exists()
        assert artifact_store.read_marker("x86_64", ROOTFS) is None
        assert artifact_store.read_marker("x86_64", LIBC_TEST) is None

    def test_clean_all(self, artifact_store: ArtifactStore, tmp_path: Path):
        """clean_all removes every tree, marker and image, nothing else."""
        _complete_rootfs(artifact_store, "x86_64")
        _complete_rootfs(artifact_store, "aarch64")
        artifact_store.image_path("x86_64").write_bytes(b"img")
        artifact_store.partial_image_path("aarch64").write_bytes(b"partial")
        keep = tmp_path / "Cargo.toml"
        keep.write_text("[package]\n")

        removed = artifact_store.clean_all()

        assert tmp_path / "rootfs" in removed
        assert not (tmp_path / "rootfs").exists()
        assert not artifact_store.image_path("x86_64").exists()
        assert not artifact_store.partial_image_path("aarch64").exists()
        assert keep.exists()
        assert artifact_store.list_artifacts() == []
