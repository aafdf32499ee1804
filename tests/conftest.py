"""Shared fixtures.

The pipeline is exercised end to end without network access or real
toolchains: sources are local tarballs and directories inside a temporary
project, and external tools are replaced by a recording fake runner.
"""

import io
import tarfile
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest

from kbuild_pipeline.config import Settings
from kbuild_pipeline.manifest.schema import PipelineManifest
from kbuild_pipeline.stages.context import StageContext
from kbuild_pipeline.stages.runner import CommandResult
from kbuild_pipeline.store.artifacts import ArtifactStore
from kbuild_pipeline.store.fingerprint import compute_tree_hash
from kbuild_pipeline.toolchain.service import ToolchainFetcher

TRIPLES = {"x86_64": "x86_64-linux-musl", "aarch64": "aarch64-linux-musl"}


def write_tarball(
    path: Path,
    files: dict[str, bytes],
    symlinks: dict[str, str] | None = None,
) -> Path:
    """Write a gzip tarball with the given files and symlinks."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        dirs: set[str] = set()
        for name in list(files) + list(symlinks or {}):
            parts = name.split("/")[:-1]
            for i in range(1, len(parts) + 1):
                dirs.add("/".join(parts[:i]))
        for d in sorted(dirs):
            info = tarfile.TarInfo(d)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(content))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return path


class FakeRunner:
    """Stands in for run_command and records every invocation.

    Handlers are (predicate, action) pairs; the first matching predicate's
    action runs and may return an exit code (None means 0).
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.envs: list[dict[str, str] | None] = []
        self.handlers: list[tuple[Callable[[list[str]], bool], Callable[..., int | None]]] = []
        self.on(lambda argv: argv[0] == "mkfs.ext4", self._write_image)

    def on(
        self,
        predicate: Callable[[list[str]], bool],
        action: Callable[..., int | None],
    ) -> None:
        self.handlers.insert(0, (predicate, action))

    def fail_on(self, program: str, exit_code: int = 2) -> None:
        self.on(lambda argv: argv[0] == program, lambda argv, cwd: exit_code)

    def commands(self, program: str) -> list[list[str]]:
        return [argv for argv in self.calls if argv[0] == program]

    @staticmethod
    def _write_image(argv: list[str], cwd: Path) -> None:
        rootfs = Path(argv[argv.index("-d") + 1])
        Path(argv[-1]).write_text(compute_tree_hash(rootfs))

    def __call__(self, argv, cwd, log_path, timeout=None, env_override=None) -> CommandResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.envs.append(dict(env_override) if env_override else None)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a") as f:
            f.write(f"# Command: {' '.join(argv)}\n")

        exit_code = 0
        for predicate, action in self.handlers:
            if predicate(argv):
                exit_code = action(argv, cwd) or 0
                break

        now = datetime.now(timezone.utc)
        return CommandResult(
            success=exit_code == 0,
            exit_code=exit_code,
            command=" ".join(argv),
            cwd=cwd,
            log_path=log_path,
            started_at=now,
            finished_at=now,
            error_message=(
                None if exit_code == 0 else f"{argv[0]} failed with exit code {exit_code}"
            ),
        )


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project checkout with local toolchain/rootfs archives and test corpora."""
    root = tmp_path / "project"
    root.mkdir()

    for arch, triple in TRIPLES.items():
        write_tarball(
            root / "archives" / f"{triple}-cross.tgz",
            {
                f"{triple}-cross/bin/{triple}-gcc": b"#!/bin/sh\n",
                f"{triple}-cross/{triple}/lib/libc.so": f"musl libc {arch}".encode(),
                f"{triple}-cross/{triple}/lib/libstdc++.so.6.0.29": b"libstdc++",
                f"{triple}-cross/{triple}/lib/libgcc_s.so.1": b"libgcc_s",
            },
            symlinks={f"{triple}-cross/{triple}/lib/libstdc++.so.6": "libstdc++.so.6.0.29"},
        )
        write_tarball(
            root / "archives" / f"minirootfs-{arch}.tar.gz",
            {
                "bin/busybox": f"busybox {arch}".encode(),
                "etc/os-release": b"NAME=Alpine\n",
                "lib/ld-musl-placeholder": b"",
            },
            symlinks={"bin/sh": "/bin/busybox"},
        )

    libc_src = root / "libc-src"
    (libc_src / "src").mkdir(parents=True)
    (libc_src / "Makefile").write_text("all:\n")
    (libc_src / "src" / "string.c").write_text("int main(void) { return 0; }\n")

    other = root / "other-tests"
    other.mkdir()
    (other / "run.sh").write_text("#!/bin/sh\necho ok\n")
    return root


def manifest_data(project: Path) -> dict:
    """Manifest pointing every source at files inside the project."""
    architectures = {}
    for arch, triple in TRIPLES.items():
        architectures[arch] = {
            "triple": triple,
            "toolchain": {
                "kind": "archive",
                "name": f"{triple}-cross",
                "path": f"archives/{triple}-cross.tgz",
            },
            "minirootfs": {
                "kind": "archive",
                "name": f"minirootfs-{arch}",
                "path": f"archives/minirootfs-{arch}.tar.gz",
            },
            "loader": f"ld-musl-{arch}.so.1",
        }
    return {
        "version": 1,
        "architectures": architectures,
        "shared_libs": ["libstdc++.so.6", "libgcc_s.so.1"],
        "libc_test": {
            "source": {"kind": "local", "name": "libc-src", "path": "libc-src"},
            "subpath": "libc-test",
            "build": [["make", "-j{jobs}", "CROSS_COMPILE={cross_compile}"]],
        },
        "other_test": {
            "source": {"kind": "local", "name": "other-test", "path": "other-tests"},
            "subpath": "other-test",
        },
        "image": {
            "size_mib": 16,
            "label": "rootfs",
            "command": ["mkfs.ext4", "-L", "{label}", "-U", "{uuid}", "-d", "{rootfs}", "{image}"],
            "env": {"E2FSPROGS_FAKE_TIME": "{epoch}"},
        },
        "setup": {"submodules": True, "lfs": True, "commands": []},
        "update": {"commands": [["cargo", "update"]]},
        "check": {"commands": [["cargo", "fmt", "--all", "--", "--check"]]},
        "doc": {"commands": [["cargo", "doc", "--no-deps"]]},
        "clean": {"commands": [["cargo", "clean"]]},
    }


def add_rt_suite(project: Path, data: dict) -> dict:
    """Enable the rt-test suite for x86_64 only, built from a local corpus."""
    rt = project / "rt-tests"
    rt.mkdir(exist_ok=True)
    (rt / "Makefile").write_text("all:\n")
    (rt / "cyclictest.c").write_text("int main(void) { return 0; }\n")
    data["rt_test"] = {
        "source": {"kind": "local", "name": "rt-tests", "path": "rt-tests"},
        "subpath": "rt-tests",
        "build": [["make", "-j{jobs}", "CROSS_COMPILE={cross_compile}"]],
        "arches": ["x86_64"],
    }
    return data


@pytest.fixture
def manifest_dict(project: Path) -> dict:
    return manifest_data(project)


@pytest.fixture
def rt_manifest_dict(project: Path) -> dict:
    return add_rt_suite(project, manifest_data(project))


@pytest.fixture
def manifest(manifest_dict: dict) -> PipelineManifest:
    return PipelineManifest.model_validate(manifest_dict)


@pytest.fixture
def tarball() -> Callable[..., Path]:
    """Factory writing gzip tarballs."""
    return write_tarball


@pytest.fixture
def settings(project: Path) -> Settings:
    return Settings(project_root=project, jobs=4, lock_timeout=5, offline=False)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def store(settings: Settings, manifest: PipelineManifest) -> ArtifactStore:
    return ArtifactStore.from_settings(settings, manifest)


@pytest.fixture
def fetcher(settings: Settings, manifest: PipelineManifest, fake_runner: FakeRunner):
    f = ToolchainFetcher(settings, manifest, runner=fake_runner)
    yield f
    f.close()


@pytest.fixture
def ctx(
    settings: Settings,
    manifest: PipelineManifest,
    store: ArtifactStore,
    fetcher: ToolchainFetcher,
    fake_runner: FakeRunner,
) -> StageContext:
    return StageContext(
        settings=settings,
        manifest=manifest,
        store=store,
        fetcher=fetcher,
        runner=fake_runner,
    )


@pytest.fixture
def fetched_ctx(ctx: StageContext) -> StageContext:
    """Context whose sources for every test architecture are fetched."""
    for arch in TRIPLES:
        ctx.fetcher.fetch_for_arch(arch)
    return ctx


@pytest.fixture
def make_ctx(settings: Settings, fake_runner: FakeRunner):
    """Build stage contexts for manifest variants."""
    fetchers: list[ToolchainFetcher] = []

    def factory(data: dict) -> StageContext:
        manifest = PipelineManifest.model_validate(data)
        fetcher = ToolchainFetcher(settings, manifest, runner=fake_runner)
        fetchers.append(fetcher)
        return StageContext(
            settings=settings,
            manifest=manifest,
            store=ArtifactStore.from_settings(settings, manifest),
            fetcher=fetcher,
            runner=fake_runner,
        )

    yield factory
    for fetcher in fetchers:
        fetcher.close()
