"""Pydantic models for the pipeline manifest.

The manifest pins every external input of the pipeline: per-architecture
toolchains and minimal root filesystems, the test suite sources and how to
build them, the image format, and the commands behind the developer stages.
"""

import re
from pathlib import PurePosixPath
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kbuild_pipeline.errors import ManifestError
from kbuild_pipeline.types import Arch

SOURCE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")
SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def _validate_source_name(v: str) -> str:
    if not SOURCE_NAME_PATTERN.match(v):
        raise ValueError(
            f"source name must contain only letters, digits, '.', '_' or '-', got '{v}'"
        )
    return v


class ArchiveSourceSchema(BaseModel):
    """An archive downloaded from ``url`` or copied from a local ``path``.

    Attributes:
        name: Cache directory name under the sources directory.
        url: Download URL.
        path: Local archive path (relative to the project root or absolute).
        sha256: Pinned SHA-256 of the archive.
        extract: Extract the archive (otherwise the file is kept as is).
    """

    model_config = ConfigDict(extra="forbid")

    kind: Literal["archive"] = "archive"
    name: str
    url: str | None = None
    path: str | None = None
    sha256: str | None = None
    extract: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_source_name(v)

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str | None) -> str | None:
        """Normalize and validate the pinned checksum."""
        if v is None:
            return v
        v = v.lower()
        if not SHA256_PATTERN.match(v):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return v

    @model_validator(mode="after")
    def validate_origin(self) -> "ArchiveSourceSchema":
        """Exactly one of url and path must be given."""
        if bool(self.url) == bool(self.path):
            raise ValueError("archive source needs exactly one of 'url' or 'path'")
        return self

    def pin(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "url": self.url,
            "path": self.path,
            "sha256": self.sha256,
            "extract": self.extract,
        }


class GitSourceSchema(BaseModel):
    """A git repository checked out at a pinned revision."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["git"] = "git"
    name: str
    url: str
    revision: str = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_source_name(v)

    def pin(self) -> dict[str, object]:
        return {"kind": self.kind, "url": self.url, "revision": self.revision}


class LocalSourceSchema(BaseModel):
    """A directory inside the project checkout; never copied into the cache."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["local"] = "local"
    name: str
    path: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_source_name(v)

    def pin(self) -> dict[str, object]:
        return {"kind": self.kind, "path": self.path}


SourceSchema = Annotated[
    ArchiveSourceSchema | GitSourceSchema | LocalSourceSchema,
    Field(discriminator="kind"),
]


class ArchSchema(BaseModel):
    """Per-architecture inputs.

    Attributes:
        triple: Cross toolchain target triple (e.g. 'x86_64-linux-musl').
        toolchain: Source of the musl cross toolchain.
        minirootfs: Source of the minimal root filesystem archive.
        loader: Dynamic loader filename installed into /lib.
        image_size_mib: Optional per-architecture image capacity.
    """

    model_config = ConfigDict(extra="forbid")

    triple: str = Field(min_length=1)
    toolchain: SourceSchema
    minirootfs: SourceSchema
    loader: str = Field(min_length=1)
    image_size_mib: int | None = Field(default=None, ge=1)


class SuiteSchema(BaseModel):
    """A test corpus staged into a reserved subpath of the rootfs.

    Attributes:
        source: Where the corpus comes from.
        subpath: Reserved directory name inside rootfs/<arch>/.
        build: Commands run inside the build directory (argv templates).
        env: Extra environment for the build commands (templates).
        output: Directory inside the build tree that is copied into the rootfs.
        exclude: Names skipped while copying.
        arches: Architectures the suite is staged for; empty means all of them.
    """

    model_config = ConfigDict(extra="forbid")

    source: SourceSchema
    subpath: str
    build: list[list[str]] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    output: str = "."
    exclude: list[str] = Field(default_factory=lambda: [".git"])
    arches: list[Arch] = Field(default_factory=list)

    @field_validator("subpath")
    @classmethod
    def validate_subpath(cls, v: str) -> str:
        """Subpath must be a single plain directory name."""
        parts = PurePosixPath(v).parts
        if len(parts) != 1 or v in (".", "..") or "/" in v:
            raise ValueError(f"subpath must be a single directory name, got '{v}'")
        return v

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: str) -> str:
        """Output must stay inside the build tree."""
        path = PurePosixPath(v)
        if path.is_absolute() or ".." in path.parts:
            raise ValueError(f"output must be a relative path inside the build tree, got '{v}'")
        return v

    def supports(self, arch: Arch) -> bool:
        return not self.arches or Arch(arch) in self.arches


class ImageSchema(BaseModel):
    """Disk image format and the tool that writes it."""

    model_config = ConfigDict(extra="forbid")

    size_mib: int = Field(default=256, ge=1)
    label: str = Field(default="rootfs", min_length=1, max_length=16)
    command: list[str] = Field(min_length=1)
    env: dict[str, str] = Field(default_factory=dict)
    post_commands: list[list[str]] = Field(default_factory=list)


class CommandsSchema(BaseModel):
    """A list of commands run by a developer-facing stage."""

    model_config = ConfigDict(extra="forbid")

    commands: list[list[str]] = Field(default_factory=list)

    @field_validator("commands")
    @classmethod
    def validate_commands(cls, v: list[list[str]]) -> list[list[str]]:
        """Reject empty argv lists."""
        if any(not argv for argv in v):
            raise ValueError("commands must not contain empty argv lists")
        return v


class SetupSchema(CommandsSchema):
    """Repository synchronization switches for the setup stage."""

    submodules: bool = True
    lfs: bool = True


class PipelineManifest(BaseModel):
    """Complete pipeline manifest.

    ``rt_test`` is optional: without it the rt-test stage has nothing to stage.
    """

    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = 1
    architectures: dict[Arch, ArchSchema]
    shared_libs: list[str] = Field(default_factory=list)
    libc_test: SuiteSchema
    other_test: SuiteSchema
    rt_test: SuiteSchema | None = None
    image: ImageSchema
    setup: SetupSchema = Field(default_factory=SetupSchema)
    update: CommandsSchema = Field(default_factory=CommandsSchema)
    check: CommandsSchema = Field(default_factory=CommandsSchema)
    doc: CommandsSchema = Field(default_factory=CommandsSchema)
    clean: CommandsSchema = Field(default_factory=CommandsSchema)

    @model_validator(mode="after")
    def validate_disjoint_suites(self) -> "PipelineManifest":
        """The test suites must be staged into different subpaths."""
        owners: dict[str, str] = {}
        for key, suite in self.suites().items():
            other = owners.setdefault(suite.subpath, key)
            if other != key:
                raise ValueError(f"{other} and {key} share the subpath '{suite.subpath}'")
        return self

    @model_validator(mode="after")
    def validate_unique_source_names(self) -> "PipelineManifest":
        """Source names are cache keys and must not collide."""
        seen: dict[str, dict[str, object]] = {}
        for source in self.declared_sources():
            previous = seen.setdefault(source.name, source.pin())
            if previous != source.pin():
                raise ValueError(f"source name '{source.name}' is used with different pins")
        return self

    def arch_spec(self, arch: Arch) -> ArchSchema:
        """Return the configuration for an architecture.

        Raises:
            ManifestError: If the architecture is not configured.
        """
        spec = self.architectures.get(Arch(arch))
        if spec is None:
            raise ManifestError(
                f"Architecture {Arch(arch).value} is not configured in the manifest",
                code="unknown_arch",
                arch=Arch(arch).value,
            )
        return spec

    def suites(self) -> dict[str, SuiteSchema]:
        """Return the configured test suites keyed by manifest section."""
        suites = {"libc_test": self.libc_test, "other_test": self.other_test}
        if self.rt_test is not None:
            suites["rt_test"] = self.rt_test
        return suites

    def reserved_subpaths(self) -> tuple[str, ...]:
        return tuple(suite.subpath for suite in self.suites().values())

    def sources_for(self, arch: Arch) -> list[SourceSchema]:
        """Return every source needed to build all stages for an architecture."""
        spec = self.arch_spec(arch)
        sources = [spec.toolchain, spec.minirootfs]
        sources.extend(s.source for s in self.suites().values() if s.supports(arch))
        return sources

    def declared_sources(self) -> list[SourceSchema]:
        """Return every source entry of the manifest, including repeats."""
        sources: list[SourceSchema] = []
        for spec in self.architectures.values():
            sources.extend((spec.toolchain, spec.minirootfs))
        sources.extend(suite.source for suite in self.suites().values())
        return sources

    def all_sources(self) -> list[SourceSchema]:
        """Return the sources of every architecture, deduplicated by name."""
        sources: dict[str, SourceSchema] = {}
        for source in self.declared_sources():
            sources.setdefault(source.name, source)
        return list(sources.values())


__all__ = [
    "ArchSchema",
    "ArchiveSourceSchema",
    "CommandsSchema",
    "GitSourceSchema",
    "ImageSchema",
    "LocalSourceSchema",
    "PipelineManifest",
    "SetupSchema",
    "SourceSchema",
    "SuiteSchema",
]
