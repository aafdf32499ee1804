"""Error taxonomy for kbuild_pipeline.

Every error carries a stable ``code`` for programmatic handling and is
attributed to the (stage, architecture) pair that raised it. The Pipeline
Driver fills in the attribution when a stage did not.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from kbuild_pipeline.pipeline.driver import RunReport


class PipelineError(Exception):
    """Base error for all pipeline failures."""

    default_code = "pipeline_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        stage: str | None = None,
        arch: str | None = None,
        log_path: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.stage = stage
        self.arch = arch
        self.log_path = log_path
        self.details = details or {}
        self.report: RunReport | None = None

    def attribute(self, stage: str | None, arch: str | None) -> PipelineError:
        """Fill in the failing stage and architecture if not already set."""
        if self.stage is None:
            self.stage = stage
        if self.arch is None:
            self.arch = arch
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "stage": self.stage,
            "arch": self.arch,
        }
        if self.log_path is not None:
            result["log_path"] = self.log_path
        if self.details:
            result["details"] = self.details
        return result


class FetchError(PipelineError):
    """Source unavailable, network failure, or checksum/revision mismatch."""

    default_code = "fetch_error"


class BuildError(PipelineError):
    """Missing toolchain, compile/link failure, or disk exhaustion."""

    default_code = "build_error"


class StageError(PipelineError):
    """Test staging failure: copy/cross-build failure or subpath conflict."""

    default_code = "stage_error"


class PackError(PipelineError):
    """Image packaging failure: capacity exceeded, malformed or incomplete rootfs."""

    default_code = "pack_error"


class DevToolError(PipelineError):
    """Failure of a developer-facing stage (update, check, doc, clean)."""

    default_code = "devtool_error"


class ManifestError(PipelineError):
    """Pipeline manifest could not be loaded or validated."""

    default_code = "invalid_manifest"


class CommandExecutionError(PipelineError):
    """An external tool could not be started or did not finish in time."""

    default_code = "execution_error"


class MissingPrerequisiteError(PipelineError):
    """A prerequisite artifact does not exist and may not be built implicitly."""

    default_code = "missing_prerequisite"

    def __init__(
        self,
        message: str,
        missing: list[str] | None = None,
        stage: str | None = None,
        arch: str | None = None,
    ) -> None:
        super().__init__(
            message,
            stage=stage,
            arch=arch,
            details={"missing": list(missing or [])},
        )
        self.missing = list(missing or [])


__all__ = [
    "BuildError",
    "CommandExecutionError",
    "DevToolError",
    "FetchError",
    "ManifestError",
    "MissingPrerequisiteError",
    "PackError",
    "PipelineError",
    "StageError",
]
