"""Tests for the external command runner.

Uses mocked subprocess for execution tests.
"""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from kbuild_pipeline.errors import (
    BuildError,
    CommandExecutionError,
    ManifestError,
    StageError,
)
from kbuild_pipeline.stages.runner import (
    raise_for_result,
    render_command,
    render_env,
    render_template,
    run_checked,
    run_command,
)


class TestTemplates:
    """Tests for template rendering."""

    def test_render_command(self):
        """Placeholders in argv are substituted."""
        argv = render_command(
            ["make", "-j{jobs}", "CROSS_COMPILE={cross_compile}"],
            {"jobs": 8, "cross_compile": "/tc/bin/x86_64-linux-musl-"},
        )
        assert argv == ["make", "-j8", "CROSS_COMPILE=/tc/bin/x86_64-linux-musl-"]

    def test_render_env(self):
        """Environment values are templates too."""
        assert render_env({"E2FSPROGS_FAKE_TIME": "{epoch}"}, {"epoch": 0}) == {
            "E2FSPROGS_FAKE_TIME": "0"
        }

    def test_literal_braces(self):
        """Doubled braces stay literal."""
        assert render_template("{{arch}}={arch}", {"arch": "x86_64"}) == "{arch}=x86_64"

    def test_unknown_placeholder(self):
        """Typos in templates are manifest errors, not KeyErrors."""
        with pytest.raises(ManifestError) as exc_info:
            render_template("{jbos}", {"jobs": 1})
        assert exc_info.value.code == "unknown_placeholder"


class TestRunCommand:
    """Tests for run_command with mocked subprocess."""

    def test_success(self, tmp_path: Path):
        """Should report success and log the command."""
        log_path = tmp_path / "logs" / "rootfs.log"

        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            result = run_command(["make", "-j4"], cwd=tmp_path, log_path=log_path)

        assert result.success is True
        assert result.exit_code == 0
        assert result.command == "make -j4"
        log_content = log_path.read_text()
        assert "# Command: make -j4" in log_content
        assert "# Exit code: 0" in log_content

    def test_failure(self, tmp_path: Path):
        """A non-zero exit is a failed result, not an exception."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=2)
            result = run_command(["make"], cwd=tmp_path, log_path=tmp_path / "x.log")

        assert result.success is False
        assert result.exit_code == 2
        assert "exit code 2" in result.error_message

    def test_env_override_merged(self, tmp_path: Path):
        """Overrides are layered over the current environment."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            run_command(
                ["mkfs.ext4"],
                cwd=tmp_path,
                log_path=tmp_path / "x.log",
                env_override={"E2FSPROGS_FAKE_TIME": "0"},
            )

        env = mock_run.call_args.kwargs["env"]
        assert env["E2FSPROGS_FAKE_TIME"] == "0"
        assert "PATH" in env

    def test_timeout(self, tmp_path: Path):
        """Timeouts raise CommandExecutionError."""
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.TimeoutExpired(cmd="make", timeout=10)
            with pytest.raises(CommandExecutionError) as exc_info:
                run_command(["make"], cwd=tmp_path, log_path=tmp_path / "x.log", timeout=10)

        assert exc_info.value.code == "timeout"
        assert "TIMEOUT" in (tmp_path / "x.log").read_text()

    def test_tool_not_found(self, tmp_path: Path):
        """A missing executable is reported by name."""
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = FileNotFoundError("mkfs.ext4")
            with pytest.raises(CommandExecutionError, match="mkfs.ext4") as exc_info:
                run_command(["mkfs.ext4"], cwd=tmp_path, log_path=tmp_path / "x.log")

        assert exc_info.value.code == "tool_not_found"

    def test_log_appends(self, tmp_path: Path):
        """Several commands of one stage share a log file."""
        log_path = tmp_path / "check.log"
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            run_command(["cargo", "fmt"], cwd=tmp_path, log_path=log_path)
            run_command(["cargo", "clippy"], cwd=tmp_path, log_path=log_path)

        content = log_path.read_text()
        assert "cargo fmt" in content
        assert "cargo clippy" in content


class TestRunChecked:
    """Tests for run_checked and raise_for_result."""

    def test_success_returns_result(self, tmp_path: Path, fake_runner):
        """Successful commands pass through."""
        result = run_checked(
            fake_runner,
            ["make"],
            cwd=tmp_path,
            log_path=tmp_path / "x.log",
            error_cls=BuildError,
            code="build_failed",
        )
        assert result.success is True

    def test_failure_raises_domain_error(self, tmp_path: Path, fake_runner):
        """Failures raise the caller's error class with its code."""
        fake_runner.fail_on("make", exit_code=2)
        with pytest.raises(StageError) as exc_info:
            run_checked(
                fake_runner,
                ["make", "-j4"],
                cwd=tmp_path,
                log_path=tmp_path / "x.log",
                error_cls=StageError,
                code="build_failed",
                message="Building libc-test failed",
            )

        error = exc_info.value
        assert error.code == "build_failed"
        assert error.message.startswith("Building libc-test failed")
        assert error.log_path == str(tmp_path / "x.log")
        assert error.details["exit_code"] == 2

    def test_launch_failure_mapped(self, tmp_path: Path):
        """Launch failures keep their code but take the caller's class."""

        def broken_runner(argv, **kwargs):
            raise CommandExecutionError("Tool not found: make", code="tool_not_found")

        with pytest.raises(BuildError) as exc_info:
            run_checked(
                broken_runner,
                ["make"],
                cwd=tmp_path,
                log_path=tmp_path / "x.log",
                error_cls=BuildError,
                code="build_failed",
            )
        assert exc_info.value.code == "tool_not_found"
        assert isinstance(exc_info.value.__cause__, CommandExecutionError)

    def test_raise_for_result_default_message(self, tmp_path: Path, fake_runner):
        """Without a prefix the runner's message is used."""
        fake_runner.fail_on("cargo")
        result = fake_runner(["cargo", "fmt"], cwd=tmp_path, log_path=tmp_path / "x.log")
        with pytest.raises(BuildError, match="cargo failed with exit code 2"):
            raise_for_result(result, BuildError, "check_failed")
