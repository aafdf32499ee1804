"""Smoke tests for the CLI.

These tests verify basic CLI functionality without requiring
network access or external tools: the project used by the pipeline
commands only has local archives, so setup and rootfs run no programs.
"""

import json
import subprocess
import sys
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from kbuild_pipeline import __version__
from kbuild_pipeline.cli import app
from kbuild_pipeline.pipeline.driver import PipelineDriver, RunReport

runner = CliRunner()


@pytest.fixture
def cli_project(project, manifest_dict, monkeypatch):
    """Point the CLI at the test project with its manifest file."""
    (project / "kbuild.yaml").write_text(yaml.safe_dump(manifest_dict))
    monkeypatch.setenv("KBUILD_PROJECT_ROOT", str(project))
    monkeypatch.setenv("KBUILD_LOCK_TIMEOUT", "5")
    # keep log records out of the captured output
    monkeypatch.setenv("KBUILD_LOG_LEVEL", "CRITICAL")
    return project


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Kernel build pipeline" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout

    @pytest.mark.parametrize(
        "command",
        [
            "setup",
            "update",
            "rootfs",
            "libc-test",
            "other-test",
            "rt-test",
            "image",
            "check",
            "doc",
            "clean",
        ],
    )
    def test_stage_commands_exist(self, command: str) -> None:
        """Every stage has its own command."""
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0
        assert "--json" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command_shows_all_settings(self, tmp_path, monkeypatch) -> None:
        """CLI config should show all configuration sections."""
        monkeypatch.setenv("KBUILD_PROJECT_ROOT", str(tmp_path))
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Operational:" in result.stdout
        assert "Concurrency:" in result.stdout
        assert "Timeouts (seconds):" in result.stdout
        assert "Rootfs directory" in result.stdout
        assert "(built-in defaults)" in result.stdout

    def test_config_json_contains_all_fields(self, tmp_path, monkeypatch) -> None:
        """CLI config --json should contain all config fields."""
        monkeypatch.setenv("KBUILD_PROJECT_ROOT", str(tmp_path))
        monkeypatch.setenv("KBUILD_OFFLINE", "true")
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        config_data = json.loads(result.stdout)
        expected_keys = [
            "project_root",
            "offline",
            "log_level",
            "default_arch",
            "jobs",
            "max_parallel_arches",
            "download_timeout",
            "command_timeout",
            "lock_timeout",
            "source_date_epoch",
        ]
        for key in expected_keys:
            assert key in config_data, f"Missing key: {key}"
        assert config_data["offline"] is True


class TestCLIManifest:
    """Test CLI manifest command."""

    def test_defaults(self, tmp_path, monkeypatch) -> None:
        """Without a project manifest the built-in one is shown."""
        monkeypatch.setenv("KBUILD_PROJECT_ROOT", str(tmp_path))
        result = runner.invoke(app, ["manifest"])
        assert result.exit_code == 0
        data = yaml.safe_load(result.stdout)
        assert set(data["architectures"]) == {"x86_64", "aarch64", "riscv64"}

    def test_project_manifest_json(self, cli_project) -> None:
        """The project file is merged onto the defaults."""
        result = runner.invoke(app, ["manifest", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["image"]["size_mib"] == 16
        assert data["other_test"]["source"]["path"] == "other-tests"

    def test_invalid_manifest(self, tmp_path, monkeypatch) -> None:
        """A broken manifest is reported with its error code."""
        (tmp_path / "kbuild.yaml").write_text("image: {size_mib: -1}\n")
        monkeypatch.setenv("KBUILD_PROJECT_ROOT", str(tmp_path))
        result = runner.invoke(app, ["manifest", "--json"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["code"] == "invalid_manifest"


class TestCLIPipeline:
    """Test the pipeline commands against a local project."""

    def test_status_empty(self, cli_project) -> None:
        """A fresh project has no artifacts."""
        result = runner.invoke(app, ["status", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_plan(self, cli_project) -> None:
        """plan shows the levels a request would run."""
        result = runner.invoke(app, ["plan", "libc-test", "--arch", "aarch64", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == [["setup"], ["rootfs"], ["libc-test"]]

    def test_rootfs_then_status(self, cli_project) -> None:
        """Building a rootfs reports it and lists it afterwards."""
        result = runner.invoke(app, ["rootfs", "x86_64", "--json"])
        assert result.exit_code == 0
        report = json.loads(result.stdout)
        assert report["success"] is True
        assert report["plan"] == [["setup"], ["rootfs"]]
        assert report["artifacts"]["rootfs"]["state"] == "complete"

        result = runner.invoke(app, ["status", "x86_64", "--json"])
        [artifact] = json.loads(result.stdout)
        assert artifact["name"] == "rootfs"
        assert (cli_project / "rootfs" / "x86_64" / "bin" / "busybox").is_file()

    def test_missing_prerequisite(self, cli_project) -> None:
        """image without a rootfs fails with a structured error."""
        result = runner.invoke(app, ["image", "x86_64", "--json"])
        assert result.exit_code == 1
        error = json.loads(result.stdout)
        assert error["code"] == "missing_prerequisite"
        assert error["stage"] == "image"
        assert error["arch"] == "x86_64"

    def test_failure_human_output(self, cli_project) -> None:
        """Human output names the failing stage and its code."""
        (cli_project / "archives" / "minirootfs-x86_64.tar.gz").unlink()
        result = runner.invoke(app, ["rootfs", "x86_64"])
        assert result.exit_code == 1
        assert "Stage setup x86_64 failed" in result.stdout
        assert "source_missing" in result.stdout

    def test_rt_test_not_configured(self, cli_project) -> None:
        """rt-test without a manifest entry fails before any stage runs."""
        result = runner.invoke(app, ["rt-test", "x86_64", "--json"])
        assert result.exit_code == 1
        error = json.loads(result.stdout)
        assert error["code"] == "suite_not_configured"
        assert error["stage"] == "rt-test"
        assert not (cli_project / "rootfs" / "x86_64").exists()

    def test_run_several_arches(self, cli_project) -> None:
        """run with repeated --arch reports per architecture."""
        result = runner.invoke(
            app, ["run", "rootfs", "--arch", "x86_64", "--arch", "aarch64", "--json"]
        )
        assert result.exit_code == 0
        output = json.loads(result.stdout)
        assert output["x86_64"]["success"] is True
        assert output["aarch64"]["success"] is True


class TestCLIDoc:
    """Test the doc command options."""

    @pytest.mark.parametrize(
        ("args", "expected"),
        [([], True), (["--open"], True), (["--no-open"], False)],
    )
    def test_opens_by_default(self, cli_project, args, expected) -> None:
        """Generated documentation is opened unless --no-open is given."""
        report = RunReport(arch="x86_64", requested=["doc"])
        with patch.object(PipelineDriver, "run_stages", return_value=report) as run_stages:
            result = runner.invoke(app, ["doc", *args, "--json"])

        assert result.exit_code == 0
        stages, arch, options = run_stages.call_args.args
        assert stages == ["doc"]
        assert arch is None
        assert options.open_docs is expected


class TestModuleEntryPoint:
    """Test python -m kbuild_pipeline entry point."""

    def test_module_version(self) -> None:
        """python -m kbuild_pipeline --version should work."""
        result = subprocess.run(
            [sys.executable, "-m", "kbuild_pipeline", "--version"],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0
        assert __version__ in result.stdout
