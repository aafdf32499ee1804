"""Runner for external toolchain commands.

This module handles:
- Rendering argv and environment templates from the manifest
- Executing commands with subprocess, synchronously
- Capturing stdout/stderr to per-stage log files
- Enforcing command timeouts

Output is never interpreted; only the exit status decides success.
"""

from __future__ import annotations

import logging
import os
import shlex
import string
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from kbuild_pipeline.errors import CommandExecutionError, ManifestError, PipelineError

logger = logging.getLogger(__name__)

_FORMATTER = string.Formatter()


@dataclass
class CommandResult:
    """Result of an external command.

    Attributes:
        success: Whether the command exited with status 0.
        exit_code: Process exit code.
        command: Shell-quoted command line.
        cwd: Working directory.
        log_path: Log file receiving stdout/stderr.
        started_at: Start time.
        finished_at: Finish time.
        error_message: Error message if the command failed.
    """

    success: bool
    exit_code: int
    command: str
    cwd: Path
    log_path: Path
    started_at: datetime
    finished_at: datetime
    error_message: str | None = None


# Signature of run_command; stages accept any callable with this shape
CommandRunner = Callable[..., CommandResult]


def render_template(template: str, values: Mapping[str, object]) -> str:
    """Substitute ``{placeholder}`` fields in a manifest template.

    Raises:
        ManifestError: If the template uses an unknown placeholder.
    """
    for _, field_name, _, _ in _FORMATTER.parse(template):
        if field_name is not None and field_name not in values:
            raise ManifestError(
                f"Unknown placeholder '{{{field_name}}}' in '{template}'",
                code="unknown_placeholder",
            )
    return template.format_map(values)


def render_command(argv: Sequence[str], values: Mapping[str, object]) -> list[str]:
    return [render_template(arg, values) for arg in argv]


def render_env(env: Mapping[str, str], values: Mapping[str, object]) -> dict[str, str]:
    return {key: render_template(value, values) for key, value in env.items()}


def run_command(
    argv: Sequence[str],
    cwd: Path,
    log_path: Path,
    timeout: int | None = None,
    env_override: Mapping[str, str] | None = None,
) -> CommandResult:
    """Execute an external command, appending its output to a log file.

    Args:
        argv: Command and arguments.
        cwd: Working directory.
        log_path: Log file (appended to, so one stage can log several commands).
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        CommandResult with execution details.

    Raises:
        CommandExecutionError: If the command cannot be started or times out.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [str(a) for a in argv]
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    try:
        with log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

        exit_code = result.returncode
        success = exit_code == 0
        if not success:
            error_message = f"{cmd[0]} failed with exit code {exit_code}"
            logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"{cmd[0]} timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise CommandExecutionError(
            error_message,
            code="timeout",
            log_path=str(log_path),
        ) from e

    except FileNotFoundError as e:
        error_message = f"Tool not found: {cmd[0]}"
        logger.error(error_message)
        raise CommandExecutionError(
            error_message,
            code="tool_not_found",
            log_path=str(log_path),
        ) from e

    except OSError as e:
        error_message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(error_message)
        raise CommandExecutionError(
            error_message,
            code="execution_error",
            log_path=str(log_path),
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n\n")

    return CommandResult(
        success=success,
        exit_code=exit_code,
        command=cmd_str,
        cwd=cwd,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        error_message=error_message,
    )


def raise_for_result(
    result: CommandResult,
    error_cls: type[PipelineError],
    code: str,
    message: str | None = None,
) -> CommandResult:
    """Raise error_cls if an external command failed.

    Args:
        result: Result returned by a command runner.
        error_cls: Domain error to raise (BuildError, StageError, ...).
        code: Error code for the raised error.
        message: Optional message prefix.

    Returns:
        The result, unchanged, when the command succeeded.
    """
    if result.success:
        return result
    detail = result.error_message or f"exit code {result.exit_code}"
    raise error_cls(
        f"{message}: {detail}" if message else detail,
        code=code,
        log_path=str(result.log_path),
        details={"command": result.command, "exit_code": result.exit_code},
    )


def run_checked(
    runner: CommandRunner,
    argv: Sequence[str],
    *,
    cwd: Path,
    log_path: Path,
    error_cls: type[PipelineError],
    code: str,
    message: str | None = None,
    timeout: int | None = None,
    env_override: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a command and raise error_cls unless it succeeds.

    Launch failures (tool not found, timeout) are re-raised as error_cls
    with the runner's code so the caller's taxonomy applies.
    """
    try:
        result = runner(
            argv,
            cwd=cwd,
            log_path=log_path,
            timeout=timeout,
            env_override=env_override,
        )
    except CommandExecutionError as e:
        raise error_cls(
            f"{message}: {e.message}" if message else e.message,
            code=e.code,
            log_path=e.log_path,
            details={"command": shlex.join(str(a) for a in argv)},
        ) from e
    return raise_for_result(result, error_cls, code, message)


__all__ = [
    "CommandResult",
    "CommandRunner",
    "raise_for_result",
    "run_checked",
    "render_command",
    "render_env",
    "render_template",
    "run_command",
]
