"""Thin CLI wrapper for kbuild_pipeline.

This module provides the command-line interface using Typer.
Every stage command maps to one Pipeline Driver request; all business
logic is delegated to core modules.
"""

import json
import logging
from typing import TYPE_CHECKING, Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from kbuild_pipeline import __version__
from kbuild_pipeline.config import get_settings, print_settings_json
from kbuild_pipeline.errors import PipelineError
from kbuild_pipeline.types import Arch, StageName

if TYPE_CHECKING:
    from kbuild_pipeline.pipeline.driver import RunReport

app = typer.Typer(
    name="kbuild",
    help="Kernel build pipeline - fetch toolchains, build rootfs, stage tests, pack images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    root = logging.getLogger()
    root.handlers.clear()
    handler = RichHandler(console=err_console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(level)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kbuild-pipeline version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Kernel build pipeline - fetch toolchains, build rootfs, stage tests, pack images."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


# Shared options

ArchArgument = Annotated[
    Arch | None,
    typer.Argument(help="Target architecture (default: KBUILD_DEFAULT_ARCH)"),
]
ForceOption = Annotated[
    bool,
    typer.Option("--force", "-f", help="Rebuild the requested stage even when fresh"),
]
ForceAllOption = Annotated[
    bool,
    typer.Option("--force-all", help="Rebuild every stage in the dependency closure"),
]
NoDepsOption = Annotated[
    bool,
    typer.Option("--no-deps", help="Fail instead of running stale prerequisites"),
]
BuildMissingOption = Annotated[
    bool,
    typer.Option("--build-missing", help="Build required artifacts that do not exist"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


def _fail(error: PipelineError, json_output: bool) -> NoReturn:
    if json_output:
        typer.echo(json.dumps(error.to_dict(), indent=2))
    else:
        where = " ".join(part for part in (error.stage, error.arch) if part)
        prefix = f"Stage {where} failed" if where else "Error"
        console.print(f"[red]{prefix}: {error.message}[/red]", markup=True, highlight=False)
        console.print(f"  Code: {error.code}", highlight=False)
        if error.log_path:
            console.print(f"  Log: {error.log_path}", highlight=False)
    raise typer.Exit(code=1)


def _print_report(report: "RunReport", json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return

    console.print(f"[bold]Pipeline for {report.arch}:[/bold]")
    for record in report.records:
        color = {"executed": "green", "skipped": "cyan", "failed": "red"}[record.outcome.value]
        line = f"  [{color}]{record.outcome.value:<8}[/{color}] {record.stage}"
        if record.artifact is not None:
            line += f"  {record.artifact.path}"
        console.print(line, highlight=False)


def _run(
    stages: list[StageName],
    arches: list[Arch],
    json_output: bool,
    force: bool = False,
    force_all: bool = False,
    no_deps: bool = False,
    build_missing: bool = False,
    jobs: int = 1,
    open_docs: bool = True,
) -> None:
    from kbuild_pipeline.pipeline.driver import PipelineDriver, RunOptions

    options = RunOptions(
        force=force,
        force_all=force_all,
        no_deps=no_deps,
        build_missing=build_missing,
        jobs=jobs,
        open_docs=open_docs,
    )

    try:
        driver = PipelineDriver()
    except PipelineError as e:
        _fail(e, json_output)

    with driver:
        if len(arches) <= 1:
            try:
                report = driver.run_stages(stages, arches[0] if arches else None, options)
            except PipelineError as e:
                _fail(e, json_output)
            _print_report(report, json_output)
            return

        results = driver.run_arches(stages, arches, options)

    failed = [a for a, r in results.items() if isinstance(r, PipelineError)]
    if json_output:
        output = {a.value: r.to_dict() for a, r in results.items()}
        typer.echo(json.dumps(output, indent=2))
    else:
        for a, result in results.items():
            if isinstance(result, PipelineError):
                console.print(
                    f"[red]{a.value}: stage {result.stage} failed: {result.message}[/red]",
                    highlight=False,
                )
            else:
                _print_report(result, json_output=False)
    if failed:
        raise typer.Exit(code=1)


# Stage commands


@app.command()
def setup(
    arch: ArchArgument = None,
    json_output: JsonOption = False,
) -> None:
    """Synchronize submodules/LFS assets and fetch the sources for ARCH."""
    _run([StageName.SETUP], [arch] if arch else [], json_output)


@app.command()
def update(
    json_output: JsonOption = False,
    no_deps: NoDepsOption = False,
) -> None:
    """Update toolchains and dependencies, then refetch every source."""
    _run([StageName.UPDATE], [], json_output, no_deps=no_deps)


@app.command()
def rootfs(
    arch: ArchArgument = None,
    force: ForceOption = False,
    force_all: ForceAllOption = False,
    no_deps: NoDepsOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build the root filesystem tree rootfs/ARCH."""
    _run(
        [StageName.ROOTFS],
        [arch] if arch else [],
        json_output,
        force=force,
        force_all=force_all,
        no_deps=no_deps,
    )


@app.command("libc-test")
def libc_test(
    arch: ArchArgument = None,
    force: ForceOption = False,
    force_all: ForceAllOption = False,
    no_deps: NoDepsOption = False,
    json_output: JsonOption = False,
) -> None:
    """Stage the libc conformance suite into rootfs/ARCH."""
    _run(
        [StageName.LIBC_TEST],
        [arch] if arch else [],
        json_output,
        force=force,
        force_all=force_all,
        no_deps=no_deps,
    )


@app.command("other-test")
def other_test(
    arch: ArchArgument = None,
    force: ForceOption = False,
    force_all: ForceAllOption = False,
    no_deps: NoDepsOption = False,
    json_output: JsonOption = False,
) -> None:
    """Stage the secondary test suite into rootfs/ARCH."""
    _run(
        [StageName.OTHER_TEST],
        [arch] if arch else [],
        json_output,
        force=force,
        force_all=force_all,
        no_deps=no_deps,
    )


@app.command("rt-test")
def rt_test(
    arch: ArchArgument = None,
    force: ForceOption = False,
    force_all: ForceAllOption = False,
    no_deps: NoDepsOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build the real-time latency tests into rootfs/ARCH (needs an rt_test manifest entry)."""
    _run(
        [StageName.RT_TEST],
        [arch] if arch else [],
        json_output,
        force=force,
        force_all=force_all,
        no_deps=no_deps,
    )


@app.command()
def image(
    arch: ArchArgument = None,
    force: ForceOption = False,
    force_all: ForceAllOption = False,
    build_missing: BuildMissingOption = False,
    json_output: JsonOption = False,
) -> None:
    """Package rootfs/ARCH into ARCH.img."""
    _run(
        [StageName.IMAGE],
        [arch] if arch else [],
        json_output,
        force=force,
        force_all=force_all,
        build_missing=build_missing,
    )


@app.command()
def check(json_output: JsonOption = False) -> None:
    """Run the style checks."""
    _run([StageName.CHECK], [], json_output)


@app.command()
def doc(
    open_docs: Annotated[
        bool,
        typer.Option("--open/--no-open", help="Open the generated documentation"),
    ] = True,
    json_output: JsonOption = False,
) -> None:
    """Generate documentation."""
    _run([StageName.DOC], [], json_output, open_docs=open_docs)


@app.command()
def clean(json_output: JsonOption = False) -> None:
    """Delete every rootfs, staged suite, image and the build scratch."""
    _run([StageName.CLEAN], [], json_output)


# Pipeline commands


@app.command()
def run(
    stages: Annotated[list[StageName], typer.Argument(help="Stages to run")],
    arches: Annotated[
        list[Arch] | None,
        typer.Option("--arch", "-a", help="Target architecture (can be repeated)"),
    ] = None,
    jobs: Annotated[
        int,
        typer.Option("--jobs", "-j", min=1, help="Independent stages run concurrently"),
    ] = 1,
    force: ForceOption = False,
    force_all: ForceAllOption = False,
    no_deps: NoDepsOption = False,
    build_missing: BuildMissingOption = False,
    json_output: JsonOption = False,
) -> None:
    """Run several stages, for one or more architectures.

    Architectures given with repeated --arch run concurrently.
    """
    _run(
        stages,
        list(arches or []),
        json_output,
        force=force,
        force_all=force_all,
        no_deps=no_deps,
        build_missing=build_missing,
        jobs=jobs,
    )


@app.command()
def plan(
    stages: Annotated[list[StageName], typer.Argument(help="Stages to plan")],
    arch: Annotated[
        Arch | None,
        typer.Option("--arch", "-a", help="Target architecture"),
    ] = None,
    force_all: ForceAllOption = False,
    no_deps: NoDepsOption = False,
    build_missing: BuildMissingOption = False,
    json_output: JsonOption = False,
) -> None:
    """Show which stages a request would run, in order."""
    from kbuild_pipeline.pipeline.driver import PipelineDriver, RunOptions

    options = RunOptions(force_all=force_all, no_deps=no_deps, build_missing=build_missing)
    try:
        with PipelineDriver() as driver:
            levels = driver.plan(stages, arch, options)
    except PipelineError as e:
        _fail(e, json_output)

    if json_output:
        typer.echo(json.dumps([[s.value for s in level] for level in levels], indent=2))
        return
    if not levels:
        console.print("[yellow]Nothing to run[/yellow]")
        return
    for index, level in enumerate(levels, start=1):
        console.print(f"  {index}. {' + '.join(s.value for s in level)}", highlight=False)


@app.command()
def status(
    arch: ArchArgument = None,
    json_output: JsonOption = False,
) -> None:
    """List artifacts in the store and their state."""
    from kbuild_pipeline.pipeline.driver import PipelineDriver

    try:
        with PipelineDriver() as driver:
            artifacts = driver.status(arch)
    except PipelineError as e:
        _fail(e, json_output)

    if json_output:
        typer.echo(json.dumps([a.to_dict() for a in artifacts], indent=2))
        return
    if not artifacts:
        console.print("[yellow]No artifacts found[/yellow]")
        return

    console.print(f"[bold]Found {len(artifacts)} artifact(s):[/bold]")
    console.print()
    for a in artifacts:
        color = "green" if a.state.value == "complete" else "yellow"
        console.print(f"  [{color}]{a.arch}/{a.name}[/{color}] ({a.state.value})")
        console.print(f"    Path: {a.path}", highlight=False)
        if a.finished_at:
            console.print(f"    Finished: {a.finished_at}")
        if a.size_bytes is not None:
            console.print(f"    Size: {a.size_bytes} bytes")


@app.command()
def manifest(json_output: JsonOption = False) -> None:
    """Show the effective pipeline manifest (project file merged onto defaults)."""
    from kbuild_pipeline.manifest.io import load_manifest, manifest_to_dict, manifest_to_yaml_string

    settings = get_settings()
    try:
        loaded = load_manifest(settings.resolve_manifest_path())
    except PipelineError as e:
        _fail(e, json_output)

    if json_output:
        typer.echo(json.dumps(manifest_to_dict(loaded), indent=2))
    else:
        typer.echo(manifest_to_yaml_string(loaded), nl=False)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        manifest_path = settings.resolve_manifest_path()
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Project root:        {settings.project_root}")
        console.print(f"  Rootfs directory:    {settings.rootfs_root}")
        console.print(f"  Image directory:     {settings.image_root}")
        console.print(f"  Work directory:      {settings.work_root}")
        console.print(f"  Manifest:            {manifest_path or '(built-in defaults)'}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Default arch:        {settings.default_arch.value}")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Source date epoch:   {settings.source_date_epoch}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Build jobs:          {settings.jobs}")
        console.print(f"  Parallel arches:     {settings.max_parallel_arches}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Command timeout:     {settings.command_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


if __name__ == "__main__":
    app()
