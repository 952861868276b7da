"""Thin CLI wrapper for buildabox.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from buildabox import __version__
from buildabox.config import Settings, get_settings, parse_targets, print_settings_json

app = typer.Typer(
    name="buildabox",
    help="Buildabox - cross-compile static BusyBox binaries for many architectures",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Exit code for configuration errors; 1 is reserved for build/test failures
EXIT_CONFIG_ERROR = 2


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"buildabox version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def print_json(data: Any) -> None:
    """Print data as JSON on stdout."""
    console.print_json(data=data, default=str)


def load_settings(**overrides: Any) -> Settings:
    """Load settings, applying only the overrides that were given."""
    return get_settings(**{k: v for k, v in overrides.items() if v is not None})


def _session_factory(settings: Settings) -> Any:
    from buildabox.db import open_history

    return open_history(settings.db_url)


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
        typer.Option("--verbose", help="Enable debug logging"),
    ] = False,
) -> None:
    """Buildabox - cross-compile static BusyBox binaries for many architectures."""
    setup_logging("DEBUG" if verbose else get_settings().log_level)


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
        console.print_json(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Root directory:      {settings.root_dir}")
        console.print(f"  Source directory:    {settings.src_dir}")
        console.print(f"  Build directory:     {settings.build_dir}")
        console.print(f"  Releases directory:  {settings.releases_dir}")
        console.print(f"  Base config:         {settings.config_file}")
        console.print(f"  Arch overrides:      {settings.overrides_dir}")
        console.print(f"  dockcross scripts:   {settings.dockcross_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Build:[/bold]")
        console.print(f"  BusyBox version:     {settings.busybox_version}")
        console.print(f"  Targets:             {settings.targets}")
        console.print(f"  Parallel builds:     {settings.parallel_builds}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Skip tests:          {settings.skip_tests}")
        console.print(f"  Require signature:   {settings.require_signature}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Test timeout:        {settings.test_timeout}")
        console.print(f"  Docker timeout:      {settings.docker_timeout}")


@app.command()
def build(
    busybox_version: Annotated[
        str | None,
        typer.Option("--busybox-version", "-v", help="BusyBox version to build"),
    ] = None,
    targets: Annotated[
        str | None,
        typer.Option("--targets", "-t", help='Space separated targets, e.g. "x86_64 arm64"'),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Base BusyBox config file"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", help="Maximum parallel builds"),
    ] = None,
    skip_tests: Annotated[
        bool,
        typer.Option("--skip-tests", "-s", help="Skip smoke tests"),
    ] = False,
    clean: Annotated[
        bool,
        typer.Option("--clean", "-C", help="Clean build and source directories first"),
    ] = False,
    release: Annotated[
        bool,
        typer.Option("--release", "-r", help="Package successful builds for release"),
    ] = False,
    offline: Annotated[
        bool,
        typer.Option("--offline", help="Do not download BusyBox source"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build BusyBox for the requested targets."""
    from buildabox.builds.service import (
        ConfigurationError,
        PipelineOptions,
        run_pipeline,
    )
    from buildabox.source import (
        DownloadError,
        ExtractionError,
        OfflineModeError,
        SignatureError,
        SourceLockError,
    )
    from buildabox.toolchains import ToolchainTableError

    settings = load_settings(offline=True if offline else None)
    options = PipelineOptions.from_settings(
        settings,
        version=busybox_version,
        targets=parse_targets(targets) if targets is not None else None,
        config_file=config_file,
        jobs=jobs,
        skip_tests=True if skip_tests else None,
        clean=clean,
        release=release,
    )

    try:
        report = run_pipeline(options, settings, _session_factory(settings))
    except (ConfigurationError, ToolchainTableError) as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None
    except (
        OfflineModeError,
        DownloadError,
        SignatureError,
        ExtractionError,
        SourceLockError,
    ) as e:
        console.print(f"[red]Failed to prepare BusyBox source: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        print_json(report.to_dict())
        raise typer.Exit(code=report.exit_code)

    table = Table(title=f"BusyBox {options.version} build summary (run #{report.run_id})")
    table.add_column("Target")
    table.add_column("Build")
    table.add_column("Tests")
    table.add_column("Duration", justify="right")
    table.add_column("Details")
    for r in report.schedule.results:
        test_status = report.test_status.get(r.target)
        test_display = test_status.value if test_status else "skipped"
        test_color = {"passed": "green", "failed": "red"}.get(test_display, "dim")
        table.add_row(
            r.target,
            "[green]success[/green]" if r.succeeded else "[red]failure[/red]",
            f"[{test_color}]{test_display}[/{test_color}]",
            f"{r.duration:.1f}s" if r.duration is not None else "-",
            str(r.artifact_path) if r.succeeded else f"{r.reason}: {r.message}",
        )
    console.print(table)

    for r in report.schedule.failed:
        if r.log_tail:
            console.print(f"[bold red]Last log lines for {r.target}:[/bold red]")
            console.print(r.log_tail, markup=False, highlight=False)
        if r.log_path:
            console.print(f"  Full log: {r.log_path}")

    if report.release is not None:
        console.print(f"[green]✓ Release packaged: {report.release.release_dir}[/green]")
    elif report.release_error:
        console.print(f"[red]Packaging failed: {report.release_error}[/red]")

    succeeded = len(report.schedule.succeeded)
    total = len(report.schedule.results)
    if report.exit_code == 0:
        console.print(f"[green]✓ All {total} build(s) succeeded[/green]")
    else:
        console.print(f"[red]✗ {succeeded}/{total} build(s) succeeded[/red]")
    raise typer.Exit(code=report.exit_code)


@app.command()
def fetch(
    busybox_version: Annotated[
        str | None,
        typer.Argument(help="BusyBox version (defaults to settings)"),
    ] = None,
    offline: Annotated[
        bool,
        typer.Option("--offline", help="Do not download BusyBox source"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Download, verify and extract BusyBox source."""
    from buildabox.source import (
        DownloadError,
        ExtractionError,
        OfflineModeError,
        SignatureError,
        SourceLockError,
        ensure_source,
    )

    settings = load_settings(offline=True if offline else None)
    version = busybox_version or settings.busybox_version

    try:
        record = ensure_source(version, settings)
    except OfflineModeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    except (DownloadError, SignatureError, ExtractionError, SourceLockError) as e:
        console.print(f"[red]Failed to prepare BusyBox {version}: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        print_json(record.model_dump(mode="json"))
    else:
        console.print(f"[green]✓ BusyBox {version} ready[/green]")
        console.print(f"  State: {record.state.value}")
        if record.tarball_sha256:
            console.print(f"  SHA256: {record.tarball_sha256}")
        if record.signature:
            console.print(f"  Signature: {record.signature.value}")


@app.command("test")
def test_binary(
    binary: Annotated[Path, typer.Argument(help="Binary to test")],
    target: Annotated[str, typer.Argument(help="Target the binary was built for")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Smoke test a built binary."""
    from buildabox.smoke import (
        BinaryNotFoundError,
        EmulatorNotFoundError,
        run_smoke_tests,
    )
    from buildabox.toolchains import UnknownTargetError, init_toolchain_mapping

    settings = get_settings()
    try:
        mapping = init_toolchain_mapping(settings.toolchains_file)
        report = run_smoke_tests(
            binary, target, timeout=settings.test_timeout, mapping=mapping
        )
    except UnknownTargetError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None
    except (BinaryNotFoundError, EmulatorNotFoundError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        print_json(
            {
                "target": report.target,
                "binary": str(report.binary),
                "emulator": report.emulator,
                "passed": report.passed,
                "checks": [
                    {"name": c.name, "passed": c.passed, "detail": c.detail}
                    for c in report.checks
                ],
                "applets": report.applets,
            }
        )
    else:
        runner = report.emulator or "native"
        console.print(f"[bold]Testing {binary} ({target}, {runner}):[/bold]")
        for c in report.checks:
            mark = "[green]✓[/green]" if c.passed else "[red]✗[/red]"
            console.print(f"  {mark} {c.name}")
        console.print()
        console.print("[bold]Forensic applets:[/bold]")
        for name, available in report.applets.items():
            mark = "[green]✓[/green]" if available else "[yellow]-[/yellow]"
            console.print(f"  {mark} {name}")

    if not report.passed:
        raise typer.Exit(code=1)


@app.command()
def package(
    busybox_version: Annotated[str, typer.Argument(help="BusyBox version")],
    targets: Annotated[
        str | None,
        typer.Option("--targets", "-t", help="Space separated targets"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Package built binaries into a release."""
    from buildabox.release import PackagingError, package_release

    settings = get_settings()
    target_list = parse_targets(targets) if targets is not None else settings.target_list

    try:
        result = package_release(busybox_version, target_list, settings)
    except PackagingError as e:
        console.print(f"[red]Packaging failed: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        print_json(
            {
                "tag": result.tag,
                "release_dir": str(result.release_dir),
                "manifest": str(result.manifest_path),
                "release_notes": str(result.notes_path),
                "archives": [str(p) for p in result.archives],
                "individual_archives": [str(p) for p in result.individual_archives],
                "missing_targets": result.missing_targets,
            }
        )
    else:
        console.print(f"[green]✓ Release {result.tag} packaged[/green]")
        console.print(f"  Directory: {result.release_dir}")
        console.print(f"  Binaries: {len(result.artifacts)}")
        for path in result.archives:
            console.print(f"  Archive: {path}")
        if result.missing_targets:
            console.print(
                f"[yellow]  Missing binaries: {' '.join(result.missing_targets)}[/yellow]"
            )


toolchains_app = typer.Typer(help="Manage dockcross toolchains")
app.add_typer(toolchains_app, name="toolchains")


@toolchains_app.command("list")
def toolchains_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List supported targets and their toolchains."""
    from buildabox.toolchains import init_toolchain_mapping
    from buildabox.toolchains.dockcross import is_script_ready, script_path

    settings = get_settings()
    mapping = init_toolchain_mapping(settings.toolchains_file)

    rows = [
        {
            "target": tc.target,
            "image": tc.docker_image,
            "emulator": tc.emulator,
            "machine": tc.machine,
            "installed": is_script_ready(script_path(settings.dockcross_dir, tc)),
        }
        for tc in mapping.values()
    ]

    if json_output:
        print_json(rows)
        return

    table = Table(title="Supported targets")
    table.add_column("Target")
    table.add_column("Image")
    table.add_column("Emulator")
    table.add_column("Machine")
    table.add_column("Installed")
    for row in rows:
        table.add_row(
            str(row["target"]),
            str(row["image"]),
            str(row["emulator"]),
            str(row["machine"]),
            "[green]yes[/green]" if row["installed"] else "[dim]no[/dim]",
        )
    console.print(table)


@toolchains_app.command("setup")
def toolchains_setup(
    targets: Annotated[
        str | None,
        typer.Option("--targets", "-t", help="Space separated targets"),
    ] = None,
    all_targets: Annotated[
        bool,
        typer.Option("--all", help="Set up every known target"),
    ] = False,
) -> None:
    """Pull dockcross images and generate runner scripts."""
    from buildabox.toolchains import (
        DockerUnavailableError,
        check_docker,
        init_toolchain_mapping,
        setup_toolchains,
    )

    settings = get_settings()
    mapping = init_toolchain_mapping(settings.toolchains_file)

    if all_targets:
        target_list = list(mapping)
    elif targets is not None:
        target_list = parse_targets(targets)
    else:
        target_list = settings.target_list

    unknown = mapping.unknown(target_list)
    if unknown:
        console.print(f"[red]Unknown targets: {' '.join(unknown)}[/red]")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    try:
        check_docker(settings.docker_binary)
    except DockerUnavailableError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    results = setup_toolchains(
        target_list,
        settings.dockcross_dir,
        docker=settings.docker_binary,
        timeout=settings.docker_timeout,
        mapping=mapping,
    )

    failed = 0
    for target, result in results.items():
        if result.success:
            console.print(f"[green]✓ {target}[/green]")
        else:
            failed += 1
            console.print(f"[red]✗ {target}: {result.message}[/red]")

    if failed:
        console.print(f"[yellow]{failed} toolchain(s) failed to set up[/yellow]")
        raise typer.Exit(code=1)


@toolchains_app.command("validate")
def toolchains_validate(
    targets: Annotated[
        str | None,
        typer.Option("--targets", "-t", help="Space separated targets"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Validate dockcross runner scripts."""
    from buildabox.toolchains import init_toolchain_mapping, validate_toolchain

    settings = get_settings()
    mapping = init_toolchain_mapping(settings.toolchains_file)
    target_list = parse_targets(targets) if targets is not None else list(mapping)

    unknown = mapping.unknown(target_list)
    if unknown:
        console.print(f"[red]Unknown targets: {' '.join(unknown)}[/red]")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    reports = [
        validate_toolchain(mapping[t], settings.dockcross_dir) for t in target_list
    ]

    if json_output:
        print_json(
            [
                {
                    "target": r.target,
                    "image": r.image,
                    "script_exists": r.script_exists,
                    "executable": r.executable,
                    "works": r.works,
                    "ok": r.ok,
                    "message": r.message,
                }
                for r in reports
            ]
        )
    else:
        for r in reports:
            if r.ok:
                console.print(f"  [green]✓ {r.target}[/green] ({r.image})")
            else:
                console.print(f"  [red]✗ {r.target}[/red] ({r.image}): {r.message}")
        working = sum(r.ok for r in reports)
        console.print()
        console.print(f"[bold]{working}/{len(reports)} toolchain(s) working[/bold]")

    if not all(r.ok for r in reports):
        raise typer.Exit(code=1)


runs_app = typer.Typer(help="Show build run history")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter by status (running/succeeded/failed)"),
    ] = None,
    busybox_version: Annotated[
        str | None,
        typer.Option("--busybox-version", "-v", help="Filter by BusyBox version"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of runs to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recent build runs."""
    from buildabox.builds.service import format_started, list_runs
    from buildabox.types import RunStatus

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: running, succeeded, failed")
            raise typer.Exit(code=1) from None

    factory = _session_factory(get_settings())
    with factory() as session:
        runs = list_runs(
            session, status=status_filter, version=busybox_version, limit=limit
        )

        if not runs:
            if json_output:
                print_json([])
            else:
                console.print("[yellow]No build runs found[/yellow]")
            return

        if json_output:
            print_json(
                [
                    {
                        "id": r.id,
                        "busybox_version": r.busybox_version,
                        "status": r.status,
                        "exit_code": r.exit_code,
                        "started_at": r.started_at.isoformat() if r.started_at else None,
                        "finished_at": r.finished_at.isoformat()
                        if r.finished_at
                        else None,
                        "targets": len(r.targets),
                        "succeeded": sum(t.is_succeeded() for t in r.targets),
                    }
                    for r in runs
                ]
            )
            return

        table = Table(title=f"{len(runs)} build run(s)")
        table.add_column("ID", justify="right")
        table.add_column("Version")
        table.add_column("Status")
        table.add_column("Started")
        table.add_column("Targets", justify="right")
        for r in runs:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "running": "blue",
            }.get(r.status, "white")
            ok = sum(t.is_succeeded() for t in r.targets)
            table.add_row(
                str(r.id),
                r.busybox_version,
                f"[{status_color}]{r.status}[/{status_color}]",
                format_started(r),
                f"{ok}/{len(r.targets)}",
            )
        console.print(table)


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show one build run and its per-target outcomes."""
    from buildabox.builds.service import RunNotFoundError, format_started, get_run

    factory = _session_factory(get_settings())
    with factory() as session:
        try:
            run = get_run(session, run_id)
        except RunNotFoundError:
            console.print(f"[red]Run not found: {run_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            print_json(
                {
                    "id": run.id,
                    "busybox_version": run.busybox_version,
                    "status": run.status,
                    "exit_code": run.exit_code,
                    "concurrency": run.concurrency,
                    "options": run.options,
                    "release_dir": run.release_dir,
                    "error_type": run.error_type,
                    "error_message": run.error_message,
                    "targets": [
                        {
                            "target": t.target,
                            "outcome": t.outcome,
                            "reason": t.reason,
                            "message": t.message,
                            "artifact_path": t.artifact_path,
                            "size_bytes": t.size_bytes,
                            "log_path": t.log_path,
                            "test_status": t.test_status,
                        }
                        for t in run.targets
                    ],
                }
            )
            return

        console.print(f"[bold]Run #{run.id}[/bold] - BusyBox {run.busybox_version}")
        console.print(f"  Status: {run.status}")
        console.print(f"  Started: {format_started(run)}")
        console.print(f"  Concurrency: {run.concurrency}")
        if run.release_dir:
            console.print(f"  Release: {run.release_dir}")
        if run.error_message:
            console.print(f"  Error: {run.error_message}")
        console.print()
        for t in run.targets:
            color = "green" if t.is_succeeded() else "red"
            console.print(f"  [{color}]{t.target}[/{color}]: {t.outcome}")
            if t.reason:
                console.print(f"    Reason: {t.reason}")
            if t.artifact_path:
                console.print(f"    Binary: {t.artifact_path}")
            console.print(f"    Tests: {t.test_status}")


if __name__ == "__main__":
    app()
