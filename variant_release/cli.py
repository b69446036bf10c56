"""Thin CLI wrapper for variant_release.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Exit codes:
    0  success (all variants built, release published or unchanged)
    1  partial failure, or release blocked by a failed required variant
    2  total failure (no variant built)
    3  version conflict
    4  invalid input (matrix, selector, version, credential)
    5  environment check failed
    6  publication failed (sink unreachable or rejected the release)
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from variant_release import __version__
from variant_release.config import Settings, get_settings, print_settings_json

if TYPE_CHECKING:
    from variant_release.builds.scheduler import BuildJob
    from variant_release.pipeline import BuildPipeline
    from variant_release.matrix.schema import MatrixSchema

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_TOTAL = 2
EXIT_CONFLICT = 3
EXIT_INVALID = 4
EXIT_ENVIRONMENT = 5
EXIT_PUBLISH = 6

app = typer.Typer(
    name="variant-release",
    help="Variant build orchestrator - build, sign, checksum and publish app variants",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def _print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2, default=str),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def _configure_logging(verbose: bool) -> None:
    try:
        level = "DEBUG" if verbose else get_settings().log_level
    except ValueError:
        level = "INFO"
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"variant-release version {__version__}")
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
    """Variant build orchestrator - build, sign, checksum and publish app variants."""
    _configure_logging(verbose)


def _fail(
    message: str, code: int, json_output: bool = False, error_code: str | None = None
) -> NoReturn:
    if json_output:
        _print_json({"error": {"code": error_code or "error", "message": message}})
    else:
        err_console.print(f"[red]{message}[/red]", markup=True, highlight=False)
    raise typer.Exit(code=code)


def _load_matrix(path: Path, json_output: bool) -> tuple[MatrixSchema, Path]:
    from variant_release.matrix.io import load_matrix, resolve_source_dir
    from variant_release.matrix.resolver import InvalidMatrixError

    try:
        matrix = load_matrix(path)
    except InvalidMatrixError as e:
        _fail(f"Invalid matrix: {e}", EXIT_INVALID, json_output, e.code)
    return matrix, resolve_source_dir(matrix, path)


def _settings_with(
    jobs: int | None = None, timeout: int | None = None, keep_work_dir: bool | None = None
) -> Settings:
    settings = get_settings()
    update: dict[str, Any] = {}
    if jobs is not None:
        update["max_concurrent_builds"] = jobs
    if timeout is not None:
        update["job_timeout"] = timeout
    if keep_work_dir:
        update["keep_work_dir"] = True
    return settings.model_copy(update=update) if update else settings


def _print_job(job: BuildJob) -> None:
    from variant_release.types import JobState

    if job.state == JobState.SUCCEEDED:
        hit_marker = " (cache hit)" if job.cache_hit else ""
        console.print(f"  [green]✓ {job.variant.name}{hit_marker}[/green]")
    else:
        label = "timed out" if job.state == JobState.TIMED_OUT else "failed"
        optional = "" if job.variant.required else " (optional)"
        console.print(f"  [red]✗ {job.variant.name}{optional} {label}[/red]")
        if job.error_message:
            console.print(f"      Error: {job.error_message}", markup=False)
        if job.log_path:
            console.print(f"      Log: {job.log_path}", markup=False)


def _create_pipeline(matrix_path: Path, settings: Settings, json_output: bool) -> BuildPipeline:
    from variant_release.builds.cache_key import CacheKeyError
    from variant_release.matrix.resolver import InvalidMatrixError
    from variant_release.pipeline import BuildPipeline
    from variant_release.signing.credentials import CredentialError, SigningCredential
    from variant_release.signing.signer import ArtifactSigner

    matrix, source_dir = _load_matrix(matrix_path, json_output)
    try:
        credential = SigningCredential.from_settings(settings)
    except CredentialError as e:
        _fail(f"Signing credential error: {e}", EXIT_INVALID, json_output, e.code)
    try:
        return BuildPipeline(
            matrix,
            source_dir,
            settings=settings,
            signer=ArtifactSigner(credential),
        )
    except (InvalidMatrixError, CacheKeyError) as e:
        _fail(str(e), EXIT_INVALID, json_output, e.code)


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
        console.print(print_settings_json(settings), markup=False, highlight=False, soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Releases directory:  {settings.releases_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Keep work dir:       {settings.keep_work_dir}")
    console.print(f"  Publish URL:         {settings.publish_url or '(releases directory)'}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Job timeout:         {settings.job_timeout}")
    console.print(f"  Termination grace:   {settings.termination_grace}")
    console.print(f"  Cache lock timeout:  {settings.cache_lock_timeout}")
    console.print(f"  Publish lock:        {settings.publish_lock_timeout}")
    console.print()
    console.print("[bold]Signing:[/bold]")
    console.print(f"  Key file:            {settings.signing_key_file or '(not configured)'}")
    console.print(f"  Key alias:           {settings.signing_key_alias or '(not configured)'}")


matrix_app = typer.Typer(help="Inspect variant matrices")
app.add_typer(matrix_app, name="matrix")


@matrix_app.command("show")
def matrix_show(
    matrix_path: Annotated[Path, typer.Argument(help="Matrix file (YAML or JSON)")],
    select: Annotated[
        list[str] | None,
        typer.Option("--select", "-s", help="Variant name pattern (can be repeated)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Resolve a matrix and list its variants."""
    from variant_release.matrix.resolver import (
        InvalidMatrixError,
        VariantSelectionError,
        resolve_matrix,
        select_variants,
    )

    matrix, _ = _load_matrix(matrix_path, json_output)
    try:
        variants = select_variants(resolve_matrix(matrix), select)
    except (InvalidMatrixError, VariantSelectionError) as e:
        _fail(str(e), EXIT_INVALID, json_output, e.code)

    if json_output:
        _print_json([v.to_dict() for v in variants])
        return

    console.print(f"[bold]{matrix.project}: {len(variants)} variant(s)[/bold]")
    console.print()
    for v in variants:
        marker = "[green]required[/green]" if v.required else "[yellow]optional[/yellow]"
        console.print(f"  [bold]{v.name}[/bold] ({marker})")
        console.print(f"    Outputs: {', '.join(v.outputs)}", markup=False)
        if v.flags:
            flags = ", ".join(f"{k}={val}" for k, val in v.flags)
            console.print(f"    Flags: {flags}", markup=False)
        if v.tags:
            console.print(f"    Tags: {', '.join(v.tags)}", markup=False)


@app.command()
def build(
    matrix_path: Annotated[Path, typer.Argument(help="Matrix file (YAML or JSON)")],
    select: Annotated[
        list[str] | None,
        typer.Option("--select", "-s", help="Variant name pattern (can be repeated)"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, max=64, help="Maximum concurrent builds"),
    ] = None,
    timeout: Annotated[
        int | None,
        typer.Option("--timeout", "-t", min=1, help="Per-job deadline in seconds"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build variants without publishing.

    Artifacts are left in the run's work directory.
    """
    from variant_release.matrix.resolver import VariantSelectionError
    from variant_release.types import AggregateStatus

    settings = _settings_with(jobs=jobs, timeout=timeout, keep_work_dir=True)
    pipeline = _create_pipeline(matrix_path, settings, json_output)

    if not json_output:
        console.print(f"[blue]Building {pipeline.matrix.project} (run {pipeline.run_id})...[/blue]")
    try:
        result = pipeline.build(select, on_job_finished=None if json_output else _print_job)
    except VariantSelectionError as e:
        _fail(str(e), EXIT_INVALID, json_output, e.code)

    if json_output:
        _print_json({**result.to_dict(), "run_dir": str(pipeline.run_dir)})
    else:
        succeeded = len(result.jobs) - len(result.failed_variants)
        console.print()
        console.print(f"[bold]Build {result.status.value}:[/bold] {succeeded}/{len(result.jobs)} succeeded")
        console.print(f"  Artifacts: {pipeline.run_dir}", markup=False)

    if result.status == AggregateStatus.PARTIAL_FAILURE:
        raise typer.Exit(code=EXIT_PARTIAL)
    if result.status == AggregateStatus.TOTAL_FAILURE:
        raise typer.Exit(code=EXIT_TOTAL)


@app.command()
def release(
    matrix_path: Annotated[Path, typer.Argument(help="Matrix file (YAML or JSON)")],
    version: Annotated[str, typer.Argument(help="Release version tag")],
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, max=64, help="Maximum concurrent builds"),
    ] = None,
    timeout: Annotated[
        int | None,
        typer.Option("--timeout", "-t", min=1, help="Per-job deadline in seconds"),
    ] = None,
    keep_work_dir: Annotated[
        bool,
        typer.Option("--keep-work-dir", help="Keep job workspaces after publishing"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build every variant and publish a release.

    Re-running a release with identical inputs is a no-op. Publishing
    different content under an existing version is refused.
    """
    from variant_release.db import create_all_tables, get_engine, get_session_factory
    from variant_release.releases.manifest import InvalidVersionError, validate_version
    from variant_release.releases.publisher import (
        PublishError,
        ReleasePublisher,
        VersionConflictError,
    )
    from variant_release.releases.sinks import SinkError, create_sink
    from variant_release.types import AggregateStatus

    try:
        validate_version(version)
    except InvalidVersionError as e:
        _fail(str(e), EXIT_INVALID, json_output, e.code)

    settings = _settings_with(jobs=jobs, timeout=timeout, keep_work_dir=keep_work_dir)
    pipeline = _create_pipeline(matrix_path, settings, json_output)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    publisher = ReleasePublisher(
        create_sink(settings),
        session_factory=get_session_factory(engine),
        lock_dir=settings.cache_dir / ".locks",
        lock_timeout=settings.publish_lock_timeout,
    )

    if not json_output:
        console.print(f"[blue]Releasing {pipeline.matrix.project} {version}...[/blue]")
    try:
        report = pipeline.release(
            version, publisher, on_job_finished=None if json_output else _print_job
        )
    except (SinkError, PublishError) as e:
        _fail(f"Publication failed: {e}", EXIT_PUBLISH, json_output, e.code)

    if json_output:
        _print_json(report.to_dict())
    else:
        console.print()
        if report.outcome is not None:
            manifest = report.outcome.manifest
            console.print(
                f"[bold]Release {version} {report.outcome.status.value}[/bold] "
                f"({manifest.status.value}, {len(manifest.entries)} artifacts)"
            )
            for omitted in manifest.omitted:
                console.print(f"  [yellow]Omitted {omitted.variant} ({omitted.state})[/yellow]")
        elif isinstance(report.error, VersionConflictError):
            console.print(
                f"[red]Version {version} already published with different content[/red]"
            )
            console.print(f"  Artifacts kept in {report.run_dir}", markup=False)
        elif report.error is not None:
            console.print(f"[red]Release blocked: {report.error}[/red]")

    if isinstance(report.error, VersionConflictError):
        raise typer.Exit(code=EXIT_CONFLICT)
    if report.error is not None:
        total = report.result.status == AggregateStatus.TOTAL_FAILURE
        raise typer.Exit(code=EXIT_TOTAL if total else EXIT_PARTIAL)


@app.command()
def verify(
    matrix_path: Annotated[
        Path | None,
        typer.Argument(help="Matrix file to check toolchain and inputs for"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run pre-flight environment checks."""
    from variant_release.environment import all_passed, run_environment_checks

    settings = get_settings()
    matrix = source_dir = None
    if matrix_path is not None:
        matrix, source_dir = _load_matrix(matrix_path, json_output)

    checks = run_environment_checks(settings, matrix, source_dir)
    passed = all_passed(checks)

    if json_output:
        _print_json({"passed": passed, "checks": [c.to_dict() for c in checks]})
    else:
        for check in checks:
            mark = "[green]✓[/green]" if check.passed else "[red]✗[/red]"
            console.print(f"  {mark} {check.name}: ", end="")
            console.print(check.message, markup=False, highlight=False)

    if not passed:
        raise typer.Exit(code=EXIT_ENVIRONMENT)


releases_app = typer.Typer(help="Inspect published releases")
app.add_typer(releases_app, name="releases")


@releases_app.command("list")
def releases_list(
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Filter by project"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded releases."""
    from variant_release.db import create_all_tables, get_engine, get_session_factory
    from variant_release.releases.registry import list_releases

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        releases = list_releases(session, project=project)

        if json_output:
            _print_json(
                [
                    {
                        "version": r.version,
                        "project": r.project,
                        "status": r.status,
                        "fingerprint": r.fingerprint,
                        "sink": r.sink,
                        "published_at": r.published_at.isoformat() if r.published_at else None,
                        "artifact_count": len(r.artifacts),
                    }
                    for r in releases
                ]
            )
            return

        if not releases:
            console.print("[yellow]No releases found[/yellow]")
            return

        console.print(f"[bold]Found {len(releases)} release(s):[/bold]")
        console.print()
        for r in releases:
            color = "green" if r.status == "complete" else "yellow"
            console.print(f"  [{color}]{r.project} {r.version}[/{color}] ({r.status})")
            console.print(f"    Artifacts: {len(r.artifacts)}")
            console.print(f"    Sink: {r.sink}", markup=False)
            if r.published_at:
                console.print(f"    Published: {r.published_at.isoformat()}")


def _find_manifest(version: str, settings: Settings) -> Any:
    from variant_release.db import create_all_tables, get_engine, get_session
    from variant_release.db import get_session_factory
    from variant_release.releases.registry import get_release_or_none, release_to_manifest
    from variant_release.releases.sinks import DirectorySink

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    with get_session(get_session_factory(engine)) as session:
        record = get_release_or_none(session, version)
        if record is not None:
            return release_to_manifest(record)
    return DirectorySink(settings.releases_dir).fetch_manifest(version)


@releases_app.command("show")
def releases_show(
    version: Annotated[str, typer.Argument(help="Release version tag")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the manifest of a release."""
    settings = get_settings()
    manifest = _find_manifest(version, settings)
    if manifest is None:
        _fail(f"Release not found: {version}", EXIT_INVALID, json_output, "release_not_found")

    if json_output:
        _print_json(manifest.model_dump(mode="json"))
        return

    console.print(f"[bold]{manifest.project} {manifest.version}[/bold] ({manifest.status.value})")
    if manifest.published_at:
        console.print(f"  Published: {manifest.published_at.isoformat()}")
    console.print()
    for entry in manifest.entries:
        signed = f"signed ({entry.signing_alias or entry.signing_key})" if entry.signed else "unsigned"
        console.print(f"  {entry.path}", markup=False)
        console.print(f"    sha256: {entry.sha256}")
        console.print(f"    size: {entry.size_bytes} bytes, {signed}", markup=False)
    for omitted in manifest.omitted:
        console.print(f"  [yellow]Omitted {omitted.variant} ({omitted.state})[/yellow]")


@releases_app.command("check")
def releases_check(
    version: Annotated[str, typer.Argument(help="Release version tag")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Re-hash the payloads of a release in the releases directory."""
    from variant_release.releases.manifest import verify_release_payloads
    from variant_release.releases.sinks import DirectorySink

    settings = get_settings()
    sink = DirectorySink(settings.releases_dir)
    manifest = _find_manifest(version, settings)
    if manifest is None:
        _fail(f"Release not found: {version}", EXIT_INVALID, json_output, "release_not_found")

    result = verify_release_payloads(manifest, sink.release_dir(version))
    if json_output:
        _print_json({"version": version, **result.to_dict()})
    else:
        if result.is_valid:
            console.print(f"[green]✓ {version}: {result.checked_count} payload(s) verified[/green]")
        else:
            console.print(f"[red]✗ {version}: verification failed[/red]")
            for path in result.mismatches:
                console.print(f"    Mismatch: {path}", markup=False)
            for path in result.missing_files:
                console.print(f"    Missing: {path}", markup=False)

    if not result.is_valid:
        raise typer.Exit(code=EXIT_PARTIAL)


cache_app = typer.Typer(help="Manage the build cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cache entries."""
    from variant_release.builds.cache import CacheManager

    settings = get_settings()
    entries = CacheManager(settings.cache_dir).entries()

    if json_output:
        _print_json([e.to_dict() for e in entries])
        return

    if not entries:
        console.print("[yellow]Cache is empty[/yellow]")
        return

    total = sum(e.size_bytes for e in entries)
    console.print(f"[bold]{len(entries)} cache entr{'y' if len(entries) == 1 else 'ies'}, {total} bytes:[/bold]")
    for e in entries:
        last_used = e.last_used_at.isoformat() if e.last_used_at else "N/A"
        console.print(f"  {e.key[:23]}...  {e.size_bytes:>12} bytes  last used {last_used}")


@cache_app.command("prune")
def cache_prune(
    max_age_days: Annotated[
        float | None,
        typer.Option("--max-age-days", help="Remove entries unused for this many days"),
    ] = None,
    max_size_mb: Annotated[
        float | None,
        typer.Option("--max-size-mb", help="Evict least recently used entries above this size"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Evict cache entries by age and total size."""
    from variant_release.builds.cache import CacheManager

    if max_age_days is None and max_size_mb is None:
        _fail(
            "Specify --max-age-days and/or --max-size-mb",
            EXIT_INVALID,
            json_output,
            "missing_policy",
        )

    settings = get_settings()
    removed = CacheManager(settings.cache_dir).prune(
        max_age=timedelta(days=max_age_days) if max_age_days is not None else None,
        max_bytes=int(max_size_mb * 1024 * 1024) if max_size_mb is not None else None,
    )

    if json_output:
        _print_json({"removed": removed})
    else:
        console.print(f"Removed {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")


if __name__ == "__main__":
    app()
