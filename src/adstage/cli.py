"""Typer-powered command line interface for ``adstage``."""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, DirectoryConfig, load_config
from .errors import ProvisioningError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .naming import generate_name
from .providers import DirectoryError, LdapDirectoryClient
from .provisioning import ProvisioningPipeline, ProvisioningResult, ResultStatus
from .records import RecordsError, read_requests, write_results
from .retry import RetryPolicy

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to adstage's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Pre-stage computer accounts in Active Directory.

        Reads a CSV of site ids and asset tags, creates one computer object per
        row, adds it to the listed groups and grants the join principal full
        control over that object.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")

_STATUS_STYLES = {
    ResultStatus.SUCCESS: "[green]success[/green]",
    ResultStatus.PARTIAL: "[yellow]partial[/yellow]",
    ResultStatus.FAILED: "[red]failed[/red]",
    ResultStatus.PLANNED: "[cyan]planned[/cyan]",
}


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def _build_client(config: DirectoryConfig) -> LdapDirectoryClient:
    return LdapDirectoryClient(config)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    overrides: Mapping[str, object] | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the adstage version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug detail (lookups, retries, LDAP results) to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        console.print(f"adstage {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _render_results(results: Sequence[ProvisioningResult], *, dry_run: bool) -> None:
    title = "Provisioning plan (dry run)" if dry_run else "Provisioning results"
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Row", justify="right")
    table.add_column("Computer", style="bold")
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Groups")
    table.add_column("Permission")
    table.add_column("Error", overflow="fold")

    for result in results:
        added = sum(1 for outcome in result.groups if outcome.added)
        failed = result.failed_groups
        groups = f"{added} added" if result.groups else "-"
        if failed:
            groups += f", [red]failed: {', '.join(failed)}[/red]"
        table.add_row(
            str(result.request.row or ""),
            result.name or "-",
            _STATUS_STYLES[result.status],
            result.stage.value,
            groups,
            result.permission.value,
            result.error or "",
        )
    console.print(table)


def _report_progress(result: ProvisioningResult) -> None:
    detail = f" -> {result.name}" if result.name else ""
    console.print(f"{result.request.label}{detail}: {_STATUS_STYLES[result.status]}")


def _summarise(results: Sequence[ProvisioningResult]) -> dict[str, int]:
    summary = {status.value: 0 for status in ResultStatus}
    for result in results:
        summary[result.status.value] += 1
    summary["total"] = len(results)
    return summary


@app.command()
def provision(
    ctx: typer.Context,
    input_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="CSV file with SiteId, AssetTag and optional ContainerPath/Groups/JoinPrincipal.",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write per-row results to this file (.json for JSON, otherwise CSV).",
    ),
    principal: str | None = typer.Option(
        None,
        "--principal",
        help="Join principal for rows that do not name one.",
    ),
    container: str | None = typer.Option(
        None,
        "--container",
        help="Container DN for rows that do not name one.",
    ),
    attempts: int | None = typer.Option(
        None,
        "--attempts",
        min=1,
        help="Lookup attempts while waiting for replication.",
    ),
    delay: float | None = typer.Option(
        None,
        "--delay",
        min=0.0,
        help="Seconds between lookup attempts.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Generate names and show the plan without touching the directory.",
    ),
    ask_password: bool = typer.Option(
        False,
        "--ask-password",
        help="Prompt for the bind password instead of reading it from config.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit results as JSON instead of a table.",
    ),
) -> None:
    """Create computer objects for every row of INPUT_FILE."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    args = {
        "input": input_file,
        "output": output,
        "principal": principal,
        "container": container,
        "attempts": attempts,
        "delay": delay,
        "dry_run": dry_run,
    }

    with runtime.logger.operation(
        "provision",
        args=args,
        target={"kind": "directory", "server": config.directory.server},
    ) as op:
        defaults = config.defaults
        if principal is not None or container is not None:
            defaults = replace(
                defaults,
                container_path=container or defaults.container_path,
                join_principal=principal or defaults.join_principal,
            )
        try:
            requests = read_requests(input_file, defaults=defaults)
        except RecordsError as exc:
            _command_error(op, str(exc))
        op.info("input", f"{len(requests)} record(s) from {input_file}")

        try:
            retry = RetryPolicy(
                attempts=attempts if attempts is not None else config.lookup.attempts,
                delay=delay if delay is not None else config.lookup.delay,
                backoff=config.lookup.backoff,
            )
        except ValueError as exc:
            _command_error(op, f"Invalid retry settings: {exc}")

        pipeline = ProvisioningPipeline(
            client=None,
            prefix=config.naming.prefix,
            max_length=config.naming.max_length,
            retry=retry,
            op=op,
            dry_run=dry_run,
        )

        on_result = None if json_output else _report_progress
        if dry_run:
            results = pipeline.run(requests, on_result=on_result)
        else:
            directory = config.directory
            if ask_password:
                password = typer.prompt(
                    f"Password for {directory.bind_user or 'bind user'}",
                    hide_input=True,
                )
                directory = replace(directory, bind_password=password)
            try:
                with _build_client(directory) as client:
                    pipeline.client = client
                    results = pipeline.run(requests, on_result=on_result)
            except DirectoryError as exc:
                _command_error(op, f"Directory unavailable: {exc}", rc=ExitCode.ENVIRONMENT)

        if output is not None:
            try:
                write_results(output, results)
            except RecordsError as exc:
                _command_error(op, str(exc))
            op.info("output", str(output))

        if json_output:
            console.print_json(data={"results": [result.to_dict() for result in results]})
        else:
            _render_results(results, dry_run=dry_run)

        summary = _summarise(results)
        failed = [result for result in results if result.status is ResultStatus.FAILED]
        partial = [result for result in results if result.status is ResultStatus.PARTIAL]
        if failed:
            console.print(f"[red]{len(failed)} of {len(results)} record(s) failed.[/red]")
            op.error(
                "One or more records failed.",
                errors=[f"{result.request.label}: {result.error}" for result in failed],
                rc=int(ExitCode.DIRECTORY),
                context=summary,
            )
            raise typer.Exit(code=ExitCode.DIRECTORY)
        if partial:
            console.print(
                f"[yellow]{len(partial)} record(s) completed with group failures.[/yellow]"
            )
            op.warning(
                "Completed with group membership failures.",
                warnings=[
                    f"{result.name}: {', '.join(result.failed_groups)}" for result in partial
                ],
                changed=len(results) - len(failed),
                context=summary,
            )
            return
        op.success(
            "Dry run complete." if dry_run else "Provisioning complete.",
            changed=0 if dry_run else len(results),
            context=summary,
        )


@app.command()
def name(
    ctx: typer.Context,
    site_id: str = typer.Argument(..., help="Site identifier."),
    asset_tag: str = typer.Argument(..., help="Asset tag; its tail fills the remaining length."),
    prefix: str | None = typer.Option(None, "--prefix", help="Override the naming prefix."),
    max_length: int | None = typer.Option(
        None,
        "--max-length",
        min=1,
        help="Override the maximum name length.",
    ),
) -> None:
    """Print the computer name generated for SITE_ID and ASSET_TAG."""
    runtime = _get_runtime(ctx)
    naming = runtime.config.naming
    with runtime.logger.operation(
        "name",
        args={"site_id": site_id, "asset_tag": asset_tag, "prefix": prefix},
        target={"kind": "naming"},
    ) as op:
        try:
            generated = generate_name(
                site_id,
                asset_tag,
                prefix=naming.prefix if prefix is None else prefix,
                max_length=naming.max_length if max_length is None else max_length,
            )
        except ProvisioningError as exc:
            _command_error(op, str(exc))
        console.print(generated)
        op.success("Generated name.", changed=0, context={"name": generated})


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    table.add_row(f"{key}.{sub_key}", str(sub_value))
            else:
                table.add_row(key, str(value))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["app"]
