"""toolbox-scan CLI: run Echidna, Slither and Manticore over a contracts directory."""

import asyncio
import logging
import shlex
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import ScanConfig, load_config, parse_tool_names, split_csv
from .exceptions import ConfigurationError
from .models import ContainerSettings, ScanReport, ScanRequest, ScanStatus, ToolName
from .orchestrator import ScanOrchestrator
from .report import findings_count, generate_report, render_json, write_report
from .runners.base import resolve_executable

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_TIMEOUT = 3

app = typer.Typer(
    name="toolbox-scan",
    help="Run the eth-security-toolbox analysers (Echidna, Slither, Manticore) as one pipeline.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    ScanStatus.PASSED: "[green]passed[/green]",
    ScanStatus.FAILED: "[red]failed[/red]",
    ScanStatus.TOOL_ERROR: "[bold red]tool error[/bold red]",
    ScanStatus.TIMEOUT: "[yellow]timeout[/yellow]",
    ScanStatus.CANCELLED: "[dim]cancelled[/dim]",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Security toolbox scan orchestrator."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s  %(name)s  %(message)s",
    )


def _load(config_file: Optional[Path]) -> ScanConfig:
    try:
        return load_config(config_file)
    except ConfigurationError as exc:
        err_console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc


def _split_args(value: Optional[str], option: str) -> tuple[str, ...]:
    if not value:
        return ()
    try:
        return tuple(shlex.split(value))
    except ValueError as exc:
        raise ConfigurationError(f"{option}: {exc}") from exc


def exit_code_for(report: ScanReport, fail_on_timeout: bool = False) -> int:
    if fail_on_timeout and report.has_status(ScanStatus.TIMEOUT):
        return EXIT_TIMEOUT
    return EXIT_PASSED if report.passed else EXIT_FAILED


def print_summary(report: ScanReport) -> None:
    table = Table(title=f"Scan results: {report.target}", show_header=True)
    table.add_column("Tool", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Duration", justify="right")
    table.add_column("Findings", justify="right")
    table.add_column("Note", style="dim")

    for r in report.results:
        note = r.error or r.report_error or ""
        if len(note) > 60:
            note = note[:57] + "..."
        table.add_row(
            r.tool.value,
            _STATUS_STYLE[r.status],
            f"{r.duration:.1f}s",
            findings_count(r),
            note,
        )
    console.print(table)
    overall = "[bold green]PASSED[/bold green]" if report.passed else "[bold red]FAILED[/bold red]"
    console.print(f"Overall: {overall}")


async def _run_with_signals(orchestrator: ScanOrchestrator, request: ScanRequest) -> ScanReport:
    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        return await orchestrator.run(request)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@app.command()
def scan(
    path: Path = typer.Argument(..., help="Contract file or directory to scan"),
    tools: str = typer.Option(
        "echidna,slither,manticore", "--tools", "-t",
        help="Comma-separated tools: echidna, slither, manticore",
    ),
    exclude_path: Optional[str] = typer.Option(
        None, "--exclude-path", help="Comma-separated patterns forwarded to tools that support excludes",
    ),
    parallel: bool = typer.Option(False, "--parallel", help="Run the tools concurrently"),
    max_workers: Optional[int] = typer.Option(
        None, "--max-workers", help="Concurrent tools in --parallel mode (default: all)",
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-tool timeout in seconds"),
    global_timeout: Optional[float] = typer.Option(
        None, "--global-timeout", help="Deadline for the whole run in seconds",
    ),
    json_out: Optional[Path] = typer.Option(None, "--json", help="Write the JSON report here"),
    markdown_out: Optional[Path] = typer.Option(None, "--markdown", help="Write a Markdown report here"),
    report_dir: Optional[Path] = typer.Option(
        None, "--report-dir", help="Keep per-tool report files here (default: a temporary directory removed after the run)",
    ),
    slither_args: Optional[str] = typer.Option(None, "--slither-args", help="Extra Slither flags"),
    echidna_args: Optional[str] = typer.Option(None, "--echidna-args", help="Extra Echidna flags"),
    manticore_args: Optional[str] = typer.Option(None, "--manticore-args", help="Extra Manticore flags"),
    fail_on_timeout: bool = typer.Option(
        False, "--fail-on-timeout", help="Stop on the first timeout and exit with code 3",
    ),
    stop_on_error: bool = typer.Option(
        False, "--stop-on-error", help="Stop remaining tools after a tool error",
    ),
    max_output: int = typer.Option(
        1024 * 1024, "--max-output", help="Bytes of stdout/stderr kept per tool",
    ),
    image: Optional[str] = typer.Option(
        None, "--image", help="Run tools inside this container image (e.g. trailofbits/eth-security-toolbox)",
    ),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML configuration file"),
) -> None:
    """Run the selected tools over PATH and print a summary."""
    config = _load(config_file)

    try:
        container = config.container
        if image:
            container = (container or ContainerSettings()).model_copy(update={"image": image})
        request = ScanRequest(
            target=path,
            tools=parse_tool_names(tools),
            exclude=tuple(split_csv(exclude_path)),
            overrides={
                ToolName.SLITHER: _split_args(slither_args, "--slither-args"),
                ToolName.ECHIDNA: _split_args(echidna_args, "--echidna-args"),
                ToolName.MANTICORE: _split_args(manticore_args, "--manticore-args"),
            },
            parallel=parallel,
            max_workers=max_workers,
            timeout=timeout,
            global_timeout=global_timeout,
            max_output_bytes=max_output,
            report_dir=report_dir,
            stop_on_timeout=fail_on_timeout,
            stop_on_error=stop_on_error,
            container=container,
        )
        orchestrator = ScanOrchestrator(config)
        report = asyncio.run(_run_with_signals(orchestrator, request))
    except ConfigurationError as exc:
        err_console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc

    print_summary(report)
    if json_out:
        write_report(json_out, render_json(report))
    if markdown_out:
        write_report(markdown_out, generate_report(report))

    raise typer.Exit(exit_code_for(report, fail_on_timeout))


@app.command("tools")
def list_tools(
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML configuration file"),
) -> None:
    """Show the configured tools and whether their executables can be found."""
    config = _load(config_file)
    table = Table(title="Configured tools", show_header=True)
    table.add_column("Tool", style="cyan")
    table.add_column("Binary")
    table.add_column("Resolved")
    table.add_column("Default flags", style="dim")
    table.add_column("Excludes")
    table.add_column("Exit codes", style="dim")

    for name, spec in config.tools.items():
        resolved = resolve_executable(spec.binary)
        table.add_row(
            name.value,
            spec.binary,
            resolved or "[red]not found[/red]",
            " ".join(spec.default_flags) or "-",
            spec.exclude_flag if spec.supports_exclude and spec.exclude_flag else "no",
            ", ".join(f"{code}={status.value}" for code, status in sorted(spec.exit_codes.items())),
        )
    console.print(table)
    if config.container:
        console.print(
            f"Container mode: {config.container.engine} image {config.container.image}"
        )


@app.command()
def serve() -> None:
    """Run the MCP server on stdio."""
    from .server import main as server_main

    server_main()


if __name__ == "__main__":
    app()
