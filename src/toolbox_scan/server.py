"""toolbox-scan MCP server: run the security toolbox from an agent.

Exposes the following MCP tools:

  scan               Run the selected tools and return a Markdown report
  scan_json          Same, but return the ScanReport as JSON
  list_tools         Configured tools and whether their executables resolve
  regenerate_report  Re-render the last scan as Markdown
  get_scan_json      Raw JSON of the last scan
"""

from __future__ import annotations

import json
import logging

from mcp.server.fastmcp import FastMCP

from .config import load_config
from .exceptions import ConfigurationError
from .models import ScanReport, ToolName
from .orchestrator import ScanOrchestrator, make_request
from .report import generate_report, render_json
from .runners.base import resolve_executable

logger = logging.getLogger("toolbox_scan")

# ---------------------------------------------------------------------------
# MCP server instance
# ---------------------------------------------------------------------------
mcp = FastMCP(
    "toolbox-scan",
    instructions=(
        "Smart-contract security toolbox: runs Echidna (fuzzing), Slither (static "
        "analysis) and Manticore (symbolic execution) over a Solidity project and "
        "reports a per-tool pass/fail summary with parsed findings."
    ),
)

# Shared state
_last_report: ScanReport | None = None
_orchestrator = ScanOrchestrator(load_config())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _run(
    project_path: str,
    tools: list[str],
    exclude_paths: list[str],
    parallel: bool,
    timeout: float | None,
    extra_args: dict[ToolName, list[str]],
) -> ScanReport:
    global _last_report

    request = make_request(
        project_path,
        tools,
        exclude=tuple(exclude_paths),
        overrides={tool: tuple(args) for tool, args in extra_args.items() if args},
        parallel=parallel,
        timeout=timeout,
    )
    report = await _orchestrator.run(request)
    _last_report = report
    return report


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def scan(
    project_path: str = "/share",
    tools: list[str] = ["echidna", "slither", "manticore"],
    exclude_paths: list[str] = [],
    parallel: bool = False,
    timeout: float | None = None,
    extra_slither_args: list[str] = [],
    extra_echidna_args: list[str] = [],
    extra_manticore_args: list[str] = [],
) -> str:
    """Run the security toolbox over a project and return a Markdown report.

    Args:
        project_path: Contract file or project directory (default: /share, the toolbox image mount).
        tools: Any of "echidna", "slither", "manticore", in the order to run them.
        exclude_paths: Patterns forwarded to tools that support excludes (Slither).
        parallel: Run the tools concurrently.
        timeout: Per-tool timeout in seconds.
        extra_slither_args: Additional CLI args forwarded to Slither.
        extra_echidna_args: Additional CLI args forwarded to Echidna.
        extra_manticore_args: Additional CLI args forwarded to Manticore.
    """
    try:
        report = await _run(project_path, tools, exclude_paths, parallel, timeout, {
            ToolName.SLITHER: extra_slither_args,
            ToolName.ECHIDNA: extra_echidna_args,
            ToolName.MANTICORE: extra_manticore_args,
        })
    except ConfigurationError as exc:
        return f"Scan not started: {exc}"
    return generate_report(report)


@mcp.tool()
async def scan_json(
    project_path: str = "/share",
    tools: list[str] = ["echidna", "slither", "manticore"],
    exclude_paths: list[str] = [],
    parallel: bool = False,
    timeout: float | None = None,
    extra_slither_args: list[str] = [],
    extra_echidna_args: list[str] = [],
    extra_manticore_args: list[str] = [],
) -> str:
    """Same as ``scan`` but returns the full ScanReport as JSON."""
    try:
        report = await _run(project_path, tools, exclude_paths, parallel, timeout, {
            ToolName.SLITHER: extra_slither_args,
            ToolName.ECHIDNA: extra_echidna_args,
            ToolName.MANTICORE: extra_manticore_args,
        })
    except ConfigurationError as exc:
        return json.dumps({"error": str(exc)})
    return render_json(report)


@mcp.tool()
async def list_tools() -> str:
    """List the configured tools, their binaries and exit-code tables."""
    out = []
    for name, spec in _orchestrator.config.tools.items():
        out.append({
            "name": name.value,
            "binary": spec.binary,
            "resolved": resolve_executable(spec.binary),
            "default_flags": list(spec.default_flags),
            "supports_exclude": spec.supports_exclude,
            "exit_codes": {str(k): v.value for k, v in spec.exit_codes.items()},
        })
    return json.dumps(out, indent=2)


@mcp.tool()
async def regenerate_report() -> str:
    """Re-render the Markdown report from the last scan."""
    if _last_report is None:
        return "No scan cached. Run `scan` first."
    return generate_report(_last_report)


@mcp.tool()
async def get_scan_json() -> str:
    """Return the last scan as raw JSON."""
    if _last_report is None:
        return json.dumps({"error": "No scan cached. Run `scan` first."})
    return render_json(_last_report)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s  %(name)s  %(message)s")
    logger.info("Starting MCP server on stdio")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
