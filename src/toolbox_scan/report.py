"""Render a ScanReport as Markdown or JSON and write report files."""

from __future__ import annotations

import logging
from pathlib import Path

from .models import Finding, ScanReport, ScanResult, ScanStatus, Severity

logger = logging.getLogger(__name__)

_STATUS_LABEL: dict[ScanStatus, str] = {
    ScanStatus.PASSED: "✅ passed",
    ScanStatus.FAILED: "❌ failed",
    ScanStatus.TOOL_ERROR: "💥 tool error",
    ScanStatus.TIMEOUT: "⏱ timeout",
    ScanStatus.CANCELLED: "⛔ cancelled",
}

_MAX_OUTPUT_IN_REPORT = 2000


def status_label(status: ScanStatus) -> str:
    return _STATUS_LABEL[status]


def findings_count(result: ScanResult) -> str:
    return "-" if result.findings is None else str(len(result.findings))


def render_json(report: ScanReport) -> str:
    return report.model_dump_json(indent=2)


def generate_report(report: ScanReport) -> str:
    """Markdown report: summary table, then one section per tool."""
    lines: list[str] = [
        "# Security toolbox scan",
        "",
        f"- **Target:** `{report.target}`",
        f"- **Started:** {report.started_at}",
        f"- **Solidity files:** {report.sources_scanned}",
        f"- **Overall:** {status_label(report.overall)}",
        "",
        "## Summary",
        "",
        "| Tool | Status | Exit code | Duration | Findings |",
        "|---|---|---|---|---|",
    ]
    for r in report.results:
        exit_code = "-" if r.exit_code is None else str(r.exit_code)
        lines.append(
            f"| {r.tool.value} | {status_label(r.status)} | {exit_code} "
            f"| {r.duration:.1f}s | {findings_count(r)} |"
        )

    for r in report.results:
        lines += ["", f"## {r.tool.value}", ""]
        if r.command:
            lines += ["```", " ".join(r.command), "```", ""]
        if r.error:
            lines += [f"**Error:** {r.error}", ""]
        if r.report_error:
            lines += [f"**Report not attached:** {r.report_error}", ""]
        if r.findings:
            lines += _render_findings(r.findings)
        elif r.findings is not None:
            lines += ["No findings reported.", ""]
        elif r.status != ScanStatus.PASSED and r.stdout.strip():
            tail = r.stdout.strip()[-_MAX_OUTPUT_IN_REPORT:]
            lines += ["<details><summary>Output (tail)</summary>", "", "```", tail, "```", "", "</details>", ""]

    return "\n".join(lines).rstrip() + "\n"


def _render_findings(findings: list[Finding]) -> list[str]:
    lines: list[str] = []
    for sev in sorted(Severity, key=lambda s: s.rank):
        group = [f for f in findings if f.severity == sev]
        if not group:
            continue
        lines += [f"### {sev.value} ({len(group)})", ""]
        for f in group:
            lines.append(f"- **{f.title}** (`{f.detector}`, confidence {f.confidence.value})")
            for loc in f.locations:
                where = loc.file or "?"
                if loc.line_start is not None:
                    where += f":{loc.line_start}"
                lines.append(f"  - `{where}`")
            if f.description:
                first = f.description.strip().splitlines()[0]
                lines.append(f"  - {first}")
        lines.append("")
    return lines


def write_report(path: str | Path, content: str) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(content)
    logger.info("Wrote %s", out)
    return out
