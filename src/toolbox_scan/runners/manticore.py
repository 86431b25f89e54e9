"""Runner for the Manticore symbolic-execution engine."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from ..exceptions import ReportParseError
from ..models import Finding, Severity, SourceLocation, ToolName
from .base import ToolRunner

logger = logging.getLogger(__name__)

FINDINGS_FILE = "global.findings"

# "- INVALID instruction -" starts a block
_HEADER_RE = re.compile(r"^- (?P<title>.+?) -\s*$", re.MULTILINE)
_SOURCE_RE = re.compile(r"^\s*(?P<line>\d+)\s{2,}", re.MULTILINE)


class ManticoreRunner(ToolRunner):
    """Manticore writes its results into a workspace directory."""

    name = ToolName.MANTICORE
    report_name = "manticore"

    def report_flags(self, report_path: str) -> list[str]:
        return ["--workspace", report_path]

    def prepare_report(self, report_path: Path | None) -> None:
        if report_path is None:
            return
        stale = report_path / FINDINGS_FILE
        if stale.is_file():
            stale.unlink()

    def parse_report(self, report_path: Path | None, stdout: str) -> list[Finding] | None:
        if report_path is None:
            return None
        findings_file = report_path / FINDINGS_FILE
        if not findings_file.is_file():
            raise ReportParseError(f"{findings_file} was not written")
        try:
            text = findings_file.read_text(errors="replace")
        except OSError as exc:
            raise ReportParseError(f"cannot read {findings_file}: {exc}") from exc

        headers = list(_HEADER_RE.finditer(text))
        if text.strip() and not headers:
            raise ReportParseError(f"unrecognised layout in {findings_file}")

        findings: list[Finding] = []
        for i, h in enumerate(headers):
            end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
            body = text[h.end():end].strip("\n")
            title = h.group("title").strip()
            findings.append(Finding(
                tool=ToolName.MANTICORE,
                title=title,
                detector=f"manticore:{_slug(title)}",
                severity=Severity.MEDIUM,
                description=body.strip(),
                locations=_locations(body),
            ))
        logger.debug("manticore: %d findings in %s", len(findings), findings_file)
        return findings


def _slug(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-") or "finding"


def _locations(body: str) -> list[SourceLocation]:
    # Snippets look like "  12  balance -= amount;" under a "Snippet:" line
    m = _SOURCE_RE.search(body)
    if not m:
        return []
    line = int(m.group("line"))
    return [SourceLocation(file="", line_start=line, line_end=line)]
