"""Runner for the Echidna property-based fuzzer.

Echidna has no report file; with ``--format text`` it prints one line per
property or assertion, e.g.::

    echidna_balance_under_1000: failed!💥
      Call sequence:
        Token.transfer(0x10000,1001)
    echidna_owner_unchanged: passing

Failed entries become findings whose description is the call sequence.
"""

from __future__ import annotations

import re
from pathlib import Path

from ..exceptions import ReportParseError
from ..models import Confidence, Finding, Severity, ToolName
from .base import ToolRunner

_RESULT_RE = re.compile(
    r"^(?P<name>[^\s:][^:]*?(?:\([^)]*\))?):\s+(?P<state>passing|passed|failed!?|fuzzing|"
    r"max value|error)",
    re.MULTILINE,
)
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


class EchidnaRunner(ToolRunner):
    name = ToolName.ECHIDNA

    def parse_report(self, report_path: Path | None, stdout: str) -> list[Finding] | None:
        text = _ANSI_RE.sub("", stdout)
        matches = list(_RESULT_RE.finditer(text))
        if not matches:
            if text.strip():
                raise ReportParseError("no property results found in echidna output")
            return []

        findings: list[Finding] = []
        for i, m in enumerate(matches):
            if not m.group("state").startswith("failed"):
                continue
            end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
            body = text[m.end():end]
            # drop the remainder of the status line ("💥" etc.)
            body = body.split("\n", 1)[1] if "\n" in body else ""
            name = m.group("name").strip()
            findings.append(Finding(
                tool=ToolName.ECHIDNA,
                title=f"Property {name} failed",
                detector="echidna:property",
                severity=Severity.HIGH,
                confidence=Confidence.HIGH,
                description=_trim_trailer(body),
            ))
        return findings


def _trim_trailer(body: str) -> str:
    """Keep the indented call-sequence block; stop at the summary lines that follow."""
    lines: list[str] = []
    for line in body.splitlines():
        if line and not line[0].isspace():
            break
        lines.append(line.rstrip())
    return "\n".join(lines).strip("\n")
