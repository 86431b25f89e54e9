"""Runner for Trail of Bits Slither static analyser."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ..exceptions import ReportParseError
from ..models import (
    Confidence,
    Finding,
    Severity,
    SourceLocation,
    ToolName,
)
from .base import ToolRunner

logger = logging.getLogger(__name__)

# Slither impact/confidence strings → our enums
_SEV_MAP: dict[str, Severity] = {
    "High": Severity.HIGH,
    "Medium": Severity.MEDIUM,
    "Low": Severity.LOW,
    "Informational": Severity.INFORMATIONAL,
    "Optimization": Severity.INFORMATIONAL,
}
_CONF_MAP: dict[str, Confidence] = {
    "High": Confidence.HIGH,
    "Medium": Confidence.MEDIUM,
    "Low": Confidence.LOW,
}

# Detectors whose presence almost always warrants Critical
_CRITICAL_DETECTORS = frozenset({
    "suicidal",
    "unprotected-upgrade",
    "arbitrary-send-erc20",
    "arbitrary-send-eth",
    "controlled-delegatecall",
    "delegatecall-loop",
    "msg-value-loop",
    "reentrancy-eth",
    "unchecked-transfer",
})


class SlitherRunner(ToolRunner):
    name = ToolName.SLITHER
    report_name = "slither.json"

    def report_flags(self, report_path: str) -> list[str]:
        return ["--json", report_path]

    # Slither refuses to overwrite an existing --json file, so the base
    # class removes the stale one before launch.

    def parse_report(self, report_path: Path | None, stdout: str) -> list[Finding] | None:
        if report_path is None:
            return None
        try:
            raw = report_path.read_text()
        except OSError as exc:
            raise ReportParseError(f"cannot read {report_path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ReportParseError(f"malformed slither JSON in {report_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ReportParseError(f"unexpected slither JSON layout in {report_path}")

        if data.get("success") is False and data.get("error"):
            logger.warning("slither reported an error: %s", str(data["error"])[:500])

        results = data.get("results") or {}
        detectors: list[dict] = results.get("detectors", []) if isinstance(results, dict) else []
        return [self._to_finding(det) for det in detectors if isinstance(det, dict)]

    # -----------------------------------------------------------------------

    @staticmethod
    def _to_finding(det: dict) -> Finding:
        detector_name = det.get("check", "unknown")
        severity = _SEV_MAP.get(det.get("impact", "Informational"), Severity.INFORMATIONAL)
        # Promote to critical for known dangerous detectors
        if detector_name in _CRITICAL_DETECTORS and severity.rank > Severity.CRITICAL.rank:
            severity = Severity.CRITICAL

        return Finding(
            tool=ToolName.SLITHER,
            title=det.get("title", detector_name),
            detector=f"slither:{detector_name}",
            severity=severity,
            confidence=_CONF_MAP.get(det.get("confidence", "Medium"), Confidence.MEDIUM),
            description=(det.get("description") or "").strip(),
            locations=SlitherRunner._extract_locations(det.get("elements", [])),
        )

    @staticmethod
    def _extract_locations(elements: list[dict]) -> list[SourceLocation]:
        locs: list[SourceLocation] = []
        for el in elements:
            src = el.get("source_mapping", {})
            filename = src.get("filename_relative") or src.get("filename_short", "")
            lines = src.get("lines", [])
            locs.append(SourceLocation(
                file=filename,
                contract=el.get("type_specific_fields", {}).get("parent", {}).get("name"),
                function=(
                    el.get("name")
                    if el.get("type") in ("function", "modifier")
                    else None
                ),
                line_start=min(lines) if lines else None,
                line_end=max(lines) if lines else None,
            ))
        return locs
