"""Canonical data models shared across runners, the orchestrator, and reports."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ToolName(str, Enum):
    ECHIDNA = "echidna"
    SLITHER = "slither"
    MANTICORE = "manticore"


class ScanStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TOOL_ERROR = "tool_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFORMATIONAL = "Informational"

    @property
    def rank(self) -> int:
        return {
            Severity.CRITICAL: 0,
            Severity.HIGH: 1,
            Severity.MEDIUM: 2,
            Severity.LOW: 3,
            Severity.INFORMATIONAL: 4,
        }[self]


class Confidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


# ---------------------------------------------------------------------------
# Findings parsed from tool reports
# ---------------------------------------------------------------------------

class SourceLocation(BaseModel):
    """A location inside a Solidity file."""

    model_config = ConfigDict(frozen=True)

    file: str
    contract: str | None = None
    function: str | None = None
    line_start: int | None = None
    line_end: int | None = None


class Finding(BaseModel):
    """Single entry from a tool's report."""

    model_config = ConfigDict(frozen=True)

    tool: ToolName
    title: str
    detector: str
    severity: Severity
    confidence: Confidence = Confidence.MEDIUM
    description: str = ""
    locations: list[SourceLocation] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Configuration and requests
# ---------------------------------------------------------------------------

class ToolSpec(BaseModel):
    """How to invoke one external tool. Built once at start-up."""

    model_config = ConfigDict(frozen=True)

    name: ToolName
    binary: str
    default_flags: tuple[str, ...] = ()
    supports_exclude: bool = False
    exclude_flag: str | None = None
    # exit code -> status; codes missing from the table are tool errors
    exit_codes: dict[int, ScanStatus] = Field(
        default_factory=lambda: {0: ScanStatus.PASSED}
    )

    def status_for(self, exit_code: int) -> ScanStatus:
        if exit_code < 0:
            return ScanStatus.TOOL_ERROR
        return self.exit_codes.get(exit_code, ScanStatus.TOOL_ERROR)


class ContainerSettings(BaseModel):
    """Run tools inside a container image instead of on the host."""

    model_config = ConfigDict(frozen=True)

    image: str = "trailofbits/eth-security-toolbox"
    engine: str = "docker"
    workdir: str = "/share"
    report_mount: str = "/reports"
    extra_args: tuple[str, ...] = ()


class ScanRequest(BaseModel):
    """One invocation of the orchestrator. Read-only once created."""

    model_config = ConfigDict(frozen=True)

    target: Path
    tools: tuple[ToolName, ...]
    exclude: tuple[str, ...] = ()
    overrides: dict[ToolName, tuple[str, ...]] = Field(default_factory=dict)
    parallel: bool = False
    max_workers: int | None = None
    timeout: float | None = None  # per tool, None = unbounded
    global_timeout: float | None = None
    max_output_bytes: int = 1024 * 1024
    report_dir: Path | None = None
    stop_on_timeout: bool = False
    stop_on_error: bool = False
    container: ContainerSettings | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class ScanResult(BaseModel):
    """Outcome of running one tool once."""

    model_config = ConfigDict(frozen=True)

    tool: ToolName
    status: ScanStatus
    exit_code: int | None = None
    duration: float = 0.0
    command: list[str] = Field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    report_path: str | None = None
    findings: list[Finding] | None = None
    report_error: str | None = None
    error: str | None = None


class ScanReport(BaseModel):
    """Aggregated result of a full run, in request order."""

    model_config = ConfigDict(frozen=True)

    target: str
    started_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    results: list[ScanResult] = Field(default_factory=list)
    sources_scanned: int = 0

    # --- convenience helpers ------------------------------------------------

    @computed_field
    @property
    def overall(self) -> ScanStatus:
        if all(r.status == ScanStatus.PASSED for r in self.results):
            return ScanStatus.PASSED
        return ScanStatus.FAILED

    @property
    def passed(self) -> bool:
        return self.overall == ScanStatus.PASSED

    @computed_field
    @property
    def status_counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ScanStatus}
        for r in self.results:
            counts[r.status.value] += 1
        return counts

    def has_status(self, status: ScanStatus) -> bool:
        return any(r.status == status for r in self.results)

