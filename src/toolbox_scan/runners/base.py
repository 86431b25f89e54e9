"""Base runner: command composition and subprocess lifecycle for external tools."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..exceptions import ReportParseError, ToolNotFound
from ..flags import merge_flags
from ..models import Finding, ScanRequest, ScanResult, ScanStatus, ToolName, ToolSpec

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_TERMINATE_GRACE = 5.0  # seconds between SIGTERM and SIGKILL


@dataclass(frozen=True)
class Invocation:
    """A fully composed command, ready to launch."""

    tool: ToolName
    command: list[str]
    cwd: str | None = None
    timeout: float | None = None
    max_output_bytes: int = 1024 * 1024
    report_path: Path | None = None  # host-side location of the tool's report


@dataclass
class ExecOutcome:
    """What happened to the child process."""

    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    duration: float = 0.0


Launcher = Callable[[Invocation], Awaitable[ExecOutcome]]


# ---------------------------------------------------------------------------
# Subprocess helpers
# ---------------------------------------------------------------------------

def resolve_executable(binary: str) -> str | None:
    """Absolute path of *binary*, or None if it is not an executable on PATH / on disk."""
    if os.sep in binary:
        if os.path.isfile(binary) and os.access(binary, os.X_OK):
            return os.path.abspath(binary)
        return None
    return shutil.which(binary)


@dataclass
class _Capture:
    """Output of one stream, capped at *limit* bytes."""

    limit: int
    data: bytearray = field(default_factory=bytearray)
    dropped: bool = False

    @property
    def full(self) -> bool:
        return len(self.data) >= self.limit

    def truncated(self, interrupted: bool = False) -> bool:
        # killed with a full buffer: the rest of its output is lost
        return self.dropped or (interrupted and self.full)

    def text(self) -> str:
        return self.data.decode(errors="replace")


async def _read_capped(stream: asyncio.StreamReader | None, sink: _Capture) -> None:
    """Read *stream* to EOF keeping at most ``sink.limit`` bytes."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        room = sink.limit - len(sink.data)
        if room > 0:
            sink.data.extend(chunk[:room])
        if len(chunk) > room:
            sink.dropped = True


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


async def terminate_process_group(
    proc: asyncio.subprocess.Process, grace: float = _TERMINATE_GRACE
) -> None:
    """SIGTERM the child's process group, then SIGKILL after *grace* seconds."""
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        _signal_group(proc, signal.SIGKILL)
        await proc.wait()


async def run_process(
    command: Sequence[str],
    *,
    timeout: float | None = None,
    max_output_bytes: int = 1024 * 1024,
    cwd: str | None = None,
) -> ExecOutcome:
    """Run *command* in its own process group with an optional timeout.

    stdout and stderr are captured separately, each capped at
    *max_output_bytes*.  On timeout the whole process group is terminated and
    whatever output arrived so far is returned.  Cancellation also terminates
    the group before propagating.
    """
    started = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        start_new_session=True,
    )
    out, err = _Capture(max_output_bytes), _Capture(max_output_bytes)
    collect = asyncio.gather(
        _read_capped(proc.stdout, out),
        _read_capped(proc.stderr, err),
        proc.wait(),
    )
    timed_out = False
    try:
        await asyncio.wait_for(collect, timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        await terminate_process_group(proc)
    except asyncio.CancelledError:
        collect.cancel()
        await terminate_process_group(proc)
        raise

    return ExecOutcome(
        exit_code=proc.returncode,
        stdout=out.text(),
        stderr=err.text(),
        stdout_truncated=out.truncated(timed_out),
        stderr_truncated=err.truncated(timed_out),
        timed_out=timed_out,
        duration=time.monotonic() - started,
    )


async def launch(invocation: Invocation) -> ExecOutcome:
    """Default launcher: a real subprocess."""
    return await run_process(
        invocation.command,
        timeout=invocation.timeout,
        max_output_bytes=invocation.max_output_bytes,
        cwd=invocation.cwd,
    )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class ToolRunner:
    """Turns a ToolSpec plus a ScanRequest into a command, runs it and maps the outcome.

    Subclasses add the tool's report flags and report parser.
    """

    name: ToolName
    report_name: str | None = None  # file or directory inside the run's report dir

    def __init__(self, spec: ToolSpec) -> None:
        if spec.name != self.name:
            raise ValueError(f"{type(self).__name__} cannot run {spec.name.value}")
        self.spec = spec

    # --- composition --------------------------------------------------------

    def resolve_binary(self) -> str:
        path = resolve_executable(self.spec.binary)
        if path is None:
            raise ToolNotFound(self.name.value, self.spec.binary)
        return path

    def exclude_flags(self, patterns: Sequence[str]) -> list[str]:
        if not patterns:
            return []
        if not (self.spec.supports_exclude and self.spec.exclude_flag):
            logger.warning(
                "[%s] does not support exclude patterns; ignoring %s",
                self.name.value, ", ".join(patterns),
            )
            return []
        return [self.spec.exclude_flag, ",".join(patterns)]

    def report_flags(self, report_path: str) -> list[str]:
        return []

    def build_command(
        self,
        binary: str,
        target: str,
        request: ScanRequest,
        report_path: str | None = None,
    ) -> list[str]:
        """``binary target <defaults+overrides> <exclude flags> <report flags>``."""
        overrides = request.overrides.get(self.name, ())
        cmd = [binary, target, *merge_flags(self.spec.default_flags, overrides)]
        cmd += self.exclude_flags(request.exclude)
        if report_path is not None:
            cmd += self.report_flags(report_path)
        return cmd

    # --- reports ------------------------------------------------------------

    def prepare_report(self, report_path: Path | None) -> None:
        """Remove a stale report left by an earlier run."""
        if report_path is not None and report_path.is_file():
            report_path.unlink()

    def parse_report(self, report_path: Path | None, stdout: str) -> list[Finding] | None:
        """Structured findings, or None when the tool has no report. Raises ReportParseError."""
        return None

    # --- execution ----------------------------------------------------------

    async def execute(
        self, invocation: Invocation, launcher: Launcher = launch
    ) -> ScanResult:
        logger.info(
            "[%s] running: %s (timeout=%s)",
            self.name.value, " ".join(invocation.command), invocation.timeout,
        )
        self.prepare_report(invocation.report_path)
        report_path = str(invocation.report_path) if invocation.report_path else None
        try:
            outcome = await launcher(invocation)
        except OSError as exc:
            logger.error("[%s] failed to launch: %s", self.name.value, exc)
            return ScanResult(
                tool=self.name,
                status=ScanStatus.TOOL_ERROR,
                command=invocation.command,
                report_path=report_path,
                error=f"failed to launch {invocation.command[0]}: {exc}",
            )

        logger.debug(
            "[%s] rc=%s  stdout=%d chars  stderr=%d chars  %.2fs",
            self.name.value, outcome.exit_code, len(outcome.stdout),
            len(outcome.stderr), outcome.duration,
        )

        error: str | None = None
        findings: list[Finding] | None = None
        report_error: str | None = None
        if outcome.timed_out:
            status = ScanStatus.TIMEOUT
            error = f"{self.name.value} timed out after {invocation.timeout}s"
            logger.warning("[%s] %s", self.name.value, error)
        else:
            status = self.spec.status_for(
                outcome.exit_code if outcome.exit_code is not None else -1
            )
            if status == ScanStatus.TOOL_ERROR:
                error = (
                    f"{self.name.value} exited {outcome.exit_code}: "
                    f"{outcome.stderr.strip()[:500]}"
                )
                logger.error("[%s] %s", self.name.value, error)
            try:
                findings = self.parse_report(invocation.report_path, outcome.stdout)
            except ReportParseError as exc:
                report_error = str(exc)
                logger.warning("[%s] report not attached: %s", self.name.value, exc)

        return ScanResult(
            tool=self.name,
            status=status,
            exit_code=outcome.exit_code,
            duration=outcome.duration,
            command=invocation.command,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            stdout_truncated=outcome.stdout_truncated,
            stderr_truncated=outcome.stderr_truncated,
            report_path=report_path,
            findings=findings,
            report_error=report_error,
            error=error,
        )
