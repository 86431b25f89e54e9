"""Scan orchestrator: validate a request, run the selected tools, assemble a report.

Fatal problems (unknown tool, missing target, missing executable) are raised
before any process is launched.  Everything that happens to an individual
tool afterwards is recorded in its ScanResult.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .config import ScanConfig, parse_tool_names
from .container import ContainerPaths
from .exceptions import ConfigurationError, ToolNotFound
from .models import ScanReport, ScanRequest, ScanResult, ScanStatus
from .runners import Invocation, Launcher, ToolRunner, launch, runner_for
from .runners.base import resolve_executable
from .source_reader import detect_framework, list_solidity_files

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Plan:
    index: int
    runner: ToolRunner
    invocation: Invocation


def make_request(target: str | Path, tools: str | Iterable[str], **options: Any) -> ScanRequest:
    """Build a ScanRequest from loosely typed input, raising ConfigurationError on bad values."""
    names = parse_tool_names(tools)
    try:
        return ScanRequest(target=Path(target), tools=names, **options)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid scan request: {exc}") from exc


class ScanOrchestrator:
    """Runs external analysis tools over a target and aggregates their results."""

    def __init__(
        self,
        config: ScanConfig | None = None,
        launcher: Launcher = launch,
    ) -> None:
        self.config = config or ScanConfig()
        self.launcher = launcher
        # one event per in-flight run
        self._cancel_events: set[asyncio.Event] = set()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Terminate every in-flight run; finished results are kept."""
        logger.warning("Cancellation requested")
        for event in self._cancel_events:
            event.set()

    # ------------------------------------------------------------------
    # Validation and planning
    # ------------------------------------------------------------------

    def validate(self, request: ScanRequest) -> None:
        if not request.tools:
            raise ConfigurationError("At least one tool must be selected")
        if len(set(request.tools)) != len(request.tools):
            raise ConfigurationError("A tool was requested more than once")
        for tool in request.tools:
            if tool not in self.config.tools:
                raise ConfigurationError(f"No configuration for tool {tool.value!r}")
        if not request.target.exists():
            raise ConfigurationError(f"Target does not exist: {request.target}")
        for timeout in (request.timeout, self.config.timeout):
            if timeout is not None and timeout <= 0:
                raise ConfigurationError("timeout must be positive")
        for timeout in (request.global_timeout, self.config.global_timeout):
            if timeout is not None and timeout <= 0:
                raise ConfigurationError("global timeout must be positive")
        if request.max_workers is not None and request.max_workers < 1:
            raise ConfigurationError("max workers must be at least 1")
        if request.max_output_bytes < 1:
            raise ConfigurationError("output cap must be positive")

    def _report_dir(self, request: ScanRequest) -> Path:
        try:
            request.report_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(
                f"Cannot create report directory {request.report_dir}: {exc}"
            ) from exc
        return request.report_dir.resolve()

    def plan(self, request: ScanRequest, report_dir: Path) -> list[_Plan]:
        """Compose every invocation up front; raises ToolNotFound on the first missing binary."""
        target = request.target.resolve()
        container = request.container or self.config.container
        timeout = request.timeout if request.timeout is not None else self.config.timeout
        paths = ContainerPaths(container, target, report_dir) if container else None

        if paths is not None and resolve_executable(paths.settings.engine) is None:
            raise ToolNotFound("container engine", paths.settings.engine)

        plans: list[_Plan] = []
        seen_reports: set[Path] = set()
        for index, tool in enumerate(request.tools):
            runner = runner_for(self.config.tools[tool])
            report = report_dir / runner.report_name if runner.report_name else None
            if report is not None:
                if report in seen_reports:
                    raise ConfigurationError(f"Report path {report} is shared between tools")
                seen_reports.add(report)

            if paths is not None:
                command = paths.wrap(runner.build_command(
                    runner.spec.binary,
                    paths.target_arg,
                    request,
                    paths.report_arg(report) if report else None,
                ))
                cwd = None
            else:
                command = runner.build_command(
                    runner.resolve_binary(),
                    str(target),
                    request,
                    str(report) if report else None,
                )
                cwd = str(target if target.is_dir() else target.parent)

            plans.append(_Plan(index, runner, Invocation(
                tool=tool,
                command=command,
                cwd=cwd,
                timeout=timeout,
                max_output_bytes=request.max_output_bytes,
                report_path=report,
            )))
        return plans

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def scan(self, target: str | Path, tools: str | Iterable[str], **options: Any) -> ScanReport:
        """Convenience wrapper: build the request and run it."""
        return await self.run(make_request(target, tools, **options))

    async def run(self, request: ScanRequest) -> ScanReport:
        """Run every requested tool and return one result per tool, in request order.

        Without ``request.report_dir`` the tools write their reports into a
        temporary directory that is removed once the reports are parsed; the
        results then carry no ``report_path``.
        """
        self.validate(request)
        if request.report_dir is not None:
            return await self._run_in(request, self._report_dir(request))

        with tempfile.TemporaryDirectory(prefix="toolbox-scan-", ignore_cleanup_errors=True) as tmp:
            report = await self._run_in(request, Path(tmp).resolve())
        return report.model_copy(update={
            "results": [r.model_copy(update={"report_path": None}) for r in report.results],
        })

    async def _run_in(self, request: ScanRequest, report_dir: Path) -> ScanReport:
        plans = self.plan(request, report_dir)

        sources = list_solidity_files(request.target, request.exclude)
        logger.info(
            "Scanning %s (%s project, %d Solidity files) with %s%s",
            request.target, detect_framework(request.target), len(sources),
            ", ".join(t.value for t in request.tools),
            " in parallel" if request.parallel else "",
        )

        workers = 1
        if request.parallel:
            workers = min(request.max_workers or len(plans), len(plans))

        global_timeout = request.global_timeout
        if global_timeout is None:
            global_timeout = self.config.global_timeout

        cancel = asyncio.Event()
        self._cancel_events.add(cancel)
        slots: list[ScanResult | None] = [None] * len(plans)
        started: dict[int, float] = {}
        try:
            unfinished = await self._schedule(
                plans, slots, started, workers, global_timeout, request, cancel,
            )
        finally:
            self._cancel_events.discard(cancel)

        loop = asyncio.get_running_loop()
        results: list[ScanResult] = []
        for plan, slot in zip(plans, slots):
            if slot is None:
                begun = started.get(plan.index)
                slot = ScanResult(
                    tool=plan.runner.name,
                    status=unfinished or ScanStatus.CANCELLED,
                    duration=(loop.time() - begun) if begun is not None else 0.0,
                    command=plan.invocation.command,
                    error=self._unfinished_reason(unfinished, begun is not None, global_timeout),
                )
            results.append(slot)

        report = ScanReport(
            target=str(request.target),
            results=results,
            sources_scanned=len(sources),
        )
        logger.info(
            "Scan finished: %s (%s)",
            report.overall.value,
            ", ".join(f"{r.tool.value}={r.status.value}" for r in results),
        )
        return report

    async def _schedule(
        self,
        plans: list[_Plan],
        slots: list[ScanResult | None],
        started: dict[int, float],
        workers: int,
        global_timeout: float | None,
        request: ScanRequest,
        cancel: asyncio.Event,
    ) -> ScanStatus | None:
        """Keep up to *workers* tools in flight, filling *slots* by request index.

        Returns the status for tools that never finished (timeout when the
        global deadline passed, cancelled otherwise), or None if all finished.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + global_timeout if global_timeout else None
        queue = list(plans)
        running: dict[asyncio.Task, _Plan] = {}
        cancel_wait = asyncio.ensure_future(cancel.wait())
        stop: ScanStatus | None = None

        try:
            while queue or running:
                while queue and len(running) < workers:
                    plan = queue.pop(0)
                    started[plan.index] = loop.time()
                    task = asyncio.create_task(
                        plan.runner.execute(plan.invocation, self.launcher),
                        name=f"scan-{plan.runner.name.value}",
                    )
                    running[task] = plan

                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    [*running, cancel_wait],
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for task in done:
                    if task is cancel_wait:
                        continue
                    plan = running.pop(task)
                    result = self._collect(task, plan)
                    slots[plan.index] = result
                    if stop is None and self._should_stop(result, request):
                        stop = ScanStatus.CANCELLED

                if cancel_wait in done:
                    stop = ScanStatus.CANCELLED
                elif not done:
                    logger.warning("Global timeout of %ss reached", global_timeout)
                    stop = ScanStatus.TIMEOUT
                if stop is not None:
                    break
        finally:
            cancel_wait.cancel()
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
                # a tool may have finished (or crashed) while the others were being cancelled
                for task, plan in running.items():
                    if not task.cancelled():
                        slots[plan.index] = self._collect(task, plan)

        return stop

    def _collect(self, task: asyncio.Task, plan: _Plan) -> ScanResult:
        if task.cancelled():
            return ScanResult(
                tool=plan.runner.name,
                status=ScanStatus.CANCELLED,
                command=plan.invocation.command,
                error="terminated: run cancelled",
            )
        exc = task.exception()
        if exc is None:
            return task.result()
        logger.error("[%s] runner crashed: %s", plan.runner.name.value, exc, exc_info=exc)
        return ScanResult(
            tool=plan.runner.name,
            status=ScanStatus.TOOL_ERROR,
            command=plan.invocation.command,
            error=f"{plan.runner.name.value} runner crashed: {exc}",
        )

    @staticmethod
    def _should_stop(result: ScanResult, request: ScanRequest) -> bool:
        if result.status == ScanStatus.TIMEOUT and request.stop_on_timeout:
            logger.warning("[%s] timed out; stopping remaining tools", result.tool.value)
            return True
        if result.status == ScanStatus.TOOL_ERROR and request.stop_on_error:
            logger.warning("[%s] tool error; stopping remaining tools", result.tool.value)
            return True
        return False

    @staticmethod
    def _unfinished_reason(
        status: ScanStatus | None, was_started: bool, global_timeout: float | None
    ) -> str:
        if status == ScanStatus.TIMEOUT:
            return f"global timeout of {global_timeout}s reached"
        if was_started:
            return "terminated: run cancelled"
        return "not started: run cancelled"
