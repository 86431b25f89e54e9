"""Tests for request validation, scheduling and result aggregation."""

import asyncio
import tempfile
import time

import pytest

from conftest import FAILING_ECHIDNA, PASSING_SLITHER, SLEEPING, SpyLauncher
from toolbox_scan.config import ScanConfig
from toolbox_scan.exceptions import ConfigurationError, ToolNotFound
from toolbox_scan.models import ContainerSettings, ScanStatus, ToolName
from toolbox_scan.orchestrator import ScanOrchestrator, make_request
from toolbox_scan.runners.base import ExecOutcome

ALL_TOOLS = "echidna,slither,manticore"


# ---------------------------------------------------------------------------
# Validation: nothing is launched for a bad request
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_tool_launches_nothing(contracts_dir, stub_config, spy):
    orchestrator = ScanOrchestrator(stub_config(), launcher=spy)
    with pytest.raises(ConfigurationError, match="mythril"):
        await orchestrator.scan(contracts_dir, "slither,mythril")
    assert spy.calls == []


@pytest.mark.asyncio
async def test_missing_target_launches_nothing(tmp_path, stub_config, spy):
    orchestrator = ScanOrchestrator(stub_config(), launcher=spy)
    with pytest.raises(ConfigurationError, match="does not exist"):
        await orchestrator.scan(tmp_path / "nowhere", "slither")
    assert spy.calls == []


@pytest.mark.asyncio
async def test_missing_executable_launches_nothing(contracts_dir, stub_config, spy, tmp_path):
    config = stub_config()
    tools = dict(config.tools)
    tools[ToolName.SLITHER] = tools[ToolName.SLITHER].model_copy(
        update={"binary": str(tmp_path / "no-such-slither")}
    )
    orchestrator = ScanOrchestrator(ScanConfig(tools=tools), launcher=spy)
    # echidna comes first and resolves, but slither is checked before anything starts
    with pytest.raises(ToolNotFound):
        await orchestrator.scan(contracts_dir, "echidna,slither")
    assert spy.calls == []


@pytest.mark.asyncio
async def test_invalid_timeout_rejected(contracts_dir, stub_config, spy):
    orchestrator = ScanOrchestrator(stub_config(), launcher=spy)
    with pytest.raises(ConfigurationError, match="timeout must be positive"):
        await orchestrator.scan(contracts_dir, "slither", timeout=0)
    assert spy.calls == []


def test_make_request_wraps_validation_errors(contracts_dir):
    with pytest.raises(ConfigurationError, match="Invalid scan request"):
        make_request(contracts_dir, "slither", parallel="sometimes")


# ---------------------------------------------------------------------------
# Ordering and concurrency
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("parallel", [False, True])
async def test_one_result_per_tool_in_request_order(contracts_dir, stub_config, parallel):
    # the first tool finishes last
    spy = SpyLauncher(delays={ToolName.MANTICORE: 0.3, ToolName.SLITHER: 0.1})
    orchestrator = ScanOrchestrator(stub_config(), launcher=spy)
    report = await orchestrator.scan(contracts_dir, "manticore,slither,echidna", parallel=parallel)

    assert [r.tool for r in report.results] == [
        ToolName.MANTICORE, ToolName.SLITHER, ToolName.ECHIDNA,
    ]
    assert len(spy.calls) == 3


@pytest.mark.asyncio
async def test_sequential_runs_one_at_a_time(contracts_dir, stub_config):
    spy = SpyLauncher(delays={t: 0.05 for t in ToolName})
    await ScanOrchestrator(stub_config(), launcher=spy).scan(contracts_dir, ALL_TOOLS)
    assert spy.peak == 1
    assert spy.launched == [ToolName.ECHIDNA, ToolName.SLITHER, ToolName.MANTICORE]


@pytest.mark.asyncio
async def test_parallel_respects_max_workers(contracts_dir, stub_config):
    spy = SpyLauncher(delays={t: 0.1 for t in ToolName})
    await ScanOrchestrator(stub_config(), launcher=spy).scan(
        contracts_dir, ALL_TOOLS, parallel=True, max_workers=2,
    )
    assert spy.peak == 2


@pytest.mark.asyncio
async def test_parallel_runs_everything_at_once(contracts_dir, stub_config):
    spy = SpyLauncher(delays={t: 0.1 for t in ToolName})
    await ScanOrchestrator(stub_config(), launcher=spy).scan(contracts_dir, ALL_TOOLS, parallel=True)
    assert spy.peak == 3


# ---------------------------------------------------------------------------
# Status aggregation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_overall_passes_only_when_every_tool_passes(contracts_dir, stub_config):
    spy = SpyLauncher()
    report = await ScanOrchestrator(stub_config(), launcher=spy).scan(contracts_dir, "echidna,slither")
    assert report.overall == ScanStatus.PASSED
    assert report.passed

    spy = SpyLauncher(outcomes={ToolName.SLITHER: ExecOutcome(exit_code=1)})
    report = await ScanOrchestrator(stub_config(), launcher=spy).scan(contracts_dir, "echidna,slither")
    assert [r.status for r in report.results] == [ScanStatus.PASSED, ScanStatus.FAILED]
    assert report.overall == ScanStatus.FAILED
    assert report.status_counts["failed"] == 1


@pytest.mark.asyncio
async def test_runner_crash_becomes_tool_error(contracts_dir, stub_config):
    spy = SpyLauncher(outcomes={ToolName.ECHIDNA: RuntimeError("boom")})
    report = await ScanOrchestrator(stub_config(), launcher=spy).scan(contracts_dir, "echidna,slither")
    echidna, slither = report.results
    assert echidna.status == ScanStatus.TOOL_ERROR
    assert "runner crashed: boom" in echidna.error
    assert slither.status == ScanStatus.PASSED


@pytest.mark.asyncio
async def test_stop_on_timeout_cancels_remaining(contracts_dir, stub_config):
    spy = SpyLauncher(outcomes={ToolName.ECHIDNA: ExecOutcome(exit_code=-15, timed_out=True)})
    report = await ScanOrchestrator(stub_config(), launcher=spy).scan(
        contracts_dir, ALL_TOOLS, timeout=5, stop_on_timeout=True,
    )
    assert spy.launched == [ToolName.ECHIDNA]
    assert [r.status for r in report.results] == [
        ScanStatus.TIMEOUT, ScanStatus.CANCELLED, ScanStatus.CANCELLED,
    ]
    assert report.results[1].error == "not started: run cancelled"


@pytest.mark.asyncio
async def test_timeout_does_not_stop_by_default(contracts_dir, stub_config):
    spy = SpyLauncher(outcomes={ToolName.ECHIDNA: ExecOutcome(exit_code=-15, timed_out=True)})
    report = await ScanOrchestrator(stub_config(), launcher=spy).scan(contracts_dir, ALL_TOOLS, timeout=5)
    assert len(spy.calls) == 3
    assert [r.status for r in report.results] == [
        ScanStatus.TIMEOUT, ScanStatus.PASSED, ScanStatus.PASSED,
    ]


@pytest.mark.asyncio
async def test_stop_on_error_cancels_running_tools(contracts_dir, stub_config):
    spy = SpyLauncher(
        outcomes={ToolName.ECHIDNA: ExecOutcome(exit_code=7, stderr="crash")},
        delays={ToolName.SLITHER: 10},
    )
    started = time.monotonic()
    report = await ScanOrchestrator(stub_config(), launcher=spy).scan(
        contracts_dir, "echidna,slither", parallel=True, stop_on_error=True,
    )
    assert time.monotonic() - started < 5
    echidna, slither = report.results
    assert echidna.status == ScanStatus.TOOL_ERROR
    assert slither.status == ScanStatus.CANCELLED
    assert slither.error == "terminated: run cancelled"


@pytest.mark.asyncio
async def test_global_timeout_marks_unfinished_tools(contracts_dir, stub_config):
    spy = SpyLauncher(delays={ToolName.ECHIDNA: 10})
    report = await ScanOrchestrator(stub_config(), launcher=spy).scan(
        contracts_dir, "echidna,slither", global_timeout=0.3,
    )
    assert [r.status for r in report.results] == [ScanStatus.TIMEOUT, ScanStatus.TIMEOUT]
    assert "global timeout" in report.results[0].error
    assert report.results[0].duration >= 0.2
    assert report.results[1].duration == 0.0
    assert spy.launched == [ToolName.ECHIDNA]


@pytest.mark.asyncio
async def test_cancel_keeps_finished_results(contracts_dir, stub_config):
    spy = SpyLauncher(delays={ToolName.SLITHER: 10})
    orchestrator = ScanOrchestrator(stub_config(), launcher=spy)

    run = asyncio.create_task(orchestrator.scan(contracts_dir, "echidna,slither", parallel=True))
    await asyncio.sleep(0.2)
    orchestrator.cancel()
    report = await asyncio.wait_for(run, timeout=5)

    echidna, slither = report.results
    assert echidna.status == ScanStatus.PASSED
    assert slither.status == ScanStatus.CANCELLED
    assert report.overall == ScanStatus.FAILED


# ---------------------------------------------------------------------------
# Real processes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stub_tools_map_to_passed_and_failed(contracts_dir, stub_config, tmp_path):
    config = stub_config(slither=PASSING_SLITHER, echidna=FAILING_ECHIDNA)
    report = await ScanOrchestrator(config).scan(
        contracts_dir, "slither,echidna", parallel=True, timeout=30,
        report_dir=tmp_path / "reports",
    )
    slither, echidna = report.results
    assert slither.status == ScanStatus.PASSED
    assert slither.exit_code == 0
    assert slither.findings == []
    assert slither.report_path == str((tmp_path / "reports" / "slither.json").resolve())
    assert echidna.status == ScanStatus.FAILED
    assert echidna.exit_code == 1
    assert [f.title for f in echidna.findings] == ["Property echidna_balance_under_1000 failed"]
    assert all(r.duration <= 30 for r in report.results)
    assert report.sources_scanned == 1


@pytest.mark.asyncio
async def test_stub_tool_timeout(contracts_dir, stub_config):
    config = stub_config(echidna=SLEEPING)
    started = time.monotonic()
    report = await ScanOrchestrator(config).scan(contracts_dir, "echidna,slither", timeout=1)
    elapsed = time.monotonic() - started

    echidna, slither = report.results
    assert echidna.status == ScanStatus.TIMEOUT
    assert echidna.exit_code is not None and echidna.exit_code < 0
    assert slither.status == ScanStatus.PASSED
    assert elapsed < 10


@pytest.mark.asyncio
async def test_stub_receives_composed_command(contracts_dir, stub_config, tmp_path):
    config = stub_config(slither='echo "$@"\n')
    report = await ScanOrchestrator(config).scan(
        contracts_dir, "slither", exclude=("test/", "mocks/"),
        overrides={ToolName.SLITHER: ("--exclude-informational",)},
        report_dir=tmp_path / "reports",
    )
    args = report.results[0].stdout.split()
    assert args[0] == str(contracts_dir.resolve())
    assert args[1:4] == ["--exclude-informational", "--filter-paths", "test/,mocks/"]
    assert args[4] == "--json"


# ---------------------------------------------------------------------------
# Container mode
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_container_mode_wraps_commands(contracts_dir, make_stub, spy, tmp_path):
    engine = make_stub("docker", "exit 0\n")
    config = ScanConfig(container=ContainerSettings(engine=str(engine)))
    report_dir = tmp_path / "reports"
    await ScanOrchestrator(config, launcher=spy).scan(
        contracts_dir, "slither,manticore", report_dir=report_dir,
    )

    slither, manticore = (call.command for call in spy.calls)
    assert slither[:3] == [str(engine), "run", "--rm"]
    assert f"{contracts_dir.resolve()}:/share" in slither
    assert f"{report_dir.resolve()}:/reports" in slither
    image = slither.index("trailofbits/eth-security-toolbox")
    assert slither[image + 1:] == ["slither", "/share", "--json", "/reports/slither.json"]
    assert manticore[-4:] == ["manticore", "/share", "--workspace", "/reports/manticore"]


@pytest.mark.asyncio
async def test_container_mode_needs_engine(contracts_dir, spy, tmp_path):
    config = ScanConfig(container=ContainerSettings(engine=str(tmp_path / "podman")))
    with pytest.raises(ToolNotFound, match="container engine"):
        await ScanOrchestrator(config, launcher=spy).scan(contracts_dir, "slither")
    assert spy.calls == []


# ---------------------------------------------------------------------------
# Report directory lifetime
# ---------------------------------------------------------------------------

@pytest.fixture
def scratch_tmp(monkeypatch, tmp_path):
    """Redirect tempfile to a private directory so leftovers can be counted."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


@pytest.mark.asyncio
async def test_default_report_dir_is_removed(contracts_dir, stub_config, scratch_tmp):
    config = stub_config(slither=PASSING_SLITHER)
    report = await ScanOrchestrator(config).run(make_request(contracts_dir, ["slither"]))

    slither = report.results[0]
    assert slither.status == ScanStatus.PASSED
    # the report was parsed before the directory went away
    assert slither.findings == []
    assert slither.report_path is None
    assert list(scratch_tmp.glob("toolbox-scan-*")) == []


@pytest.mark.asyncio
async def test_default_report_dir_removed_when_planning_fails(
    contracts_dir, stub_config, scratch_tmp, spy, tmp_path,
):
    config = stub_config()
    tools = dict(config.tools)
    tools[ToolName.SLITHER] = tools[ToolName.SLITHER].model_copy(
        update={"binary": str(tmp_path / "no-such-slither")}
    )
    with pytest.raises(ToolNotFound):
        await ScanOrchestrator(ScanConfig(tools=tools), launcher=spy).scan(contracts_dir, "slither")
    assert list(scratch_tmp.glob("toolbox-scan-*")) == []


@pytest.mark.asyncio
async def test_user_report_dir_is_kept(contracts_dir, stub_config, tmp_path):
    config = stub_config(slither=PASSING_SLITHER)
    report = await ScanOrchestrator(config).scan(
        contracts_dir, "slither", report_dir=tmp_path / "kept",
    )
    assert (tmp_path / "kept" / "slither.json").is_file()
    assert report.results[0].report_path is not None


# ---------------------------------------------------------------------------
# Configured timeouts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("setting", [{"timeout": 0.0}, {"global_timeout": -5.0}])
async def test_non_positive_configured_timeout_launches_nothing(
    contracts_dir, stub_config, spy, setting,
):
    config = stub_config().model_copy(update=setting)
    with pytest.raises(ConfigurationError, match="must be positive"):
        await ScanOrchestrator(config, launcher=spy).scan(contracts_dir, "slither,echidna")
    assert spy.calls == []


# ---------------------------------------------------------------------------
# Races between finishing and cancelling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_crash_while_being_cancelled_is_tool_error(contracts_dir, stub_config):
    async def launcher(invocation):
        if invocation.tool == ToolName.ECHIDNA:
            return ExecOutcome(exit_code=7, stderr="crash")
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            raise RuntimeError("cleanup failed")
        return ExecOutcome(exit_code=0)

    report = await ScanOrchestrator(stub_config(), launcher=launcher).scan(
        contracts_dir, "echidna,slither", parallel=True, stop_on_error=True,
    )
    echidna, slither = report.results
    assert echidna.status == ScanStatus.TOOL_ERROR
    assert slither.status == ScanStatus.TOOL_ERROR
    assert "runner crashed: cleanup failed" in slither.error


@pytest.mark.asyncio
async def test_cancel_reaches_overlapping_runs(contracts_dir, stub_config):
    spy = SpyLauncher(delays={ToolName.SLITHER: 10})
    orchestrator = ScanOrchestrator(stub_config(), launcher=spy)

    first = asyncio.create_task(orchestrator.scan(contracts_dir, "slither"))
    await asyncio.sleep(0.1)
    second = asyncio.create_task(orchestrator.scan(contracts_dir, "slither"))
    await asyncio.sleep(0.1)
    orchestrator.cancel()
    reports = await asyncio.wait_for(asyncio.gather(first, second), timeout=5)

    assert [r.results[0].status for r in reports] == [ScanStatus.CANCELLED, ScanStatus.CANCELLED]

    # a run started after the cancellation is unaffected
    later = await orchestrator.scan(contracts_dir, "echidna")
    assert later.results[0].status == ScanStatus.PASSED
