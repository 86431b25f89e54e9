"""Test configuration and fixtures for toolbox-scan."""

import asyncio
import stat
from collections.abc import Callable
from pathlib import Path

import pytest

from toolbox_scan.config import BUILTIN_SPECS, ScanConfig
from toolbox_scan.models import ToolName
from toolbox_scan.runners.base import ExecOutcome, Invocation

PASSING_SLITHER = """\
out=""
while [ "$#" -gt 0 ]; do
  if [ "$1" = "--json" ]; then out="$2"; fi
  shift
done
if [ -n "$out" ]; then
  echo '{"success": true, "error": null, "results": {"detectors": []}}' > "$out"
fi
echo "INFO:Slither:. analyzed (1 contracts with 0 detectors), 0 result(s) found" >&2
exit 0
"""

FAILING_ECHIDNA = """\
cat <<'OUT'
echidna_balance_under_1000: failed!
  Call sequence:
    Token.transfer(0x10000,1001)
echidna_owner_unchanged: passing
Unique instructions: 412
OUT
exit 1
"""

PASSING_ECHIDNA = """\
echo "echidna_owner_unchanged: passing"
exit 0
"""

SLEEPING = "exec sleep 30\n"


@pytest.fixture
def contracts_dir(tmp_path: Path) -> Path:
    """A small Foundry-style project with one contract."""
    project = tmp_path / "project"
    (project / "src").mkdir(parents=True)
    (project / "lib" / "forge-std").mkdir(parents=True)
    (project / "foundry.toml").write_text("[profile.default]\n")
    (project / "src" / "Token.sol").write_text(
        "pragma solidity ^0.8.0;\ncontract Token {}\n"
    )
    (project / "lib" / "forge-std" / "Test.sol").write_text("contract Test {}\n")
    return project


@pytest.fixture
def make_stub(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable shell script standing in for a real tool."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture
def stub_config(make_stub) -> Callable[..., ScanConfig]:
    """Config whose binaries are stub scripts; unspecified tools exit 0."""

    def _config(**bodies: str) -> ScanConfig:
        tools = {}
        for name, spec in BUILTIN_SPECS.items():
            body = bodies.get(name.value, "exit 0\n")
            stub = make_stub(name.value, body)
            tools[name] = spec.model_copy(update={"binary": str(stub)})
        return ScanConfig(tools=tools)

    return _config


class SpyLauncher:
    """Records invocations and returns canned outcomes instead of spawning processes."""

    def __init__(self, outcomes: dict[ToolName, ExecOutcome] | None = None,
                 delays: dict[ToolName, float] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.calls: list[Invocation] = []
        self.active = 0
        self.peak = 0

    async def __call__(self, invocation: Invocation) -> ExecOutcome:
        self.calls.append(invocation)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            delay = self.delays.get(invocation.tool, 0.0)
            if delay:
                await asyncio.sleep(delay)
            outcome = self.outcomes.get(invocation.tool, ExecOutcome(exit_code=0))
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active -= 1

    @property
    def launched(self) -> list[ToolName]:
        return [call.tool for call in self.calls]


@pytest.fixture
def spy() -> SpyLauncher:
    return SpyLauncher()
