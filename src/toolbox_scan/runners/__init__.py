"""Tool runners for the external analysis tools."""

from ..models import ToolName, ToolSpec
from .base import ExecOutcome, Invocation, Launcher, ToolRunner, launch, run_process
from .echidna import EchidnaRunner
from .manticore import ManticoreRunner
from .slither import SlitherRunner

RUNNERS: dict[ToolName, type[ToolRunner]] = {
    ToolName.ECHIDNA: EchidnaRunner,
    ToolName.SLITHER: SlitherRunner,
    ToolName.MANTICORE: ManticoreRunner,
}


def runner_for(spec: ToolSpec) -> ToolRunner:
    return RUNNERS[spec.name](spec)


__all__ = [
    "EchidnaRunner",
    "ExecOutcome",
    "Invocation",
    "Launcher",
    "ManticoreRunner",
    "RUNNERS",
    "SlitherRunner",
    "ToolRunner",
    "launch",
    "run_process",
    "runner_for",
]
