"""Run tools inside the eth-security-toolbox container image.

The target is mounted at ``settings.workdir`` and the run's report
directory at ``settings.report_mount``; tool arguments refer to those
in-container paths.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .models import ContainerSettings


@dataclass(frozen=True)
class ContainerPaths:
    """Host → container path mapping for one run."""

    settings: ContainerSettings
    target: Path
    report_dir: Path

    @property
    def mount_source(self) -> Path:
        return self.target if self.target.is_dir() else self.target.parent

    @property
    def target_arg(self) -> str:
        if self.target.is_dir():
            return self.settings.workdir
        return str(PurePosixPath(self.settings.workdir) / self.target.name)

    def report_arg(self, host_report: Path) -> str:
        rel = host_report.relative_to(self.report_dir)
        return str(PurePosixPath(self.settings.report_mount) / rel.as_posix())

    def wrap(self, command: list[str]) -> list[str]:
        """Prefix *command* with ``docker run`` and the two volume mounts."""
        s = self.settings
        return [
            s.engine, "run", "--rm",
            "-v", f"{self.mount_source}:{s.workdir}",
            "-v", f"{self.report_dir}:{s.report_mount}",
            "-w", s.workdir,
            *s.extra_args,
            s.image,
            *command,
        ]
