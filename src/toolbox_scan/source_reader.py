"""Helpers for inspecting the scan target.

Used by the orchestrator to log what it is about to scan and to record the
number of Solidity sources in the report.
"""

from __future__ import annotations

from pathlib import Path

_SKIP_DIRS = {"node_modules", "lib", ".git", "out", "cache", "crytic-export"}


def detect_framework(project_path: Path) -> str:
    """Detect whether the project uses Foundry, Hardhat or Truffle.

    Returns ``"foundry"`` | ``"hardhat"`` | ``"truffle"`` | ``"unknown"``.
    """
    if project_path.is_file():
        return "unknown"
    if (project_path / "foundry.toml").exists():
        return "foundry"
    if (project_path / "hardhat.config.js").exists():
        return "hardhat"
    if (project_path / "hardhat.config.ts").exists():
        return "hardhat"
    if (project_path / "truffle-config.js").exists():
        return "truffle"
    return "unknown"


def list_solidity_files(
    project_path: Path,
    exclude: list[str] | tuple[str, ...] | None = None,
) -> list[str]:
    """Return relative paths of all .sol files under *project_path*.

    A single-file target yields its own name.  Paths containing any of the
    *exclude* substrings are skipped.
    """
    if project_path.is_file():
        return [project_path.name] if project_path.suffix == ".sol" else []

    exclude = exclude or []
    results: list[str] = []
    for sol in sorted(project_path.rglob("*.sol")):
        rel_parts = sol.relative_to(project_path).parts
        if any(part in _SKIP_DIRS for part in rel_parts):
            continue
        rel = str(sol.relative_to(project_path))
        if any(ex in rel for ex in exclude):
            continue
        results.append(rel)
    return results
