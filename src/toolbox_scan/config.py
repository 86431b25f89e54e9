"""Tool table, exit-code tables, environment overrides and config-file loading.

The built-in table describes the binaries shipped in the
``trailofbits/eth-security-toolbox`` image.  Everything here can be
overridden from a YAML file (``--config``) or, for binaries and timeouts,
from the environment:

  TOOLBOX_SCAN_TIMEOUT          per-tool timeout in seconds
  TOOLBOX_SCAN_GLOBAL_TIMEOUT   whole-run deadline in seconds
  TOOLBOX_SCAN_<TOOL>_BIN       binary for one tool, e.g. TOOLBOX_SCAN_SLITHER_BIN
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from thefuzz import fuzz, process

from .exceptions import ConfigurationError
from .models import ContainerSettings, ScanStatus, ToolName, ToolSpec

logger = logging.getLogger(__name__)

ENV_PREFIX = "TOOLBOX_SCAN_"

# Tuning knobs
_SUGGEST_THRESHOLD = 60  # 0-100, minimum ratio for a "did you mean"

# Exit-code conventions per tool.  Slither exits non-zero when it reports
# results, Echidna exits 1 when a property or assertion fails.
SLITHER_EXIT_CODES: dict[int, ScanStatus] = {
    0: ScanStatus.PASSED,
    1: ScanStatus.FAILED,
    255: ScanStatus.FAILED,
}
ECHIDNA_EXIT_CODES: dict[int, ScanStatus] = {
    0: ScanStatus.PASSED,
    1: ScanStatus.FAILED,
}
MANTICORE_EXIT_CODES: dict[int, ScanStatus] = {
    0: ScanStatus.PASSED,
}

BUILTIN_SPECS: dict[ToolName, ToolSpec] = {
    ToolName.ECHIDNA: ToolSpec(
        name=ToolName.ECHIDNA,
        binary="echidna",
        default_flags=("--format", "text"),
        supports_exclude=False,
        exit_codes=ECHIDNA_EXIT_CODES,
    ),
    ToolName.SLITHER: ToolSpec(
        name=ToolName.SLITHER,
        binary="slither",
        default_flags=(),
        supports_exclude=True,
        exclude_flag="--filter-paths",
        exit_codes=SLITHER_EXIT_CODES,
    ),
    ToolName.MANTICORE: ToolSpec(
        name=ToolName.MANTICORE,
        binary="manticore",
        default_flags=(),
        supports_exclude=False,
        exit_codes=MANTICORE_EXIT_CODES,
    ),
}


class ScanConfig(BaseModel):
    """Process-wide configuration, loaded once at start-up."""

    model_config = ConfigDict(frozen=True)

    tools: dict[ToolName, ToolSpec] = Field(
        default_factory=lambda: dict(BUILTIN_SPECS)
    )
    container: ContainerSettings | None = None
    timeout: float | None = None
    global_timeout: float | None = None


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

def _parse_float_env(
    name: str,
    default: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float | None:
    """Parse an optional positive float from the environment; default if unset or invalid."""
    env = os.environ if env is None else env
    val = env.get(name)
    if val is None or val == "":
        return default
    try:
        parsed = float(val)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", name, val)
        return default
    if parsed <= 0:
        logger.warning("Ignoring %s=%r: must be positive", name, val)
        return default
    return parsed


def _apply_env(config: ScanConfig, env: Mapping[str, str]) -> ScanConfig:
    tools = dict(config.tools)
    for name, spec in tools.items():
        binary = env.get(f"{ENV_PREFIX}{name.value.upper()}_BIN")
        if binary:
            logger.debug("Using %s binary from environment: %s", name.value, binary)
            tools[name] = spec.model_copy(update={"binary": binary})
    return config.model_copy(update={
        "tools": tools,
        "timeout": _parse_float_env(f"{ENV_PREFIX}TIMEOUT", config.timeout, env),
        "global_timeout": _parse_float_env(
            f"{ENV_PREFIX}GLOBAL_TIMEOUT", config.global_timeout, env
        ),
    })


# ---------------------------------------------------------------------------
# Config file
# ---------------------------------------------------------------------------

def _tool_overrides(name: ToolName, raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"tools.{name.value} must be a mapping")
    update: dict[str, Any] = {}
    unknown = set(raw) - {
        "binary", "default_flags", "supports_exclude", "exclude_flag", "exit_codes",
    }
    if unknown:
        raise ConfigurationError(
            f"tools.{name.value}: unknown keys {', '.join(sorted(unknown))}"
        )
    if "binary" in raw:
        update["binary"] = str(raw["binary"])
    if "default_flags" in raw:
        flags = raw["default_flags"]
        if isinstance(flags, str) or not isinstance(flags, list):
            raise ConfigurationError(f"tools.{name.value}.default_flags must be a list")
        update["default_flags"] = tuple(str(f) for f in flags)
    if "supports_exclude" in raw:
        update["supports_exclude"] = bool(raw["supports_exclude"])
    if "exclude_flag" in raw:
        update["exclude_flag"] = str(raw["exclude_flag"]) if raw["exclude_flag"] else None
    if "exit_codes" in raw:
        codes = raw["exit_codes"]
        if not isinstance(codes, dict):
            raise ConfigurationError(f"tools.{name.value}.exit_codes must be a mapping")
        table: dict[int, ScanStatus] = {}
        for code, status in codes.items():
            try:
                table[int(code)] = ScanStatus(str(status).lower())
            except ValueError as exc:
                raise ConfigurationError(
                    f"tools.{name.value}.exit_codes: bad entry {code!r}: {status!r}"
                ) from exc
        update["exit_codes"] = table
    return update


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> ScanConfig:
    """Build the process configuration from built-ins, an optional YAML file and the environment."""
    config = ScanConfig()
    if path is not None:
        config = _merge_file(config, Path(path))
    return _apply_env(config, os.environ if env is None else env)


def _merge_file(config: ScanConfig, path: Path) -> ScanConfig:
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Malformed config file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    tools = dict(config.tools)
    for key, value in (raw.get("tools") or {}).items():
        name = parse_tool_names([key])[0]
        tools[name] = tools[name].model_copy(update=_tool_overrides(name, value))

    update: dict[str, Any] = {"tools": tools}
    try:
        if raw.get("container") is not None:
            update["container"] = ContainerSettings.model_validate(raw["container"])
        for key in ("timeout", "global_timeout"):
            if raw.get(key) is not None:
                update[key] = float(raw[key])
    except (ValidationError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc
    for key in ("timeout", "global_timeout"):
        if key in update and update[key] <= 0:
            raise ConfigurationError(f"{key} in {path} must be positive, got {update[key]}")

    logger.info("Loaded configuration from %s", path)
    return config.model_copy(update=update)


# ---------------------------------------------------------------------------
# Tool-name parsing
# ---------------------------------------------------------------------------

def split_csv(value: str | None) -> list[str]:
    """Split ``a,b , c`` into ``["a", "b", "c"]``; empty items are dropped."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def suggest_tool_name(name: str) -> str | None:
    """Closest known tool name, or None if nothing is similar enough."""
    choices = [t.value for t in ToolName]
    match = process.extractOne(name.lower(), choices, scorer=fuzz.ratio)
    if match and match[1] >= _SUGGEST_THRESHOLD:
        return match[0]
    return None


def parse_tool_names(names: str | Iterable[str]) -> tuple[ToolName, ...]:
    """Validate tool names, preserving order.

    Raises ConfigurationError on an empty list, an unknown name or a duplicate.
    """
    items = split_csv(names) if isinstance(names, str) else [str(n).strip() for n in names]
    if not items:
        raise ConfigurationError("At least one tool must be selected")

    tools: list[ToolName] = []
    for item in items:
        try:
            tool = ToolName(item.lower())
        except ValueError:
            hint = suggest_tool_name(item)
            msg = f"Unknown tool {item!r}"
            if hint:
                msg += f" (did you mean {hint!r}?)"
            msg += f". Known tools: {', '.join(t.value for t in ToolName)}"
            raise ConfigurationError(msg) from None
        if tool in tools:
            raise ConfigurationError(f"Tool {tool.value!r} requested more than once")
        tools.append(tool)
    return tuple(tools)
