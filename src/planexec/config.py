"""YAML configuration for the plan executor."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import PlanExecutionError
from .tools.gates import ExecutionMode, parse_execution_mode
from .tools.text import DEFAULT_CONTEXT_CHARS

__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ExecutorConfig",
    "copy_config_template",
    "load_config",
    "resolve_config",
    "write_config",
]

DEFAULT_PLANNING_DIR = ".planning"
DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "execution": {
        "mode": ExecutionMode.GUIDED.value,
        "auto_commit": True,
    },
    "issues": {
        "max_output_chars": DEFAULT_CONTEXT_CHARS,
    },
    "models": {
        "default": "gpt-5-mini",
        "timeout": 120,
        "max_attempts": 3,
        "base_url": "",
        "api_key": "",
    },
    "paths": {
        "planning": DEFAULT_PLANNING_DIR,
        "issues": f"{DEFAULT_PLANNING_DIR}/ISSUES.md",
        "state": f"{DEFAULT_PLANNING_DIR}/state.yaml",
        "marker": f"{DEFAULT_PLANNING_DIR}/current-agent-id.txt",
    },
}


class ConfigError(PlanExecutionError):
    """Raised when the configuration file cannot be used."""


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load ``config_path`` merged over the defaults (defaults alone when it is absent)."""
    config = copy_config_template()
    if not config_path.exists():
        return config
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"Could not read config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {config_path} must be a mapping at the top level.")
    return _merge(config, data)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


@dataclass(slots=True)
class ExecutorConfig:
    """Resolved settings with every path made absolute against ``root``."""

    root: Path
    mode: ExecutionMode
    auto_commit: bool
    max_output_chars: int
    planning_dir: Path
    issues_path: Path
    state_path: Path
    marker_path: Path
    models: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping.")
    return value


def resolve_config(root: Path, config_path: Optional[Path] = None) -> ExecutorConfig:
    """Load and validate the configuration for the workspace at ``root``."""
    root = root.resolve()
    path = config_path or root / DEFAULT_PLANNING_DIR / DEFAULT_CONFIG_NAME
    if not path.is_absolute():
        path = root / path
    data = load_config(path)

    execution = _section(data, "execution")
    try:
        mode = parse_execution_mode(execution.get("mode"))
    except ValueError as error:
        raise ConfigError(str(error)) from error

    issues = _section(data, "issues")
    max_chars = issues.get("max_output_chars", DEFAULT_CONTEXT_CHARS)
    if not isinstance(max_chars, int) or isinstance(max_chars, bool) or max_chars <= 0:
        raise ConfigError("issues.max_output_chars must be a positive integer.")

    paths = _section(data, "paths")

    def _resolve(key: str) -> Path:
        value = paths.get(key) or DEFAULT_CONFIG_TEMPLATE["paths"][key]
        candidate = Path(str(value))
        return candidate if candidate.is_absolute() else (root / candidate).resolve()

    return ExecutorConfig(
        root=root,
        mode=mode,
        auto_commit=bool(execution.get("auto_commit", True)),
        max_output_chars=max_chars,
        planning_dir=_resolve("planning"),
        issues_path=_resolve("issues"),
        state_path=_resolve("state"),
        marker_path=_resolve("marker"),
        models=dict(_section(data, "models")),
        data=data,
    )
