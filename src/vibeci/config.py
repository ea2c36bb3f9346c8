"""YAML configuration: defaults, loading, environment overrides, path resolution."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "iteration": {
        "max_iterations": 3,
        "branch_prefix": "vibeci/task-",
        "cleanup_snapshots": False,
        "max_workers": 4,
    },
    "verification": {
        "command": "",
        "install_command": "",
        "timeout_seconds": 60,
        "install_timeout_seconds": 120,
    },
    "models": {
        "default": "gemini-3-pro-preview",
        "timeout": 120,
        "max_attempts": 5,
        "retry_delay": 2.0,
        "base_url": "",
        "api_key": "",
    },
    "paths": {
        "data": "data",
        "db_path": "data/vibeci.sqlite",
        "artifacts": "data/artifacts",
        "workspaces": "data/workspaces",
        "logs": "data/logs",
    },
}

_PATH_KEYS = ("data", "db_path", "artifacts", "workspaces", "logs")
_TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(RuntimeError):
    """Raised when a configuration file is missing or malformed."""


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def _merge(defaults: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = copy.deepcopy(dict(defaults))
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_config(config_path: Path) -> Dict[str, Any]:
    """Read a YAML file and return its mapping without applying defaults."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def apply_env_overrides(config: Dict[str, Any], environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Apply the supported environment variables on top of ``config`` in place."""
    env = os.environ if environ is None else environ
    models = config.setdefault("models", {})
    paths = config.setdefault("paths", {})
    iteration = config.setdefault("iteration", {})
    verification = config.setdefault("verification", {})

    if env.get("GEMINI_API_KEY"):
        models["api_key"] = env["GEMINI_API_KEY"]
    if env.get("GEMINI_MODEL"):
        models["default"] = env["GEMINI_MODEL"]
    if env.get("VIBECI_DATABASE_PATH"):
        paths["db_path"] = env["VIBECI_DATABASE_PATH"]
    if env.get("VIBECI_ARTIFACTS_PATH"):
        paths["artifacts"] = env["VIBECI_ARTIFACTS_PATH"]
    if env.get("VIBECI_CLEANUP_SNAPSHOTS"):
        iteration["cleanup_snapshots"] = env["VIBECI_CLEANUP_SNAPSHOTS"].strip().lower() in _TRUTHY
    timeout_ms = env.get("VIBECI_TEST_TIMEOUT")
    if timeout_ms:
        try:
            verification["timeout_seconds"] = int(timeout_ms) / 1000.0
        except ValueError as error:
            raise ConfigError(f"VIBECI_TEST_TIMEOUT must be an integer number of milliseconds: {timeout_ms}") from error
    return config


def resolve_paths(config: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    """Make ``project.repo_root`` and every ``paths`` entry absolute relative to ``base_dir``."""
    project = config.setdefault("project", {})
    repo_root = Path(str(project.get("repo_root") or "."))
    if not repo_root.is_absolute():
        repo_root = (base_dir / repo_root).resolve()
    project["repo_root"] = str(repo_root)

    paths = config.setdefault("paths", {})
    for key in _PATH_KEYS:
        value = paths.get(key)
        if not value:
            continue
        candidate = Path(str(value))
        if not candidate.is_absolute():
            candidate = (base_dir / candidate).resolve()
        paths[key] = str(candidate)
    return config


def load_config(config_path: Path | str, *, environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Load ``config_path`` over the defaults, apply env overrides and resolve paths."""
    path = Path(config_path)
    config = _merge(DEFAULT_CONFIG_TEMPLATE, read_config(path))
    apply_env_overrides(config, environ)
    return resolve_paths(config, path.resolve().parent)


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "apply_env_overrides",
    "copy_config_template",
    "load_config",
    "read_config",
    "resolve_paths",
    "write_config",
]
