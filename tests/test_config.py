from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from vibeci.config import (
    DEFAULT_CONFIG_TEMPLATE,
    ConfigError,
    apply_env_overrides,
    copy_config_template,
    load_config,
    write_config,
)


def test_load_config_merges_defaults_and_resolves_paths(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump({"iteration": {"max_iterations": 5}, "paths": {"artifacts": "out/artifacts"}}),
        encoding="utf-8",
    )

    config = load_config(config_path, environ={})

    assert config["iteration"]["max_iterations"] == 5
    assert config["iteration"]["branch_prefix"] == "vibeci/task-"
    assert config["paths"]["artifacts"] == str((tmp_path / "out" / "artifacts").resolve())
    assert config["paths"]["db_path"] == str((tmp_path / "data" / "vibeci.sqlite").resolve())
    assert config["project"]["repo_root"] == str(tmp_path.resolve())


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    write_config(config_path, copy_config_template())

    config = load_config(
        config_path,
        environ={
            "GEMINI_API_KEY": "key",
            "GEMINI_MODEL": "gemini-test",
            "VIBECI_TEST_TIMEOUT": "1500",
            "VIBECI_DATABASE_PATH": "/var/lib/vibeci/state.sqlite",
            "VIBECI_CLEANUP_SNAPSHOTS": "true",
        },
    )

    assert config["models"]["api_key"] == "key"
    assert config["models"]["default"] == "gemini-test"
    assert config["verification"]["timeout_seconds"] == 1.5
    assert config["paths"]["db_path"] == "/var/lib/vibeci/state.sqlite"
    assert config["iteration"]["cleanup_snapshots"] is True


def test_invalid_timeout_override_is_rejected() -> None:
    with pytest.raises(ConfigError):
        apply_env_overrides(copy_config_template(), {"VIBECI_TEST_TIMEOUT": "soon"})


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml", environ={})

    broken = tmp_path / "broken.yaml"
    broken.write_text("project: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(broken, environ={})

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(scalar, environ={})


def test_template_copy_is_independent() -> None:
    copy = copy_config_template()
    copy["iteration"]["max_iterations"] = 99

    assert DEFAULT_CONFIG_TEMPLATE["iteration"]["max_iterations"] == 3
