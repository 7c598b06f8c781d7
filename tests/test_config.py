"""Tests for loading the pipeline configuration."""

from pathlib import Path

import pytest

from pm.config import PmConfig, load_config
from pm.exceptions import ConfigError
from pm.models import CONFIG_FILE


def write_config(root: Path, content: str) -> Path:
    path = root / CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(tmp_path)
    assert config == PmConfig()
    assert config.fetch.workers == 4
    assert config.fetch.retries == 3
    assert config.fetch.deadline is None
    assert config.install.fail_fast is False
    assert config.keyring_dir == "etc/pm/keyring"


def test_load_config_from_root(tmp_path: Path) -> None:
    write_config(
        tmp_path,
        """
[fetch]
workers = 8
timeout = 5
deadline = 120

[install]
fail_fast = true

[trust]
keyring_dir = "etc/pm/trusted"
""",
    )
    config = load_config(tmp_path)
    assert config.fetch.workers == 8
    assert config.fetch.timeout == 5.0
    assert config.fetch.deadline == 120.0
    assert config.install.fail_fast is True
    assert config.keyring_dir == "etc/pm/trusted"


def test_cli_overrides_win(tmp_path: Path) -> None:
    write_config(tmp_path, "[fetch]\nworkers = 8\n[install]\nfail_fast = true\n")
    config = load_config(tmp_path).with_overrides(workers=1, fail_fast=False)
    assert config.fetch.workers == 1
    assert config.install.fail_fast is False


@pytest.mark.parametrize(
    "content, message",
    [
        ("[fetch]\nworkers = 0\n", "Invalid configuration"),
        ("[fetch]\nretries = -1\n", "Invalid configuration"),
        ("[fetch]\nthreads = 2\n", "Invalid configuration"),
        ("[install]\nfail_fast = 'yes'\n", "Invalid configuration"),
        ("[network]\nproxy = 'x'\n", "Unknown configuration tables: network"),
        ("fetch = 3\n", "must be a table"),
        ("[fetch\n", "Cannot read configuration"),
    ],
)
def test_invalid_config(tmp_path: Path, content: str, message: str) -> None:
    write_config(tmp_path, content)
    with pytest.raises(ConfigError, match=message):
        load_config(tmp_path)


def test_explicit_config_path_must_exist(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path, tmp_path / "missing.toml")
