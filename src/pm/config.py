"""Configuration for the install pipeline, read from `etc/pm/config.toml`."""

from pathlib import Path
import tomllib
from typing import Any

from attrs import define, evolve, field, validators

from .exceptions import ConfigError
from .models import CONFIG_FILE, KEYRING_DIR


@define(frozen=True, slots=True)
class FetchConfig:
    workers: int = field(default=4, validator=[validators.instance_of(int), validators.ge(1)])
    timeout: float = field(default=30.0, converter=float, validator=validators.gt(0))
    retries: int = field(default=3, validator=[validators.instance_of(int), validators.ge(0)])
    backoff: float = field(default=1.0, converter=float, validator=validators.ge(0))
    deadline: float | None = field(
        default=None,
        converter=lambda v: None if v is None else float(v),
    )


@define(frozen=True, slots=True)
class InstallConfig:
    fail_fast: bool = field(default=False, validator=validators.instance_of(bool))


@define(frozen=True, slots=True)
class PmConfig:
    fetch: FetchConfig = field(factory=FetchConfig)
    install: InstallConfig = field(factory=InstallConfig)
    keyring_dir: str = field(default=str(KEYRING_DIR), validator=validators.instance_of(str))

    def with_overrides(
        self,
        workers: int | None = None,
        fail_fast: bool | None = None,
        timeout: float | None = None,
    ) -> "PmConfig":
        fetch = self.fetch
        install = self.install
        if workers is not None:
            fetch = evolve(fetch, workers=workers)
        if timeout is not None:
            fetch = evolve(fetch, timeout=timeout)
        if fail_fast is not None:
            install = evolve(install, fail_fast=fail_fast)
        return evolve(self, fetch=fetch, install=install)


def _table(data: dict[str, Any], name: str) -> dict[str, Any]:
    table = data.get(name, {})
    if not isinstance(table, dict):
        raise ConfigError(f"[{name}] must be a table")
    return table


def load_config(root: Path, config_path: Path | None = None) -> PmConfig:
    """Loads the pipeline configuration, falling back to defaults if absent."""
    path = config_path or root / CONFIG_FILE
    if not path.exists():
        if config_path is not None:
            raise ConfigError("Configuration file not found", path=str(path))
        return PmConfig()

    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read configuration: {e}", path=str(path)) from e

    unknown = set(data) - {"fetch", "install", "trust"}
    if unknown:
        raise ConfigError(
            f"Unknown configuration tables: {', '.join(sorted(unknown))}", path=str(path)
        )

    trust_conf = _table(data, "trust")
    try:
        return PmConfig(
            fetch=FetchConfig(**_table(data, "fetch")),
            install=InstallConfig(**_table(data, "install")),
            keyring_dir=trust_conf.get("keyring_dir", str(KEYRING_DIR)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}", path=str(path)) from e
