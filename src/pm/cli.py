"""The `pm` command-line interface."""

import asyncio
import importlib.metadata
from pathlib import Path
import shutil

import click

from .config import load_config
from .exceptions import PmError
from .keyring import Keyring
from .models import CACHE_DIR
from .packaging.committer import Committer
from .packaging.orchestrator import Installer
from .packaging.verifier import verify_package

try:
    __version__ = importlib.metadata.version("pm-installer")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0-dev"

root_option = click.option(
    "--root",
    default="/",
    envvar="PM_ROOT",
    show_default=True,
    type=click.Path(file_okay=False, resolve_path=True),
    help="Root directory packages are installed under.",
)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(
    __version__,
    "-V",
    "--version",
    prog_name="pm",
    message="%(prog)s version %(version)s",
)
def cli() -> None:
    """Fetches, verifies and installs signed packages."""
    pass


@cli.command("install")
@click.argument("packages", nargs=-1, required=True)
@root_option
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    help="Override the configuration file path (default: <root>/etc/pm/config.toml).",
)
@click.option("--workers", type=click.IntRange(min=1), help="Maximum concurrent downloads.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Per-request timeout in seconds.")
@click.option(
    "--fail-fast/--keep-going",
    default=None,
    help="Stop at the first failing package instead of reporting every package.",
)
def install_command(
    packages: tuple[str, ...],
    root: str,
    config_path: str | None,
    workers: int | None,
    timeout: float | None,
    fail_fast: bool | None,
) -> None:
    """Installs PACKAGES (`name` or `name@version`)."""
    root_path = Path(root)
    try:
        config = load_config(
            root_path, Path(config_path) if config_path else None
        ).with_overrides(workers=workers, fail_fast=fail_fast, timeout=timeout)
        installer = Installer(root_path, config=config)
        report = asyncio.run(installer.install(packages))
    except PmError as e:
        click.secho(f"❌ Install failed [{e.stage}]: {e}", fg="red", err=True)
        raise click.Abort() from e

    for result in report.results:
        if result.ok:
            click.secho(
                f"✅ {result.meta.pkg_id}: installed {len(result.files)} file(s)",
                fg="green",
            )
        else:
            click.secho(
                f"❌ {result.meta.pkg_id}: failed while {result.failed_stage.value}: {result.error}",
                fg="red",
                err=True,
            )
    if not report.ok:
        raise click.Abort()


@cli.command("verify")
@click.argument(
    "archive",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
)
@root_option
def verify_command(archive: str, root: str) -> None:
    """Checks the signature and contents of a package ARCHIVE."""
    root_path = Path(root)
    archive_path = Path(archive)
    click.echo(f"🔍 Verifying archive '{archive_path}'...")
    try:
        config = load_config(root_path)
        keyring = Keyring.load(root_path, config.keyring_dir)
        manifest = verify_package(keyring, archive_path, package=archive_path.name)
    except PmError as e:
        click.secho(f"❌ Verification failed [{e.stage}]: {e}", fg="red", err=True)
        raise click.Abort() from e
    click.secho(
        f"✅ Signature and {len(manifest)} declared file(s) verified.", fg="green"
    )


@cli.command("recover")
@root_option
def recover_command(root: str) -> None:
    """Rolls back commits interrupted by a crash."""
    try:
        recovered = Committer(Path(root)).recover()
    except PmError as e:
        click.secho(f"❌ Recovery failed: {e}", fg="red", err=True)
        raise click.Abort() from e
    if not recovered:
        click.secho("i️ No interrupted commits found.", fg="yellow")
        return
    for package_id in recovered:
        click.secho(f"✅ Rolled back interrupted commit of {package_id}", fg="green")


@cli.command("clean")
@root_option
def clean_command(root: str) -> None:
    """Removes cached package archives."""
    click.echo("🧹 Cleaning package cache...")
    cache_dir = Path(root) / CACHE_DIR
    if cache_dir.exists():
        shutil.rmtree(cache_dir)
        click.secho(f"✅ Removed cache directory: {cache_dir}", fg="green")
    else:
        click.secho("i️ Cache directory not found, nothing to clean.", fg="yellow")


main = cli

if __name__ == "__main__":
    cli()
