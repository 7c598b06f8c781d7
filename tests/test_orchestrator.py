"""Tests for the install orchestrator."""

import json
from pathlib import Path
from typing import Callable

from cryptography.hazmat.primitives.asymmetric import ed25519
import httpx
import pytest

from conftest import sha256_hex, truncate_inside
from pm.config import FetchConfig, InstallConfig, PmConfig
from pm.exceptions import (
    ArchiveError,
    CacheError,
    ChecksumMismatchError,
    MissingDeclaredFileError,
    ResolutionError,
    TransportError,
    UndeclaredFileError,
    UntrustedSignatureError,
)
from pm.models import AVAILABLE_DB, CACHE_DIR, MANIFEST_ENTRY
from pm.packaging.fetcher import Fetcher
from pm.packaging.orchestrator import Installer, Stage

REMOTE = "https://packages.example.test/main"
FOO_FILES = {"bin/foo": b"#!/bin/sh\necho foo\n"}
BAR_FILES = {"bin/bar": b"#!/bin/sh\necho bar\n", "share/bar/README": b"bar docs"}


class Repository:
    """An in-memory package remote served through httpx.MockTransport."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.archives: dict[str, bytes] = {}
        self.requests: list[str] = []

    def publish(self, name: str, version: str, archive: Path) -> None:
        self.archives[f"/main/{name}-{version}.pm"] = archive.read_bytes()
        db_path = self.root / AVAILABLE_DB
        db_path.parent.mkdir(parents=True, exist_ok=True)
        packages = json.loads(db_path.read_text())["packages"] if db_path.exists() else []
        packages.append({"name": name, "version": version, "remote": REMOTE})
        db_path.write_text(json.dumps({"packages": packages}))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        data = self.archives.get(request.url.path)
        if data is None:
            return httpx.Response(404)
        return httpx.Response(200, content=data)


@pytest.fixture
def repo(root: Path) -> Repository:
    return Repository(root)


@pytest.fixture
def make_installer(root: Path, repo: Repository) -> Callable[..., Installer]:
    def _make(fail_fast: bool = False, **kwargs) -> Installer:
        config = PmConfig(
            fetch=FetchConfig(retries=0, backoff=0),
            install=InstallConfig(fail_fast=fail_fast),
        )
        fetcher = Fetcher(config.fetch, transport=httpx.MockTransport(repo.handler))
        return Installer(root, config=config, fetcher=fetcher, **kwargs)

    return _make


@pytest.mark.asyncio
async def test_install_valid_package(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES))

    report = await make_installer().install(["foo"])

    assert report.ok
    (result,) = report.results
    assert result.stage is Stage.DONE
    assert result.files == ["bin/foo"]
    assert (root / "bin/foo").read_bytes() == FOO_FILES["bin/foo"]
    assert (root / CACHE_DIR / "foo-1.0").is_file()


@pytest.mark.asyncio
async def test_flipped_digest_fails_content_stage(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    digest = sha256_hex(FOO_FILES["bin/foo"])
    flipped = ("b" if digest[0] == "a" else "a") + digest[1:]
    transcript = f"{flipped}\tbin/foo\n".encode()
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES, transcript=transcript))

    report = await make_installer().install(["foo"])

    (result,) = report.results
    assert result.stage is Stage.FAILED
    assert result.failed_stage is Stage.VERIFYING_CONTENT
    assert isinstance(result.error, ChecksumMismatchError)
    assert result.error.path == "bin/foo"
    assert not (root / "bin/foo").exists()


@pytest.mark.asyncio
async def test_removed_file_is_missing_declared_file(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES, omit=("bin/foo",)))

    report = await make_installer().install(["foo"])

    assert isinstance(report.results[0].error, MissingDeclaredFileError)
    assert not (root / "bin/foo").exists()


@pytest.mark.asyncio
async def test_added_file_is_undeclared(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    repo.publish(
        "foo", "1.0", make_package("foo-1.0", FOO_FILES, extra=[("bin/bar", b"bar")])
    )

    report = await make_installer().install(["foo"])

    assert isinstance(report.results[0].error, UndeclaredFileError)
    assert not (root / "bin/foo").exists()
    assert not (root / "bin/bar").exists()


@pytest.mark.asyncio
async def test_untrusted_signer_never_reaches_content_stage(
    root: Path,
    repo: Repository,
    make_package: Callable[..., Path],
    make_installer,
    untrusted_key: ed25519.Ed25519PrivateKey,
) -> None:
    digests: list[str] = []
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES, signer=untrusted_key))

    report = await make_installer(on_digest=digests.append).install(["foo"])

    (result,) = report.results
    assert result.failed_stage is Stage.VERIFYING_TRUST
    assert isinstance(result.error, UntrustedSignatureError)
    assert digests == []
    assert not (root / "bin/foo").exists()


@pytest.mark.asyncio
async def test_failing_sibling_does_not_block_report(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES, extra=[("bin/evil", b"x")]))
    repo.publish("bar", "2.0", make_package("bar-2.0", BAR_FILES))
    repo.publish("baz", "3.0", make_package("baz-3.0", {"bin/baz": b"baz"}))
    del repo.archives["/main/baz-3.0.pm"]

    report = await make_installer().install(["foo", "bar", "baz"])

    assert not report.ok
    assert [r.meta.pkg_id for r in report.succeeded] == ["bar-2.0"]
    by_id = {r.meta.pkg_id: r for r in report.results}
    assert by_id["foo-1.0"].failed_stage is Stage.VERIFYING_CONTENT
    assert by_id["baz-3.0"].failed_stage is Stage.FETCHING
    assert isinstance(by_id["baz-3.0"].error, TransportError)
    assert (root / "share/bar/README").read_bytes() == b"bar docs"
    with pytest.raises(UndeclaredFileError):
        report.raise_for_failures()


@pytest.mark.asyncio
async def test_fail_fast_stops_at_first_failure(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES, extra=[("bin/evil", b"x")]))
    repo.publish("bar", "2.0", make_package("bar-2.0", BAR_FILES))

    with pytest.raises(UndeclaredFileError):
        await make_installer(fail_fast=True).install(["foo", "bar"])
    assert not (root / "bin/bar").exists()


@pytest.mark.asyncio
async def test_fail_fast_fetch_failure_blocks_all_verification(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    digests: list[str] = []
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES))
    repo.publish("bar", "2.0", make_package("bar-2.0", BAR_FILES))
    del repo.archives["/main/bar-2.0.pm"]

    with pytest.raises(TransportError):
        await make_installer(fail_fast=True, on_digest=digests.append).install(["foo", "bar"])
    assert digests == []
    assert not (root / "bin/foo").exists()


@pytest.mark.asyncio
async def test_resolution_failure_precedes_network(
    repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES))

    with pytest.raises(ResolutionError):
        await make_installer().install(["foo", "nope"])
    assert repo.requests == []


@pytest.mark.asyncio
async def test_cache_path_must_be_a_directory(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    repo.publish("foo", "1.0", make_package("foo-1.0", FOO_FILES))
    cache_dir = root / CACHE_DIR
    cache_dir.parent.mkdir(parents=True)
    cache_dir.write_text("not a directory")

    with pytest.raises(CacheError, match="is not a directory"):
        await make_installer().install(["foo"])
    assert repo.requests == []


def test_ensure_cache_dir_is_idempotent(root: Path, make_installer) -> None:
    installer = make_installer()
    first = installer.ensure_cache_dir()
    assert installer.ensure_cache_dir() == first
    assert first.is_dir()


@pytest.mark.asyncio
async def test_truncated_archive_fails_only_its_package(
    root: Path, repo: Repository, make_package: Callable[..., Path], make_installer
) -> None:
    big_foo = {f"share/foo/page{i:03}": b"page %d\n" % i for i in range(300)}
    repo.publish("foo", "1.0", truncate_inside(make_package("foo-1.0", big_foo), MANIFEST_ENTRY))
    repo.publish("bar", "2.0", make_package("bar-2.0", BAR_FILES))

    report = await make_installer().install(["foo", "bar"])

    by_id = {r.meta.pkg_id: r for r in report.results}
    assert by_id["foo-1.0"].failed_stage is Stage.VERIFYING_TRUST
    assert isinstance(by_id["foo-1.0"].error, ArchiveError)
    assert by_id["foo-1.0"].error.package == "foo-1.0"
    assert by_id["bar-2.0"].stage is Stage.DONE
    assert (root / "bin/bar").read_bytes() == BAR_FILES["bin/bar"]
    assert not (root / "share/foo").exists()
