"""Core logic for installing packages: resolve, fetch, verify, commit."""

from collections.abc import Iterable
import enum
from pathlib import Path

from attrs import define, field
from pyvider.telemetry import logger

from ..catalog import AvailableDb, Catalog
from ..config import PmConfig
from ..exceptions import CacheError, PmError
from ..keyring import Keyring, TrustVerifier
from ..models import CACHE_DIR, PackageMeta
from .committer import Committer
from .fetcher import Fetcher
from .verifier import DigestHook, verify_contents, verify_trust


class Stage(enum.Enum):
    RESOLVING = "resolving"
    FETCHING = "fetching"
    VERIFYING_TRUST = "verifying-trust"
    VERIFYING_CONTENT = "verifying-content"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@define
class PackageResult:
    meta: PackageMeta
    stage: Stage = Stage.FETCHING
    failed_stage: Stage | None = None
    error: PmError | None = None
    files: list[str] = field(factory=list)

    @property
    def ok(self) -> bool:
        return self.stage is Stage.DONE

    def fail(self, error: PmError) -> None:
        self.failed_stage = self.stage
        self.stage = Stage.FAILED
        self.error = error


@define
class InstallReport:
    results: list[PackageResult] = field(factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def succeeded(self) -> list[PackageResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[PackageResult]:
        return [r for r in self.results if r.stage is Stage.FAILED]

    def raise_for_failures(self) -> None:
        for result in self.failed:
            if result.error is not None:
                raise result.error


class Installer:
    """Sequences the install pipeline for a batch of requested packages.

    Trust verification always completes before content verification, and
    only packages that pass both are committed. By default every package
    gets its own result; with `install.fail_fast` the first failure is
    raised and nothing after it is verified or committed.
    """

    def __init__(
        self,
        root: Path,
        config: PmConfig | None = None,
        catalog: Catalog | None = None,
        trust: TrustVerifier | None = None,
        fetcher: Fetcher | None = None,
        committer: Committer | None = None,
        on_digest: DigestHook | None = None,
    ) -> None:
        self.root = root
        self.config = config or PmConfig()
        self.catalog = catalog
        self.trust = trust
        self.fetcher = fetcher or Fetcher(self.config.fetch)
        self.committer = committer or Committer(root)
        self.on_digest = on_digest

    @property
    def cache_dir(self) -> Path:
        return self.root / CACHE_DIR

    def ensure_cache_dir(self) -> Path:
        cache_dir = self.cache_dir
        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
        except FileExistsError as e:
            raise CacheError(f"{cache_dir} is not a directory", path=str(cache_dir)) from e
        except OSError as e:
            raise CacheError(
                f"Creating cache directory failed: {e}", path=str(cache_dir)
            ) from e
        if not cache_dir.is_dir():
            raise CacheError(f"{cache_dir} is not a directory", path=str(cache_dir))
        return cache_dir

    def resolve(self, names: Iterable[str]) -> list[PackageMeta]:
        logger.info("Resolving packages", stage=Stage.RESOLVING.value)
        if self.catalog is None:
            self.catalog = AvailableDb.load(self.root)
        return self.catalog.installable(names)

    def _fail(self, result: PackageResult, error: PmError) -> None:
        result.fail(error)
        logger.error(
            "Package failed",
            package=result.meta.pkg_id,
            stage=result.failed_stage.value,
            error=str(error),
        )
        if self.config.install.fail_fast:
            raise error

    def process(self, result: PackageResult, archive_path: Path) -> None:
        """Verifies and commits one fetched package, recording the outcome."""
        pkg_id = result.meta.pkg_id
        try:
            result.stage = Stage.VERIFYING_TRUST
            logger.info("Verifying manifest trust", package=pkg_id)
            manifest = verify_trust(self.trust, archive_path, package=pkg_id)

            result.stage = Stage.VERIFYING_CONTENT
            logger.info("Verifying package contents", package=pkg_id)
            verify_contents(manifest, archive_path, package=pkg_id, on_digest=self.on_digest)

            result.stage = Stage.COMMITTING
            logger.info("Committing package", package=pkg_id)
            result.files = self.committer.commit(archive_path, manifest, pkg_id)
        except PmError as e:
            self._fail(result, e)
            return
        result.stage = Stage.DONE

    async def install(self, names: Iterable[str]) -> InstallReport:
        metas = self.resolve(names)
        cache_dir = self.ensure_cache_dir()
        if self.trust is None:
            self.trust = Keyring.load(self.root, self.config.keyring_dir)

        report = InstallReport([PackageResult(meta=m) for m in metas])
        logger.info("Fetching packages", stage=Stage.FETCHING.value, count=len(metas))
        fetched = await self.fetcher.fetch(cache_dir, metas)

        by_id = {r.meta.pkg_id: r for r in report.results}
        for fetch_result in fetched:
            if not fetch_result.ok:
                self._fail(by_id[fetch_result.meta.pkg_id], fetch_result.error)

        for fetch_result in fetched:
            result = by_id[fetch_result.meta.pkg_id]
            if result.stage is Stage.FAILED:
                continue
            self.process(result, fetch_result.path)

        logger.info(
            "Install finished",
            succeeded=len(report.succeeded),
            failed=len(report.failed),
        )
        return report
