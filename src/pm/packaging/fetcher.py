"""Downloads package archives into the local cache."""

import asyncio
from collections.abc import Iterable
import os
from pathlib import Path

from attrs import define, field
import httpx
from pyvider.telemetry import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import FetchConfig
from ..exceptions import CacheError, PmError, TransportError
from ..models import PARTIAL_SUFFIX, PackageMeta


@define
class FetchResult:
    meta: PackageMeta
    path: Path
    size: int = 0
    attempts: int = 0
    error: PmError | None = field(default=None)

    @property
    def ok(self) -> bool:
        return self.error is None


def is_transient(exception: BaseException) -> bool:
    """Network-level failures, 429 and 5xx responses are worth retrying."""
    if not isinstance(exception, TransportError):
        return False
    status = exception.status_code
    return status is None or status == 429 or status >= 500


class Fetcher:
    """Fetches archives concurrently with a bounded number of workers.

    Each package is written to `<cache_dir>/<pkg_id>.part` and renamed onto
    `<cache_dir>/<pkg_id>` once the transfer completes, so the cache never
    holds a truncated file under a package's final name.
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or FetchConfig()
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout),
            transport=self.transport,
            follow_redirects=True,
        )

    async def _download(
        self, client: httpx.AsyncClient, meta: PackageMeta, dest: Path
    ) -> int:
        partial = dest.with_name(dest.name + PARTIAL_SUFFIX)
        written = 0
        try:
            async with client.stream("GET", meta.url) as response:
                if not response.is_success:
                    raise TransportError(
                        f"GET {meta.url} returned HTTP {response.status_code}",
                        status_code=response.status_code,
                        package=meta.pkg_id,
                    )
                try:
                    with partial.open("wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
                            written += len(chunk)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(partial, dest)
                except OSError as e:
                    partial.unlink(missing_ok=True)
                    raise CacheError(
                        f"Writing {meta.url} to disk failed after {written} bytes: {e}",
                        package=meta.pkg_id,
                        path=str(dest),
                        offset=written,
                    ) from e
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise TransportError(
                f"GET {meta.url} failed after {written} bytes: {e!r}",
                package=meta.pkg_id,
                offset=written,
            ) from e
        return written

    async def _fetch_one(
        self,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        cache_dir: Path,
        meta: PackageMeta,
    ) -> FetchResult:
        result = FetchResult(meta=meta, path=cache_dir / meta.pkg_id)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.retries + 1),
            wait=wait_exponential(multiplier=self.config.backoff, max=10),
            retry=retry_if_exception(is_transient),
            reraise=True,
        )
        async with semaphore:
            logger.info("Fetching package", package=meta.pkg_id, url=meta.url)
            try:
                async for attempt in retrying:
                    with attempt:
                        result.attempts = attempt.retry_state.attempt_number
                        if result.attempts > 1:
                            logger.warning(
                                "Retrying package fetch",
                                package=meta.pkg_id,
                                attempt=result.attempts,
                            )
                        result.size = await self._download(client, meta, result.path)
            except PmError as e:
                logger.error("Fetch failed", package=meta.pkg_id, error=str(e))
                result.error = e
                return result
        logger.info("Fetched package", package=meta.pkg_id, bytes=result.size)
        return result

    async def fetch(
        self, cache_dir: Path, metas: Iterable[PackageMeta]
    ) -> list[FetchResult]:
        """Fetches every package and reports a result per package.

        A failing package does not stop its siblings. If the configured
        deadline passes, unfinished transfers are cancelled and reported as
        transport failures.
        """
        metas = list(metas)
        semaphore = asyncio.Semaphore(self.config.workers)
        async with self._client() as client:
            tasks = [
                asyncio.create_task(self._fetch_one(client, semaphore, cache_dir, meta))
                for meta in metas
            ]
            try:
                if tasks:
                    await asyncio.wait(tasks, timeout=self.config.deadline)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

        results = []
        for meta, task in zip(metas, tasks):
            if task.cancelled():
                results.append(
                    FetchResult(
                        meta=meta,
                        path=cache_dir / meta.pkg_id,
                        error=TransportError(
                            f"Fetch deadline of {self.config.deadline}s exceeded",
                            package=meta.pkg_id,
                        ),
                    )
                )
            else:
                results.append(task.result())
        return results
