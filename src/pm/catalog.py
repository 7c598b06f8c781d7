"""The database of packages available for installation."""

from collections.abc import Iterable
import json
from pathlib import Path
from typing import Protocol

from pyvider.telemetry import logger

from .exceptions import ResolutionError
from .models import AVAILABLE_DB, PackageMeta


class Catalog(Protocol):
    def installable(self, names: Iterable[str]) -> list[PackageMeta]: ...


def split_request(request: str) -> tuple[str, str | None]:
    """Splits `name` or `name@version` into its parts."""
    name, sep, version = request.partition("@")
    if not name or (sep and not version):
        raise ResolutionError(f"Malformed package request {request!r}")
    return name, version or None


class AvailableDb:
    """Catalog backed by the `available.json` file under the install root."""

    def __init__(self, metas: Iterable[PackageMeta]) -> None:
        self.by_name: dict[str, dict[str, PackageMeta]] = {}
        for meta in metas:
            versions = self.by_name.setdefault(meta.name, {})
            if meta.version in versions and versions[meta.version] != meta:
                raise ResolutionError(
                    f"Available db lists {meta.pkg_id} twice with different remotes"
                )
            versions[meta.version] = meta

    @classmethod
    def load(cls, root: Path) -> "AvailableDb":
        db_path = root / AVAILABLE_DB
        try:
            data = json.loads(db_path.read_text())
        except FileNotFoundError as e:
            raise ResolutionError("Available db not found", path=str(db_path)) from e
        except (OSError, ValueError) as e:
            raise ResolutionError(f"Cannot load available db: {e}", path=str(db_path)) from e

        records = data.get("packages") if isinstance(data, dict) else None
        if not isinstance(records, list):
            raise ResolutionError(
                "Available db must contain a 'packages' list", path=str(db_path)
            )
        metas = []
        for i, record in enumerate(records):
            try:
                metas.append(
                    PackageMeta(
                        name=record["name"],
                        version=record["version"],
                        remote=record["remote"],
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ResolutionError(
                    f"Invalid available db record #{i}: {e}", path=str(db_path)
                ) from e
        logger.debug("Available db loaded", path=str(db_path), packages=len(metas))
        return cls(metas)

    def installable(self, names: Iterable[str]) -> list[PackageMeta]:
        """Resolves every requested name, or fails for the whole batch."""
        chosen: dict[str, PackageMeta] = {}
        for request in names:
            name, version = split_request(request)
            versions = self.by_name.get(name)
            if not versions:
                raise ResolutionError(f"Package {name!r} is not available")

            if version is None:
                if len(versions) > 1:
                    raise ResolutionError(
                        f"Package {name!r} is available in several versions "
                        f"({', '.join(sorted(versions))}); request one as {name}@<version>"
                    )
                meta = next(iter(versions.values()))
            elif version in versions:
                meta = versions[version]
            else:
                raise ResolutionError(f"Package {name}@{version} is not available")

            previous = chosen.get(name)
            if previous is not None and previous != meta:
                raise ResolutionError(
                    f"Conflicting requests for {name!r}: "
                    f"{previous.version} and {meta.version}"
                )
            chosen[name] = meta

        if not chosen:
            raise ResolutionError("No packages requested")
        return list(chosen.values())
