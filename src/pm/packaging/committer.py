"""Journaled commit of verified archives onto the install root.

A commit runs in three phases:

1. Every declared file is extracted into a private staging directory and
   hashed again while it is written, so the bytes that get installed are
   the bytes the trusted manifest describes.
2. A journal naming the staging directory and every target path is written.
   Its presence marks the commit generation as in flight.
3. Existing targets are moved into the staging backup area and the staged
   files are renamed into place. Removing the journal is the commit point.

If anything fails before the commit point, or the process dies and
`Committer.recover()` runs later, the journal plus what is left on disk is
enough to put every target back the way it was.
"""

import hashlib
import json
import os
from pathlib import Path
import shutil
import tarfile

from pyvider.telemetry import logger

from ..exceptions import (
    ArchiveError,
    ChecksumMismatchError,
    CommitError,
    MissingDeclaredFileError,
    PmError,
    UndeclaredFileError,
)
from ..models import CONTROL_ENTRIES, STATE_DIR
from .manifest import Manifest
from .reader import open_archive
from .verifier import CHUNK_SIZE

INSTALLED_DIR = STATE_DIR / "installed"
JOURNAL_DIR = STATE_DIR / "journal"
STAGING_DIR = STATE_DIR / "staging"
GENERATION_FILE = STATE_DIR / "generation"


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class Committer:
    def __init__(self, root: Path) -> None:
        self.root = root

    def receipt_path(self, package_id: str) -> Path:
        return self.root / INSTALLED_DIR / f"{package_id}.sha256"

    def is_installed(self, package_id: str) -> bool:
        return self.receipt_path(package_id).is_file()

    def _next_generation(self) -> int:
        gen_path = self.root / GENERATION_FILE
        try:
            current = int(gen_path.read_text().strip())
        except FileNotFoundError:
            current = 0
        except ValueError as e:
            raise CommitError(f"Corrupt generation marker: {e}", path=str(gen_path)) from e
        generation = current + 1
        _write_atomic(gen_path, f"{generation}\n".encode())
        return generation

    def _target(self, rel_path: str) -> Path:
        target = self.root / rel_path
        root = self.root.resolve()
        parent = target.parent.resolve()
        if parent != root and root not in parent.parents:
            raise CommitError(f"Install path escapes the root via {parent}", path=rel_path)
        if target.is_dir() and not target.is_symlink():
            raise CommitError("A directory exists where a file is to be installed", path=rel_path)
        return target

    def _stage(
        self, archive_path: Path, manifest: Manifest, package_id: str, files_dir: Path
    ) -> None:
        remaining = set(manifest.paths())
        with open_archive(archive_path) as reader:
            for entry in reader.entries():
                if entry.name in CONTROL_ENTRIES or entry.is_dir:
                    continue
                expected = manifest.digest_for(entry.name)
                if expected is None or entry.stream is None:
                    raise UndeclaredFileError(
                        f"Archive changed since verification: {entry.name!r} is not declared",
                        package=package_id,
                        path=entry.name,
                    )
                staged = files_dir / entry.name
                staged.parent.mkdir(parents=True, exist_ok=True)
                sha = hashlib.sha256()
                with staged.open("wb") as f:
                    try:
                        while chunk := entry.stream.read(CHUNK_SIZE):
                            sha.update(chunk)
                            f.write(chunk)
                    except tarfile.TarError as e:
                        raise ArchiveError(
                            f"Archive changed since verification: reading {entry.name!r} failed: {e}",
                            package=package_id,
                            path=entry.name,
                            offset=entry.offset,
                        ) from e
                    f.flush()
                    os.fsync(f.fileno())
                if sha.hexdigest() != expected:
                    raise ChecksumMismatchError(
                        f"Archive changed since verification: {entry.name!r} checksum was incorrect",
                        expected=expected,
                        actual=sha.hexdigest(),
                        package=package_id,
                        path=entry.name,
                    )
                remaining.discard(entry.name)
        if remaining:
            missing = sorted(remaining)
            raise MissingDeclaredFileError(
                f"Archive changed since verification: {', '.join(missing)} missing",
                missing=missing,
                package=package_id,
            )

    def _rollback(self, journal: dict) -> None:
        staging = Path(journal["staging"])
        for rel_path in reversed(journal["files"]):
            target = self.root / rel_path
            staged = staging / "files" / rel_path
            backup = staging / "backup" / rel_path
            if backup.exists() or backup.is_symlink():
                os.replace(backup, target)
            elif not staged.exists() and (target.exists() or target.is_symlink()):
                target.unlink()

    def _cleanup(self, journal_path: Path, staging: Path) -> None:
        journal_path.unlink(missing_ok=True)
        try:
            shutil.rmtree(staging)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove staging directory", path=str(staging), error=str(e))

    def commit(self, archive_path: Path, manifest: Manifest, package_id: str) -> list[str]:
        """Installs the declared files of a verified archive, or nothing.

        Returns the installed paths, relative to the root.
        """
        journal_path = self.root / JOURNAL_DIR / f"{package_id}.json"
        if journal_path.exists():
            raise CommitError(
                "An interrupted commit is pending; run recovery first",
                package=package_id,
                path=str(journal_path),
            )

        reserved = [p for p in manifest.paths() if p.startswith(f"{STATE_DIR}/")]
        if reserved:
            raise CommitError(
                f"Package declares files inside the package database: {', '.join(sorted(reserved))}",
                package=package_id,
            )

        generation = self._next_generation()
        staging = self.root / STAGING_DIR / f"{package_id}.{generation}"
        receipt_rel = str(INSTALLED_DIR / f"{package_id}.sha256")
        files = sorted(manifest.paths()) + [receipt_rel]
        logger.info("Staging package", package=package_id, generation=generation)
        try:
            self._stage(archive_path, manifest, package_id, staging / "files")
            _write_atomic(staging / "files" / receipt_rel, manifest.transcript)
        except PmError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise CommitError(f"Staging failed: {e}", package=package_id) from e

        journal = {
            "package": package_id,
            "generation": generation,
            "staging": str(staging),
            "files": files,
        }
        try:
            _write_atomic(journal_path, json.dumps(journal, indent=2).encode())
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise CommitError(f"Writing commit journal failed: {e}", package=package_id) from e

        try:
            for rel_path in files:
                target = self._target(rel_path)
                target.parent.mkdir(parents=True, exist_ok=True)
                if target.exists() or target.is_symlink():
                    backup = staging / "backup" / rel_path
                    backup.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(target, backup)
                os.replace(staging / "files" / rel_path, target)
        except (OSError, CommitError) as e:
            logger.error("Commit failed, rolling back", package=package_id, error=str(e))
            try:
                self._rollback(journal)
            except OSError as rollback_error:
                raise CommitError(
                    f"Rollback failed ({rollback_error}); journal kept for recovery",
                    package=package_id,
                    path=str(journal_path),
                ) from e
            self._cleanup(journal_path, staging)
            if isinstance(e, CommitError):
                if e.package is None:
                    e.package = package_id
                raise
            raise CommitError(f"Commit failed: {e}", package=package_id) from e

        self._cleanup(journal_path, staging)
        logger.info("Package committed", package=package_id, files=len(files) - 1)
        return files[:-1]

    def recover(self) -> list[str]:
        """Rolls back every commit that was interrupted before completing."""
        journal_dir = self.root / JOURNAL_DIR
        if not journal_dir.is_dir():
            return []
        recovered = []
        for journal_path in sorted(journal_dir.glob("*.json")):
            try:
                journal = json.loads(journal_path.read_text())
                self._rollback(journal)
            except (OSError, ValueError, KeyError) as e:
                raise CommitError(f"Recovery failed: {e}", path=str(journal_path)) from e
            self._cleanup(journal_path, Path(journal["staging"]))
            logger.warning(
                "Rolled back interrupted commit",
                package=journal["package"],
                generation=journal["generation"],
            )
            recovered.append(journal["package"])
        return recovered
