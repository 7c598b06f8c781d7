"""Trust and content verification of cached package archives."""

from collections.abc import Callable
import hashlib
from pathlib import Path
import tarfile
from typing import IO

from pyvider.telemetry import logger

from ..exceptions import (
    ArchiveError,
    ChecksumMismatchError,
    EntryNotFoundError,
    FormatError,
    MissingDeclaredFileError,
    PmError,
    SignatureMissingError,
    TrustError,
    UndeclaredFileError,
)
from ..keyring import TrustVerifier
from ..models import CONTROL_ENTRIES, MANIFEST_ENTRY, SIGNATURE_ENTRY
from .manifest import Manifest, parse_manifest
from .reader import open_archive, read_named

CHUNK_SIZE = 64 * 1024

DigestHook = Callable[[str], None]


def _with_package(error: PmError, package: str | None) -> PmError:
    if error.package is None:
        error.package = package
    return error


def hash_stream(stream: IO[bytes]) -> tuple[str, int]:
    """Streams `stream` through SHA-256 and returns (hexdigest, byte count)."""
    sha = hashlib.sha256()
    total = 0
    while chunk := stream.read(CHUNK_SIZE):
        sha.update(chunk)
        total += len(chunk)
    return sha.hexdigest(), total


def verify_trust(
    trust: TrustVerifier, archive_path: Path, package: str | None = None
) -> Manifest:
    """Authenticates the archive's manifest and returns it parsed.

    The manifest bytes are read once; the same bytes are verified and then
    parsed, so the returned mapping is exactly what was signed.
    """
    try:
        transcript = read_named(archive_path, MANIFEST_ENTRY)
    except EntryNotFoundError as e:
        raise FormatError(
            f"Archive has no {MANIFEST_ENTRY} entry",
            package=package,
            path=str(archive_path),
        ) from e
    except FormatError as e:
        raise _with_package(e, package)

    try:
        signature = read_named(archive_path, SIGNATURE_ENTRY)
    except EntryNotFoundError as e:
        raise SignatureMissingError(
            f"Archive has no {SIGNATURE_ENTRY} entry",
            package=package,
            path=str(archive_path),
        ) from e
    except (PmError, OSError) as e:
        raise TrustError(
            f"Reading manifest signature failed: {e}",
            package=package,
            path=str(archive_path),
        ) from e

    try:
        key_id = trust.verify(transcript, signature)
    except TrustError as e:
        raise _with_package(e, package)
    except OSError as e:
        raise TrustError(
            f"Trust store failed while verifying: {e}", package=package
        ) from e
    logger.info("Manifest signature verified", package=package, key=key_id)

    return parse_manifest(transcript, package=package)


def verify_contents(
    manifest: Manifest,
    archive_path: Path,
    package: str | None = None,
    on_digest: DigestHook | None = None,
) -> None:
    """Checks every content entry of the archive against a trusted manifest.

    Every regular file must be declared with a matching digest, and every
    declared file must be present exactly once.
    """
    remaining = set(manifest.paths())
    seen: set[str] = set()

    try:
        reader = open_archive(archive_path)
    except ArchiveError as e:
        raise _with_package(e, package)

    with reader:
        for entry in reader.entries():
            if entry.name in CONTROL_ENTRIES:
                continue
            if entry.is_dir:
                continue
            if not entry.is_file or entry.stream is None:
                raise FormatError(
                    f"Unsupported archive entry type for {entry.name!r}",
                    package=package,
                    path=entry.name,
                    offset=entry.offset,
                )
            if entry.name in seen:
                raise FormatError(
                    f"{entry.name!r} appears more than once in archive",
                    package=package,
                    path=entry.name,
                    offset=entry.offset,
                )

            expected = manifest.digest_for(entry.name)
            if expected is None:
                raise UndeclaredFileError(
                    f"extra file {entry.name!r} found in archive",
                    package=package,
                    path=entry.name,
                    offset=entry.offset,
                )

            if on_digest is not None:
                on_digest(entry.name)
            try:
                actual, size = hash_stream(entry.stream)
            except (OSError, tarfile.TarError) as e:
                raise ArchiveError(
                    f"Reading {entry.name!r} failed: {e}",
                    package=package,
                    path=entry.name,
                    offset=entry.offset,
                ) from e
            logger.debug("Entry digest computed", package=package, path=entry.name, size=size)

            if actual != expected:
                raise ChecksumMismatchError(
                    f"{entry.name!r} checksum was incorrect",
                    expected=expected,
                    actual=actual,
                    package=package,
                    path=entry.name,
                    offset=entry.offset,
                )
            seen.add(entry.name)
            remaining.discard(entry.name)

    if remaining:
        missing = sorted(remaining)
        raise MissingDeclaredFileError(
            f"{len(missing)} declared file(s) missing from archive: {', '.join(missing)}",
            missing=missing,
            package=package,
            path=missing[0],
        )
    logger.info("Archive contents verified", package=package, files=len(seen))


def verify_package(
    trust: TrustVerifier,
    archive_path: Path,
    package: str | None = None,
    on_digest: DigestHook | None = None,
) -> Manifest:
    """Runs trust verification, then content verification."""
    manifest = verify_trust(trust, archive_path, package=package)
    verify_contents(manifest, archive_path, package=package, on_digest=on_digest)
    return manifest
