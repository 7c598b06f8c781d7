"""Streaming reader for package archives stored in the local cache."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
import tarfile
from typing import IO

from attrs import define

from ..exceptions import (
    ArchiveError,
    ArchiveNotFoundError,
    ArchiveUnreadableError,
    EntryNotFoundError,
    FormatError,
)

# Control entries are small text files; anything bigger is not a manifest.
DEFAULT_CONTROL_LIMIT = 16 * 1024 * 1024


def normalize_name(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name.rstrip("/") if name != "/" else name


@define(frozen=True)
class ArchiveEntry:
    name: str
    is_dir: bool
    is_file: bool
    size: int
    offset: int
    stream: IO[bytes] | None


class ArchiveReader:
    """Forward-only view over the entries of one archive file.

    Entries are produced in physical order and can be traversed exactly
    once per open reader. Re-open the archive to traverse it again.
    """

    def __init__(self, archive_path: Path) -> None:
        if not archive_path.exists():
            raise ArchiveNotFoundError(
                "Archive not found", path=str(archive_path)
            )
        if not archive_path.is_file():
            raise ArchiveUnreadableError(
                "Archive is not a regular file", path=str(archive_path)
            )
        self.archive_path = archive_path
        self._consumed = False
        try:
            self._file = archive_path.open("rb")
        except OSError as e:
            raise ArchiveUnreadableError(
                f"Cannot open archive: {e}", path=str(archive_path)
            ) from e
        try:
            self._tar = tarfile.open(fileobj=self._file, mode="r|*")
        except tarfile.TarError as e:
            self._file.close()
            raise ArchiveUnreadableError(
                f"Not a readable tar archive: {e}", path=str(archive_path)
            ) from e

    def __enter__(self) -> "ArchiveReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._tar.close()
        self._file.close()

    def entries(self) -> Iterator[ArchiveEntry]:
        if self._consumed:
            raise ArchiveError(
                "Archive entries were already traversed; re-open the archive",
                path=str(self.archive_path),
            )
        self._consumed = True
        try:
            for member in self._tar:
                stream = self._tar.extractfile(member) if member.isfile() else None
                yield ArchiveEntry(
                    name=normalize_name(member.name),
                    is_dir=member.isdir(),
                    is_file=member.isfile(),
                    size=member.size,
                    offset=member.offset,
                    stream=stream,
                )
        except tarfile.TarError as e:
            raise ArchiveError(
                f"Archive traversal failed: {e}", path=str(self.archive_path)
            ) from e


def open_archive(archive_path: Path) -> ArchiveReader:
    return ArchiveReader(archive_path)


@contextmanager
def extract_named(archive_path: Path, name: str) -> Iterator[IO[bytes]]:
    """Yields a reader for the first entry called `name`.

    Duplicate entries are not rejected here: the first one in physical
    order wins. The archive file is closed when the context exits.
    """
    with open_archive(archive_path) as reader:
        for entry in reader.entries():
            if entry.name == name and entry.stream is not None:
                yield entry.stream
                return
        raise EntryNotFoundError(
            f"Entry {name!r} not found in archive", path=str(archive_path)
        )


def read_named(
    archive_path: Path, name: str, limit: int = DEFAULT_CONTROL_LIMIT
) -> bytes:
    """Reads a whole control entry into memory, refusing oversized entries."""
    try:
        with extract_named(archive_path, name) as stream:
            data = stream.read(limit + 1)
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(
            f"Reading {name!r} failed: {e}", path=str(archive_path)
        ) from e
    if len(data) > limit:
        raise FormatError(
            f"Entry {name!r} exceeds {limit} bytes", path=str(archive_path)
        )
    return data
