"""Parsing and serialization of the `manifest.sha256` transcript.

The transcript is line oriented: each line holds a lower-case SHA-256 hex
digest and a relative file path separated by a single tab. The signature
covers the literal bytes of the transcript, so a parsed `Manifest` always
keeps those bytes next to the mapping derived from them.
"""

from collections.abc import Mapping
import hashlib
from pathlib import PurePosixPath
import re
from types import MappingProxyType

from attrs import define, field

from ..exceptions import FormatError

_DIGEST_RE = re.compile(r"^[0-9a-fA-F]{64}$")


@define(frozen=True, slots=True)
class ManifestEntry:
    path: str
    digest: str


@define(frozen=True, slots=True)
class Manifest:
    entries: Mapping[str, str] = field(converter=lambda m: MappingProxyType(dict(m)))
    transcript: bytes

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: object) -> bool:
        return path in self.entries

    def digest_for(self, path: str) -> str | None:
        return self.entries.get(path)

    def paths(self) -> frozenset[str]:
        return frozenset(self.entries)


def validate_path(path: str) -> None:
    """Rejects paths that could escape the install root."""
    if not path:
        raise FormatError("Manifest path is empty")
    if "\x00" in path or "\\" in path:
        raise FormatError(f"Manifest path {path!r} contains forbidden characters")
    pure = PurePosixPath(path)
    if pure.is_absolute():
        raise FormatError(f"Manifest path {path!r} is absolute")
    if any(part in ("..", ".") for part in path.split("/")) or path.endswith("/"):
        raise FormatError(f"Manifest path {path!r} is not a normalized relative path")


def parse_manifest(transcript: bytes, package: str | None = None) -> Manifest:
    try:
        text = transcript.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FormatError(
            "Manifest is not valid UTF-8", package=package, offset=e.start
        ) from e

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    entries: dict[str, str] = {}
    offset = 0
    for lineno, line in enumerate(lines, start=1):
        line_offset = offset
        offset += len(line.encode("utf-8")) + 1
        if line.endswith("\r"):
            line = line[:-1]

        elems = line.split("\t")
        if len(elems) != 2:
            raise FormatError(
                f"manifest format error on line {lineno}; "
                f"got {len(elems)} elements, want 2",
                package=package,
                offset=line_offset,
            )
        digest, path = elems
        if not _DIGEST_RE.match(digest):
            raise FormatError(
                f"manifest line {lineno} has an invalid digest {digest!r}",
                package=package,
                offset=line_offset,
            )
        try:
            validate_path(path)
        except FormatError as e:
            raise FormatError(
                f"manifest line {lineno}: {e.message}",
                package=package,
                offset=line_offset,
            ) from e
        if path in entries:
            raise FormatError(
                f"manifest line {lineno} repeats path {path!r}",
                package=package,
                path=path,
                offset=line_offset,
            )
        entries[path] = digest.lower()

    return Manifest(entries=entries, transcript=transcript)


def serialize_manifest(entries: Mapping[str, str]) -> bytes:
    lines = []
    for path in sorted(entries):
        validate_path(path)
        digest = entries[path]
        if not _DIGEST_RE.match(digest):
            raise FormatError(f"Invalid digest {digest!r} for {path!r}")
        lines.append(f"{digest.lower()}\t{path}\n")
    return "".join(lines).encode("utf-8")


def build_manifest(files: Mapping[str, bytes]) -> Manifest:
    """Computes a manifest for in-memory file contents."""
    entries = {path: hashlib.sha256(data).hexdigest() for path, data in files.items()}
    return parse_manifest(serialize_manifest(entries))
