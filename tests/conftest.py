"""Pytest fixtures for the entire pm test suite."""

import hashlib
import io
from pathlib import Path
import tarfile
from typing import Callable

from cryptography.hazmat.primitives.asymmetric import ed25519, rsa
import pytest

from pm.crypto import generate_keys, public_key_pem, sign_manifest
from pm.models import KEYRING_DIR, MANIFEST_ENTRY, SIGNATURE_ENTRY
from pm.packaging.manifest import serialize_manifest

# (name, data) pairs; data None marks a directory entry.
Entries = list[tuple[str, bytes | None]]


def write_archive(path: Path, entries: Entries) -> Path:
    """Writes a tar archive holding `entries` in the given order."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w") as tar:
        for name, data in entries:
            info = tarfile.TarInfo(name)
            if data is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            else:
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
    return path


def truncate_inside(path: Path, name: str, keep: int = 1024) -> Path:
    """Cuts the archive off `keep` bytes into the data of entry `name`."""
    with tarfile.open(path) as tar:
        member = tar.getmember(name)
    assert member.size > keep
    with path.open("r+b") as f:
        f.truncate(member.offset_data + keep)
    return path


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.fixture(scope="session")
def key_pair() -> tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    """Generates a single RSA key pair for the entire test session."""
    return generate_keys(key_size=2048)


@pytest.fixture(scope="session")
def private_key(key_pair: tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]) -> rsa.RSAPrivateKey:
    return key_pair[0]


@pytest.fixture(scope="session")
def public_key(key_pair: tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]) -> rsa.RSAPublicKey:
    return key_pair[1]


@pytest.fixture(scope="session")
def untrusted_key() -> ed25519.Ed25519PrivateKey:
    """A signing key that is never placed in any keyring."""
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def root(tmp_path: Path, public_key: rsa.RSAPublicKey) -> Path:
    """An install root whose keyring trusts the session RSA key."""
    install_root = tmp_path / "root"
    key_dir = install_root / KEYRING_DIR
    key_dir.mkdir(parents=True)
    (key_dir / "release.pem").write_bytes(public_key_pem(public_key))
    return install_root


@pytest.fixture
def make_package(
    tmp_path: Path, private_key: rsa.RSAPrivateKey
) -> Callable[..., Path]:
    """
    A factory fixture that writes a signed package archive.

    `files` become content entries and are listed in the manifest. The
    manifest transcript, the signer, and extra or omitted entries can be
    overridden to build tampered archives.
    """

    def _make(
        name: str,
        files: dict[str, bytes],
        *,
        transcript: bytes | None = None,
        signer=private_key,
        signature: bytes | None = None,
        extra: Entries | None = None,
        omit: tuple[str, ...] = (),
        directories: tuple[str, ...] = (),
        dest_dir: Path | None = None,
    ) -> Path:
        if transcript is None:
            transcript = serialize_manifest(
                {path: sha256_hex(data) for path, data in files.items()}
            )
        if signature is None and signer is not None:
            signature = sign_manifest(transcript, signer)

        entries: Entries = [(MANIFEST_ENTRY, transcript)]
        if signature is not None:
            entries.append((SIGNATURE_ENTRY, signature))
        entries.extend((d, None) for d in directories)
        entries.extend(
            (path, data) for path, data in files.items() if path not in omit
        )
        entries.extend(extra or [])
        return write_archive((dest_dir or tmp_path / "archives") / name, entries)

    return _make
