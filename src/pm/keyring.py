"""Directory-backed trust store of manifest signing keys."""

from pathlib import Path
from typing import Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa
from pyvider.telemetry import logger

from .crypto import PublicKey, dearmor, verify_signature
from .exceptions import TrustError, UntrustedSignatureError
from .models import KEYRING_DIR


class TrustVerifier(Protocol):
    def verify(self, manifest: bytes, signature: bytes) -> str | None: ...


class Keyring:
    """Holds the public keys trusted to sign package manifests."""

    def __init__(self, keys: dict[str, PublicKey] | None = None) -> None:
        self.keys = dict(keys or {})

    @classmethod
    def load(cls, root: Path, keyring_dir: Path | str = KEYRING_DIR) -> "Keyring":
        key_dir = root / keyring_dir
        keys: dict[str, PublicKey] = {}
        if not key_dir.is_dir():
            logger.warning("Keyring directory not found; no key is trusted", path=str(key_dir))
            return cls(keys)

        for key_path in sorted(key_dir.glob("*.pem")):
            try:
                key = serialization.load_pem_public_key(key_path.read_bytes())
            except (OSError, ValueError) as e:
                raise TrustError(f"Cannot load trusted key: {e}", path=str(key_path)) from e
            if not isinstance(key, (rsa.RSAPublicKey, ed25519.Ed25519PublicKey)):
                raise TrustError(
                    f"Unsupported key type {type(key).__name__}", path=str(key_path)
                )
            keys[key_path.stem] = key
        logger.debug("Keyring loaded", path=str(key_dir), keys=len(keys))
        return cls(keys)

    def __len__(self) -> int:
        return len(self.keys)

    def verify(self, manifest: bytes, signature: bytes) -> str:
        """Verifies an armored detached signature over the manifest bytes.

        Returns the name of the key that produced the signature.
        """
        raw_signature = dearmor(signature)
        for key_id, key in self.keys.items():
            if verify_signature(key, manifest, raw_signature):
                return key_id
        raise UntrustedSignatureError(
            "Manifest signature does not verify against any trusted key"
        )
