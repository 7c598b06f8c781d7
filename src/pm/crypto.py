"""
Centralized cryptographic operations for manifest signing and verification.
"""

import base64
import binascii

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from .exceptions import MalformedSignatureError

ARMOR_BEGIN = b"-----BEGIN PM SIGNATURE-----"
ARMOR_END = b"-----END PM SIGNATURE-----"

PublicKey = rsa.RSAPublicKey | ed25519.Ed25519PublicKey
PrivateKey = rsa.RSAPrivateKey | ed25519.Ed25519PrivateKey

_PSS = padding.PSS(
    mgf=padding.MGF1(hashes.SHA256()), salt_length=hashes.SHA256.digest_size
)


def generate_keys(key_size: int = 4096) -> tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    """Generates a new RSA key pair for manifest signing."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return private_key, private_key.public_key()


def public_key_pem(public_key: PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def armor(signature: bytes) -> bytes:
    body = base64.encodebytes(signature)
    return ARMOR_BEGIN + b"\n" + body + ARMOR_END + b"\n"


def dearmor(data: bytes) -> bytes:
    """Extracts the raw signature from an ASCII-armored block."""
    lines = [line.strip() for line in data.strip().splitlines()]
    if len(lines) < 3 or lines[0] != ARMOR_BEGIN or lines[-1] != ARMOR_END:
        raise MalformedSignatureError("Signature is not an armored PM SIGNATURE block")
    try:
        signature = base64.b64decode(b"".join(lines[1:-1]), validate=True)
    except binascii.Error as e:
        raise MalformedSignatureError(f"Signature body is not valid base64: {e}") from e
    if not signature:
        raise MalformedSignatureError("Signature body is empty")
    return signature


def sign_manifest(transcript: bytes, private_key: PrivateKey) -> bytes:
    """Signs the literal manifest bytes and returns an armored signature."""
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        signature = private_key.sign(transcript)
    else:
        signature = private_key.sign(transcript, _PSS, hashes.SHA256())
    return armor(signature)


def verify_signature(public_key: PublicKey, transcript: bytes, signature: bytes) -> bool:
    try:
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, transcript)
        else:
            public_key.verify(signature, transcript, _PSS, hashes.SHA256())
    except InvalidSignature:
        return False
    return True
