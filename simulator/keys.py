"""Signing key for simulator-issued tokens.

The key is either loaded from a PEM file or generated when the process starts.
It exists only so clients can verify token signatures against /o/jwks; it
carries no real trust.
"""

import base64
import logging
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "RS256"
DEFAULT_KEY_ID = "23456789"


def _int_to_base64url(n: int) -> str:
    byte_length = (n.bit_length() + 7) // 8
    return base64.urlsafe_b64encode(n.to_bytes(byte_length, "big")).rstrip(b"=").decode()


class SigningKey:
    """RSA key pair plus the key id placed in token headers."""

    def __init__(self, private_key: rsa.RSAPrivateKey, kid: str = DEFAULT_KEY_ID):
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.kid = kid
        self.algorithm = JWT_ALGORITHM

    @classmethod
    def generate(cls, kid: str = DEFAULT_KEY_ID) -> "SigningKey":
        logger.info("[STARTUP] Generated ephemeral RSA signing key")
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=2048), kid)

    @classmethod
    def from_pem_file(cls, path: Path, kid: str = DEFAULT_KEY_ID) -> "SigningKey":
        private_key = serialization.load_pem_private_key(path.read_bytes(), password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError(f"{path} does not contain an RSA private key")
        logger.info(f"[STARTUP] Loaded RSA signing key from {path}")
        return cls(private_key, kid)

    def to_jwk(self) -> dict:
        numbers = self.public_key.public_numbers()
        return {
            "kty": "RSA",
            "kid": self.kid,
            "use": "sig",
            "alg": self.algorithm,
            "n": _int_to_base64url(numbers.n),
            "e": _int_to_base64url(numbers.e),
        }

    def jwks(self) -> dict:
        return {"keys": [self.to_jwk()]}


def load_signing_key(path: Optional[str] = None, kid: str = DEFAULT_KEY_ID) -> SigningKey:
    """Load the key from ``path`` if given, otherwise generate one."""
    if path:
        return SigningKey.from_pem_file(Path(path), kid)
    return SigningKey.generate(kid)
