# delivery/signing/rsa.py
"""
RSA goal signing algorithm.

PKCS#1 v1.5 signatures over SHA-512, base64 encoded. Keys are PEM
strings; private keys may be passphrase protected.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from ..errors import GoalSigningError

DEFAULT_ALGORITHM = "rsa-sha512"


@dataclass
class GoalSigningKey:
    """Private key used to sign outgoing goals."""
    name: str
    private_key: str
    public_key: Optional[str] = None
    passphrase: Optional[str] = None
    algorithm: str = DEFAULT_ALGORITHM


@dataclass
class GoalVerificationKey:
    """Public key used to verify incoming goals."""
    name: str
    public_key: str
    algorithm: str = DEFAULT_ALGORITHM


def load_private_key(pem: str, passphrase: Optional[str] = None):
    try:
        return serialization.load_pem_private_key(
            pem.encode("utf-8"),
            password=passphrase.encode("utf-8") if passphrase else None,
        )
    except (ValueError, TypeError) as e:
        raise GoalSigningError(f"Unable to load private signing key: {e}") from e


def public_key_pem(private_pem: str, passphrase: Optional[str] = None) -> str:
    """Derive the PEM encoded public key of a private key."""
    private_key = load_private_key(private_pem, passphrase)
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


class RsaGoalSigningAlgorithm:
    """RSA-SHA512 goal signing."""

    name = DEFAULT_ALGORITHM

    def sign(self, message: str, key: GoalSigningKey) -> str:
        private_key = load_private_key(key.private_key, key.passphrase)
        signature = private_key.sign(
            message.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA512(),
        )
        return base64.b64encode(signature).decode("ascii")

    def verify(self, message: str, signature: str, key: GoalVerificationKey) -> bool:
        try:
            raw = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return False

        try:
            public_key = serialization.load_pem_public_key(key.public_key.encode("utf-8"))
        except ValueError as e:
            raise GoalSigningError(f"Unable to load verification key '{key.name}': {e}") from e

        try:
            public_key.verify(raw, message.encode("utf-8"), padding.PKCS1v15(), hashes.SHA512())
            return True
        except InvalidSignature:
            return False
