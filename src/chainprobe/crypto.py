"""Ed25519 keypairs with deterministic derivation from seeds and dev URIs."""

from __future__ import annotations

from dataclasses import dataclass

from blake3 import blake3
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .config import IDENTITY_SIZE, SEED_SIZE, SIGNATURE_SIZE


@dataclass(frozen=True)
class Keypair:
    seed: bytes

    def __post_init__(self) -> None:
        if len(self.seed) != SEED_SIZE:
            raise ValueError(f"seed must be {SEED_SIZE} bytes")

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        return cls(bytes(seed))

    @classmethod
    def from_uri(cls, uri: str) -> "Keypair":
        """Derive a dev keypair from a URI such as ``//Alice``."""
        return cls(blake3(uri.encode()).digest())

    @property
    def _private(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(self.seed)

    @property
    def public_key(self) -> bytes:
        return self._private.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def sign(self, message: bytes) -> bytes:
        return self._private.sign(bytes(message))

    def __repr__(self) -> str:
        return f"Keypair(public_key={self.public_key.hex()})"


def verify_signature(message: bytes, signature: bytes, public_key: bytes) -> bool:
    """Return True iff `signature` is valid for `message` under `public_key`.

    Malformed keys or signatures verify as False rather than raising.
    """
    if len(public_key) != IDENTITY_SIZE or len(signature) != SIGNATURE_SIZE:
        return False
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes(public_key))
        key.verify(bytes(signature), bytes(message))
    except (InvalidSignature, ValueError):
        return False
    return True
