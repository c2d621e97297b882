"""Key registry and key agreement collaborators.

Channels only need a shared secret; how it is obtained is outside the
protocol. These adapters cover the common case of a public-key directory
plus X25519 agreement for pairwise channels.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .channels.constants import KDF_INFO_AGREEMENT, SHARED_SECRET_SIZE
from .channels.exceptions import InvalidSecretError, PublicKeyNotFoundError

logger = logging.getLogger(__name__)


def generate_keypair() -> tuple[bytes, bytes]:
    """Generate an X25519 keypair.

    Returns:
        Tuple of (private_key, public_key), both raw 32-byte values
    """
    private = X25519PrivateKey.generate()
    private_bytes = private.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return private_bytes, public_key_for(private_bytes)


def public_key_for(private_key: bytes) -> bytes:
    """Raw X25519 public key for a raw private key."""
    return (
        X25519PrivateKey.from_private_bytes(private_key)
        .public_key()
        .public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
    )


def agree(my_private: bytes, their_public: bytes) -> bytes:
    """Derive a pairwise shared secret.

    X25519 followed by HKDF-SHA256. Both sides get the same secret.

    Raises:
        InvalidSecretError: If either key is malformed or the exchange
            produces a degenerate result
    """
    try:
        private = X25519PrivateKey.from_private_bytes(my_private)
        shared = private.exchange(X25519PublicKey.from_public_bytes(their_public))
    except ValueError as e:
        raise InvalidSecretError(f"Key agreement failed: {e}") from e

    return HKDF(
        algorithm=hashes.SHA256(),
        length=SHARED_SECRET_SIZE,
        salt=None,
        info=KDF_INFO_AGREEMENT,
    ).derive(shared)


@runtime_checkable
class KeyRegistry(Protocol):
    """Directory of published public keys."""

    def lookup_public_key(self, identity: str) -> bytes:
        """Return the identity's public key.

        Raises:
            PublicKeyNotFoundError: If the identity has no key
        """
        ...


class InMemoryKeyRegistry:
    """Process-local key directory."""

    def __init__(self) -> None:
        self._keys: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def publish(self, identity: str, public_key: bytes) -> None:
        """Set or replace the identity's public key."""
        if len(public_key) != 32:
            raise ValueError("X25519 public keys are 32 bytes")
        with self._lock:
            self._keys[identity] = bytes(public_key)
        logger.info("Published public key for %s", identity)

    def revoke(self, identity: str) -> bool:
        with self._lock:
            return self._keys.pop(identity, None) is not None

    def lookup_public_key(self, identity: str) -> bytes:
        with self._lock:
            key = self._keys.get(identity)
        if key is None:
            raise PublicKeyNotFoundError(f"No public key for {identity}", {"identity": identity})
        return key
