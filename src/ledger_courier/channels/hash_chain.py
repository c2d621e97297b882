"""Deterministic channel identifiers and per-index sequence hashes.

Everything here is a pure function of its arguments:

    channel_id = HMAC-SHA512(secret, members_sorted || context)
    slot_key   = Ed25519(HMAC-SHA512(channel_id, "slot" || n)[:32])
    h(n)       = SHA512(public_bytes(slot_key))

The sequence hash therefore commits to a per-slot verification key. Only
holders of the channel id can derive the matching private key, which is
what the proof gateway asks a writer to demonstrate.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    AES_KEY_SIZE,
    CHANNEL_ID_SIZE,
    KDF_INFO_CHANNEL_ID,
    KDF_INFO_MESSAGE_KEY,
    KDF_INFO_SLOT_SEED,
    MAX_CHANNEL_MEMBERS,
    MAX_SEQUENCE_INDEX,
    SHARED_SECRET_SIZE,
    SLOT_SEED_SIZE,
)
from .exceptions import InvalidMembershipError, InvalidSecretError

logger = logging.getLogger(__name__)


def _length_prefixed(data: bytes) -> bytes:
    return len(data).to_bytes(4, "big") + data


def _hmac_sha512(key: bytes, *parts: bytes) -> bytes:
    mac = hmac.HMAC(key, hashes.SHA512())
    for part in parts:
        mac.update(part)
    return mac.finalize()


def validate_secret(secret: bytes) -> None:
    """Check that a shared secret can key the channel PRF.

    Raises:
        InvalidSecretError: If the secret is not SHARED_SECRET_SIZE bytes
            or is all zeros (a failed key agreement)
    """
    if not isinstance(secret, bytes | bytearray):
        raise InvalidSecretError(f"Shared secret must be bytes, got {type(secret).__name__}")
    if len(secret) != SHARED_SECRET_SIZE:
        raise InvalidSecretError(
            f"Shared secret must be {SHARED_SECRET_SIZE} bytes",
            {"length": len(secret)},
        )
    if not any(secret):
        raise InvalidSecretError("Shared secret is all zeros")


def validate_channel_id(channel_id: bytes) -> None:
    """Check that a channel identifier has the HMAC-SHA-512 output length."""
    if not isinstance(channel_id, bytes | bytearray) or len(channel_id) != CHANNEL_ID_SIZE:
        raise InvalidSecretError(f"Channel identifier must be {CHANNEL_ID_SIZE} bytes")


def _validate_index(n: int) -> None:
    if not isinstance(n, int) or isinstance(n, bool):
        raise TypeError(f"Sequence index must be an int, got {type(n).__name__}")
    if n < 0 or n > MAX_SEQUENCE_INDEX:
        raise ValueError(f"Sequence index out of range: {n}")


def canonical_members(members: Iterable[bytes]) -> list[bytes]:
    """Sort member public keys into the canonical total order.

    Raises:
        InvalidMembershipError: If the set is empty, oversized, contains
            duplicates or non-bytes entries
    """
    ordered = []
    for member in members:
        if not isinstance(member, bytes | bytearray) or not member:
            raise InvalidMembershipError("Member keys must be non-empty bytes")
        ordered.append(bytes(member))

    if not ordered:
        raise InvalidMembershipError("Channel must have at least one member")
    if len(ordered) > MAX_CHANNEL_MEMBERS:
        raise InvalidMembershipError(
            f"Channel cannot exceed {MAX_CHANNEL_MEMBERS} members",
            {"count": len(ordered)},
        )
    if len(set(ordered)) != len(ordered):
        raise InvalidMembershipError("Duplicate member key in channel membership")

    return sorted(ordered)


def derive_channel_id(secret: bytes, members: Iterable[bytes], context: bytes = b"") -> bytes:
    """Derive the secret channel identifier.

    Args:
        secret: Shared secret from key agreement
        members: Member public keys, in any order
        context: Optional sub-channel label (e.g. the direction of a
            one-way pair)

    Returns:
        64-byte channel identifier. Treat it like the secret itself.
    """
    validate_secret(secret)
    ordered = canonical_members(members)

    encoded = b"".join(_length_prefixed(m) for m in ordered)
    channel_id = _hmac_sha512(
        bytes(secret),
        KDF_INFO_CHANNEL_ID,
        len(ordered).to_bytes(4, "big"),
        encoded,
        _length_prefixed(context),
    )
    logger.debug("Derived channel identifier for %d members", len(ordered))
    return channel_id


def derive_slot_key(channel_id: bytes, n: int) -> Ed25519PrivateKey:
    """Derive the Ed25519 signing key that owns sequence index ``n``."""
    validate_channel_id(channel_id)
    _validate_index(n)
    seed = _hmac_sha512(bytes(channel_id), KDF_INFO_SLOT_SEED, n.to_bytes(8, "big"))[:SLOT_SEED_SIZE]
    return Ed25519PrivateKey.from_private_bytes(seed)


def slot_public_bytes(slot_key: Ed25519PrivateKey) -> bytes:
    """Raw 32-byte public key for a slot key."""
    return slot_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def hash_slot_public_key(public_key: bytes) -> bytes:
    """Map a slot verification key to its sequence hash."""
    digest = hashes.Hash(hashes.SHA512())
    digest.update(public_key)
    return digest.finalize()


def derive_sequence_hash(channel_id: bytes, n: int) -> bytes:
    """Derive the repository key for the n-th message of a channel."""
    return hash_slot_public_key(slot_public_bytes(derive_slot_key(channel_id, n)))


def derive_message_key(secret: bytes, channel_id: bytes) -> bytes:
    """Derive the AEAD key used for every message on a channel."""
    validate_secret(secret)
    validate_channel_id(channel_id)
    return HKDF(
        algorithm=hashes.SHA256(),
        length=AES_KEY_SIZE,
        salt=bytes(channel_id),
        info=KDF_INFO_MESSAGE_KEY,
    ).derive(bytes(secret))
