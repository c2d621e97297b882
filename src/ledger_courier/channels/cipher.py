"""AEAD for channel messages.

AES-256-GCM with the global sequence index as nonce and the sequence hash
as associated data. The allocator never hands out an index twice, so a
(key, nonce) pair is never reused, and encryption is deterministic given
(key, n, plaintext, h), which lets the prover re-derive the ciphertext.
"""

from __future__ import annotations

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import AES_KEY_SIZE, NONCE_SIZE


def index_nonce(n: int) -> bytes:
    """Nonce for global index ``n``."""
    return n.to_bytes(NONCE_SIZE, "big")


def encrypt_message(message_key: bytes, n: int, plaintext: bytes, sequence_hash: bytes) -> bytes:
    """Encrypt and bind a message to its slot."""
    if len(message_key) != AES_KEY_SIZE:
        raise ValueError(f"Message key must be {AES_KEY_SIZE} bytes")
    return AESGCM(message_key).encrypt(index_nonce(n), plaintext, sequence_hash)


def decrypt_message(message_key: bytes, n: int, ciphertext: bytes, sequence_hash: bytes) -> bytes | None:
    """Decrypt a stored entry; None if it was not written for this slot."""
    try:
        return AESGCM(message_key).decrypt(index_nonce(n), ciphertext, sequence_hash)
    except (InvalidTag, ValueError):
        return None
