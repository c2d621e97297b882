"""Keyed message channels over a public append-only ledger.

Members who share a secret derive a secret channel identifier, and from
it one pseudo-random repository key (sequence hash) per message index.
Observers of the ledger see unlinkable keys and ciphertexts.

Key concepts:
- Channel identifier: HMAC of the sorted membership under the secret
- Sequence hash: per-index address that commits to a slot signing key
- Group allocation: writer p owns indices congruent to p mod |writers|
- Contiguous delivery: cursors advance only over filled slots

Security properties:
- Unlinkability: sequence hashes reveal nothing without the identifier
- Write binding: only channel members can prove a write for a slot
- No overwrite: each slot is written at most once
"""

# Constants
from .constants import (
    AES_KEY_SIZE,
    CHANNEL_ID_SIZE,
    COURIER_PROTOCOL_VERSION,
    DEFAULT_CIPHER_SUITE,
    MAX_CHANNEL_MEMBERS,
    NONCE_SIZE,
    SEQUENCE_HASH_SIZE,
    SHARED_SECRET_SIZE,
)

# Exceptions
from .exceptions import (
    ChannelError,
    CircuitUnsatisfiableError,
    CounterCorruptionError,
    DuplicateKeyError,
    EpochNotFoundError,
    InvalidMembershipError,
    InvalidProofError,
    InvalidSecretError,
    PublicKeyNotFoundError,
    RepositoryUnavailableError,
    TamperedOrForeignEntryError,
)

# Derivations
from .hash_chain import (
    canonical_members,
    derive_channel_id,
    derive_message_key,
    derive_sequence_hash,
    derive_slot_key,
)
from .allocator import GroupAllocator
from .cipher import decrypt_message, encrypt_message

# Counter storage
from .counters import CounterState, CounterStore, InMemoryCounterStore, JsonFileCounterStore

# Channels
from .channel import Channel, ReceivedMessage, SentMessage

# Types (enums)
from .types import Circuit, EpochPolicy, FilterAnswer, WriteOutcome

__all__ = [
    # Constants
    "COURIER_PROTOCOL_VERSION",
    "DEFAULT_CIPHER_SUITE",
    "SHARED_SECRET_SIZE",
    "CHANNEL_ID_SIZE",
    "SEQUENCE_HASH_SIZE",
    "AES_KEY_SIZE",
    "NONCE_SIZE",
    "MAX_CHANNEL_MEMBERS",
    # Exceptions
    "ChannelError",
    "InvalidSecretError",
    "InvalidMembershipError",
    "CircuitUnsatisfiableError",
    "InvalidProofError",
    "DuplicateKeyError",
    "EpochNotFoundError",
    "RepositoryUnavailableError",
    "TamperedOrForeignEntryError",
    "CounterCorruptionError",
    "PublicKeyNotFoundError",
    # Types
    "Circuit",
    "EpochPolicy",
    "FilterAnswer",
    "WriteOutcome",
    # Derivations
    "canonical_members",
    "derive_channel_id",
    "derive_sequence_hash",
    "derive_slot_key",
    "derive_message_key",
    "GroupAllocator",
    "encrypt_message",
    "decrypt_message",
    # Counter storage
    "CounterState",
    "CounterStore",
    "InMemoryCounterStore",
    "JsonFileCounterStore",
    # Channels
    "Channel",
    "SentMessage",
    "ReceivedMessage",
]
