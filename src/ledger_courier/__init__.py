"""Metadata-hiding message channels over a public append-only ledger."""

from .channels import (
    Channel,
    ChannelError,
    CircuitUnsatisfiableError,
    DuplicateKeyError,
    EpochNotFoundError,
    GroupAllocator,
    InvalidMembershipError,
    InvalidProofError,
    InvalidSecretError,
    ReceivedMessage,
    RepositoryUnavailableError,
    SentMessage,
    TamperedOrForeignEntryError,
    derive_channel_id,
    derive_sequence_hash,
)
from .exceptions import CourierException
from .messenger import Messenger, PreparedWrite, PublishReceipt
from .notification import BloomFilter, FilterAggregator, NotificationWatcher
from .proofs import ProofGateway, ProofMaterial
from .repository import InMemoryLedger, RepositoryClient, StoredEntry

__version__ = "0.1.0"

__all__ = [
    "CourierException",
    "Channel",
    "SentMessage",
    "ReceivedMessage",
    "GroupAllocator",
    "derive_channel_id",
    "derive_sequence_hash",
    "ProofGateway",
    "ProofMaterial",
    "RepositoryClient",
    "InMemoryLedger",
    "StoredEntry",
    "BloomFilter",
    "FilterAggregator",
    "NotificationWatcher",
    "Messenger",
    "PreparedWrite",
    "PublishReceipt",
    # Errors
    "ChannelError",
    "InvalidSecretError",
    "InvalidMembershipError",
    "CircuitUnsatisfiableError",
    "InvalidProofError",
    "DuplicateKeyError",
    "EpochNotFoundError",
    "RepositoryUnavailableError",
    "TamperedOrForeignEntryError",
]
