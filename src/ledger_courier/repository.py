"""Repository client and an in-memory append-only ledger.

The ledger is the external key-value store: anyone may read, anyone may
write, and no key is ever overwritten. ``put`` is insert-if-absent and
atomic per key, which is the only synchronization the protocol relies on.

``RepositoryClient`` is the write path every node or proxy runs in front
of the store: duplicate check, then proof verification, then the atomic
insert.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .channels.exceptions import (
    DuplicateKeyError,
    EpochNotFoundError,
    InvalidProofError,
    RepositoryUnavailableError,
)
from .notification import FilterAggregator
from .proofs import ProofGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredEntry:
    """A ciphertext and when the ledger accepted it."""

    value: bytes
    timestamp: float
    epoch_id: int


@runtime_checkable
class LedgerStore(Protocol):
    """Append-only key-value store with notification filters."""

    def put(self, key: bytes, value: bytes) -> bool:
        """Insert if absent. Returns False if the key already exists."""
        ...

    def get(self, key: bytes) -> StoredEntry | None:
        ...

    def contains(self, key: bytes) -> bool:
        ...

    def current_filter(self) -> bytes:
        ...

    def archived_filter(self, epoch_id: int) -> bytes | None:
        ...

    def list_epochs(self) -> list[int]:
        ...

    def filters_since(self, timestamp: float) -> list[bytes]:
        ...


class InMemoryLedger:
    """Thread-safe in-process ledger."""

    def __init__(
        self,
        aggregator: FilterAggregator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.aggregator = aggregator or FilterAggregator(clock=clock)
        self._clock = clock
        self._entries: dict[bytes, StoredEntry] = {}
        self._lock = threading.Lock()

    def put(self, key: bytes, value: bytes) -> bool:
        key = bytes(key)
        with self._lock:
            if key in self._entries:
                return False
            epoch_id = self.aggregator.record(key)
            self._entries[key] = StoredEntry(value=bytes(value), timestamp=self._clock(), epoch_id=epoch_id)
            return True

    def get(self, key: bytes) -> StoredEntry | None:
        with self._lock:
            return self._entries.get(bytes(key))

    def contains(self, key: bytes) -> bool:
        with self._lock:
            return bytes(key) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def current_filter(self) -> bytes:
        return self.aggregator.current_blob()

    def archived_filter(self, epoch_id: int) -> bytes | None:
        return self.aggregator.archived_blob(epoch_id)

    def list_epochs(self) -> list[int]:
        return self.aggregator.list_epochs()

    def filters_since(self, timestamp: float) -> list[bytes]:
        return self.aggregator.blobs_since(timestamp)


class RepositoryClient:
    """Proof-gated access to a ledger store.

    Store failures (connection or OS errors) surface as
    RepositoryUnavailableError. Every operation is safe to retry.
    """

    def __init__(self, store: LedgerStore, gateway: ProofGateway | None = None) -> None:
        self.store = store
        self.gateway = gateway or ProofGateway()

    def write(self, sequence_hash: bytes, ciphertext: bytes, proof: bytes) -> None:
        """Verify and store a message.

        Raises:
            DuplicateKeyError: If the key exists, whatever the proof
            InvalidProofError: If the proof does not verify
            RepositoryUnavailableError: If the store cannot be reached
        """
        try:
            if self.store.contains(sequence_hash):
                logger.warning("Rejected write: sequence hash already present")
                raise DuplicateKeyError("Sequence hash already exists", bytes(sequence_hash))

            if not self.gateway.verify(sequence_hash, ciphertext, proof):
                logger.warning("Rejected write: proof did not verify")
                raise InvalidProofError("Write proof did not verify")

            if not self.store.put(sequence_hash, ciphertext):
                # Lost a race with a concurrent writer of the same key
                logger.warning("Rejected write: concurrent write won the sequence hash")
                raise DuplicateKeyError("Sequence hash already exists", bytes(sequence_hash))
        except OSError as e:
            raise RepositoryUnavailableError(f"Repository write failed: {e}") from e

        logger.info("Accepted write of %d bytes", len(ciphertext))

    def read_entry(self, sequence_hash: bytes) -> StoredEntry | None:
        try:
            return self.store.get(sequence_hash)
        except OSError as e:
            raise RepositoryUnavailableError(f"Repository read failed: {e}") from e

    def read(self, sequence_hash: bytes) -> bytes | None:
        """Ciphertext stored at a sequence hash, or None if not yet written."""
        entry = self.read_entry(sequence_hash)
        return entry.value if entry else None

    def current_filter(self) -> bytes:
        try:
            return self.store.current_filter()
        except OSError as e:
            raise RepositoryUnavailableError(f"Filter download failed: {e}") from e

    def archived_filter(self, epoch_id: int) -> bytes:
        """Sealed filter for an epoch.

        Raises:
            EpochNotFoundError: If the epoch is unknown or has been pruned
        """
        try:
            blob = self.store.archived_filter(epoch_id)
        except OSError as e:
            raise RepositoryUnavailableError(f"Filter download failed: {e}") from e
        if blob is None:
            raise EpochNotFoundError(f"No archived filter for epoch {epoch_id}", epoch_id)
        return blob

    def list_epochs(self) -> list[int]:
        try:
            return self.store.list_epochs()
        except OSError as e:
            raise RepositoryUnavailableError(f"Epoch listing failed: {e}") from e

    def filters_since(self, timestamp: float) -> list[bytes]:
        try:
            return self.store.filters_since(timestamp)
        except OSError as e:
            raise RepositoryUnavailableError(f"Filter download failed: {e}") from e
