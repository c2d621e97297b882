"""Ordered, encrypted message channels over the ledger."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives import hashes, hmac

from ..proofs import ProofMaterial
from .allocator import GroupAllocator
from .cipher import decrypt_message, encrypt_message
from .constants import ONE_WAY_CONTEXT_PREFIX
from .counters import CounterState, CounterStore, InMemoryCounterStore
from .exceptions import InvalidMembershipError, TamperedOrForeignEntryError
from .hash_chain import canonical_members, derive_channel_id, derive_message_key, derive_sequence_hash

if TYPE_CHECKING:
    from ..repository import RepositoryClient

logger = logging.getLogger(__name__)


@dataclass
class SentMessage:
    """A message encrypted for its slot but not yet written."""

    index: int
    sequence_hash: bytes
    ciphertext: bytes
    plaintext: bytes = field(repr=False)


@dataclass
class ReceivedMessage:
    """A decrypted message delivered from the ledger."""

    index: int
    plaintext: bytes
    sender: bytes
    timestamp: float | None = None


# Marks a slot whose entry failed decryption; it is skipped when delivering
_REJECTED = object()


class Channel:
    """A membership set, its shared secret, and the local cursors over it.

    ``members`` determine the channel identifier. ``writers`` (all members
    by default) is the allocation order: each writer owns an interleaved
    stream of global indices. Each Channel instance owns its copy of the
    secret material; nothing is shared through module state.
    """

    def __init__(
        self,
        members: Iterable[bytes],
        secret: bytes,
        self_key: bytes | None = None,
        *,
        writers: Iterable[bytes] | None = None,
        context: bytes = b"",
        counter_store: CounterStore | None = None,
        repository: RepositoryClient | None = None,
    ) -> None:
        self.members = tuple(canonical_members(members))
        self.context = context
        self._channel_id = derive_channel_id(secret, self.members, context)
        self._message_key = derive_message_key(secret, self._channel_id)

        self.allocator = GroupAllocator(self.members if writers is None else writers)
        for writer in self.allocator.order:
            if writer not in self.members:
                raise InvalidMembershipError("Every writer must be a channel member")

        if self_key is not None and bytes(self_key) not in self.members:
            raise InvalidMembershipError("Local key is not a member of this channel")
        self.self_key = bytes(self_key) if self_key is not None else None

        self.repository = repository
        self.counter_store = counter_store if counter_store is not None else InMemoryCounterStore()
        self.fingerprint = self._fingerprint()
        self._state = self.counter_store.load(self.fingerprint) or CounterState()

        self._pending: dict[bytes, dict[int, object]] = {w: {} for w in self.allocator.order}
        self._rejected: list[TamperedOrForeignEntryError] = []
        self._lock = threading.RLock()

    @classmethod
    def open(
        cls,
        members: Iterable[bytes],
        secret: bytes,
        self_key: bytes | None = None,
        **kwargs,
    ) -> Channel:
        """Open a channel among ``members`` keyed by ``secret``.

        Raises:
            InvalidMembershipError: If members is empty or lacks self_key
            InvalidSecretError: If the secret is malformed
        """
        return cls(members, secret, self_key, **kwargs)

    @classmethod
    def one_way(
        cls,
        sender: bytes,
        receiver: bytes,
        secret: bytes,
        self_key: bytes | None = None,
        **kwargs,
    ) -> Channel:
        """Directional pair channel: only ``sender`` writes, indices 0, 1, 2, ..."""
        return cls(
            [sender, receiver],
            secret,
            self_key,
            writers=[sender],
            context=ONE_WAY_CONTEXT_PREFIX + bytes(sender),
            **kwargs,
        )

    def __repr__(self) -> str:
        return f"Channel(members={len(self.members)}, writers={self.allocator.size}, id={self.fingerprint})"

    def _fingerprint(self) -> str:
        # Local storage name; must not reveal the channel id itself
        mac = hmac.HMAC(self._channel_id, hashes.SHA256())
        mac.update(b"counter-store")
        mac.update(self.self_key or b"")
        return mac.finalize()[:16].hex()

    def _persist(self) -> None:
        self.counter_store.save(self.fingerprint, self._state)

    @property
    def proof_material(self) -> ProofMaterial:
        return ProofMaterial(channel_id=self._channel_id, message_key=self._message_key)

    def sequence_hash(self, n: int) -> bytes:
        return derive_sequence_hash(self._channel_id, n)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def next_index_for(self, self_key: bytes) -> int:
        """Allocate the next global index for the local writer.

        The advanced counter is persisted before the index is returned, so
        an index is never handed out twice even across restarts.
        """
        if self.self_key is None or bytes(self_key) != self.self_key:
            raise InvalidMembershipError("Indices can only be allocated for this channel's local key")
        with self._lock:
            local = self._state.next_local_counter
            n = self.allocator.global_index(self.self_key, local)
            self._state.next_local_counter = local + 1
            self._persist()
        return n

    def send(self, plaintext: bytes | str) -> SentMessage:
        """Encrypt the next message from the local writer.

        Does not write anything; pass the result through the proof gateway
        and the repository client (see Messenger.publish).
        """
        if self.self_key is None:
            raise InvalidMembershipError("Channel was opened without a local key")
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        n = self.next_index_for(self.self_key)
        h = self.sequence_hash(n)
        c = encrypt_message(self._message_key, n, plaintext, h)
        logger.debug("Prepared message at index %d", n)
        return SentMessage(index=n, sequence_hash=h, ciphertext=c, plaintext=plaintext)

    @property
    def next_local_counter(self) -> int:
        return self._state.next_local_counter

    def resynchronize(self, repository: RepositoryClient | None = None) -> int:
        """Recover a safe send counter from ledger history.

        Scans forward from the stored counter while the local writer's
        slots are occupied. Returns the new local counter.
        """
        repository = self._repository(repository)
        if self.self_key is None:
            raise InvalidMembershipError("Channel was opened without a local key")
        with self._lock:
            local = self._state.next_local_counter
            while repository.read(self.sequence_hash(self.allocator.global_index(self.self_key, local))) is not None:
                local += 1
            if local != self._state.next_local_counter:
                logger.warning(
                    "Send counter advanced from %d to %d during resynchronization",
                    self._state.next_local_counter,
                    local,
                )
            self._state.next_local_counter = local
            self._persist()
            return local

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    def _repository(self, repository: RepositoryClient | None) -> RepositoryClient:
        repository = repository or self.repository
        if repository is None:
            raise ValueError("No repository client given and none attached to the channel")
        return repository

    def last_seen(self, writer: bytes) -> int:
        """Highest global index delivered contiguously for a writer, or -1."""
        self.allocator.slot(writer)
        return self._state.last_seen.get(bytes(writer).hex(), -1)

    def _fetch(self, repository: RepositoryClient, writer: bytes, n: int) -> bool:
        """Read one slot into the pending cache; False if it is still empty."""
        h = self.sequence_hash(n)
        entry = repository.read_entry(h)
        if entry is None:
            return False

        plaintext = decrypt_message(self._message_key, n, entry.value, h)
        if plaintext is None:
            error = TamperedOrForeignEntryError(f"Entry at index {n} failed authentication", n, h)
            logger.warning("Skipping tampered or foreign entry at index %d", n)
            self._rejected.append(error)
            self._pending[writer][n] = _REJECTED
        else:
            self._pending[writer][n] = ReceivedMessage(
                index=n, plaintext=plaintext, sender=writer, timestamp=entry.timestamp
            )
        return True

    def _deliver(self, writer: bytes) -> list[ReceivedMessage]:
        """Pop the contiguous prefix of cached slots after last_seen."""
        key = writer.hex()
        pending = self._pending[writer]
        last = self._state.last_seen.get(key, -1)
        delivered = []

        n = next(self.allocator.indices_for(writer, last + 1))
        while n in pending:
            item = pending.pop(n)
            if item is not _REJECTED:
                delivered.append(item)
            last = n
            n += self.allocator.size

        self._state.last_seen[key] = last
        return delivered

    def try_receive(self, upto_index: int, repository: RepositoryClient | None = None) -> list[ReceivedMessage]:
        """Fetch and deliver every new message with index <= ``upto_index``.

        Each writer's cursor only advances over a contiguous prefix of
        present slots. Entries found beyond a gap are cached and delivered
        once the gap fills. Resumable and safe to call repeatedly.

        Returns:
            Newly delivered messages in global index order
        """
        repository = self._repository(repository)
        delivered: list[ReceivedMessage] = []

        with self._lock:
            for writer in self.allocator.order:
                start = self._state.last_seen.get(writer.hex(), -1) + 1
                pending = self._pending[writer]
                for n in self.allocator.indices_for(writer, start, upto_index):
                    if n not in pending:
                        self._fetch(repository, writer, n)
                delivered.extend(self._deliver(writer))
            self._persist()

        delivered.sort(key=lambda m: m.index)
        return delivered

    def receive_next(self, writer: bytes, repository: RepositoryClient | None = None) -> ReceivedMessage | None:
        """Deliver the next message of one writer's stream, if it has landed.

        Tampered slots are skipped over; returns None when the next slot is
        still empty.
        """
        repository = self._repository(repository)
        writer = bytes(writer)
        self.allocator.slot(writer)

        with self._lock:
            while True:
                n = next(self.allocator.indices_for(writer, self.last_seen(writer) + 1))
                if n not in self._pending[writer] and not self._fetch(repository, writer, n):
                    return None
                item = self._pending[writer].pop(n)
                self._state.last_seen[writer.hex()] = n
                self._persist()
                if item is not _REJECTED:
                    return item

    def awaited_hashes(self, upto_index: int) -> list[bytes]:
        """Sequence hashes not yet delivered or cached, up to an index.

        Feed these to a NotificationWatcher to learn when to poll.
        """
        hashes_ = []
        with self._lock:
            for writer in self.allocator.order:
                start = self._state.last_seen.get(writer.hex(), -1) + 1
                for n in self.allocator.indices_for(writer, start, upto_index):
                    if n not in self._pending[writer]:
                        hashes_.append(self.sequence_hash(n))
        return hashes_

    @property
    def pending_count(self) -> int:
        """Slots read past a gap and waiting for delivery."""
        return sum(len(p) for p in self._pending.values())

    def drain_rejected(self) -> list[TamperedOrForeignEntryError]:
        """Entries skipped because they failed authentication, since the last drain."""
        with self._lock:
            rejected, self._rejected = self._rejected, []
        return rejected
