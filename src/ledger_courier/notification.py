"""Bloom-filter notifications over recently written sequence hashes.

The repository inserts every accepted sequence hash into the filter of
the active epoch and seals that filter at each epoch boundary. Clients
download whole filters and test the hashes they are waiting for locally,
so the repository never learns which hashes a client cares about.

Sizing for a target false-positive rate ``p``::

    bits per element  b = ln(1/p) / ln(2)^2     (~9.59 at p = 1%)
    hash functions    k = round(b * ln(2))      (~7 at p = 1%)

Epoch boundaries are repository configuration. A client can never ask
for a boundary of its own, which would reveal when it last synced.
"""

from __future__ import annotations

import hashlib
import logging
import math
import struct
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .channels.exceptions import EpochNotFoundError
from .channels.types import EpochPolicy, FilterAnswer

if TYPE_CHECKING:
    from .repository import RepositoryClient

logger = logging.getLogger(__name__)

FILTER_MAGIC = b"LCBF"
FILTER_FORMAT_VERSION = 1
_HEADER = struct.Struct(">4sBBQQQ?")

# Writes per epoch before the filter is sealed
DEFAULT_EPOCH_CAPACITY = (1 << 10) - 1
DEFAULT_FALSE_POSITIVE_RATE = 0.01
DEFAULT_MAX_ARCHIVED_EPOCHS = 1024


def bits_per_element(false_positive_rate: float) -> float:
    """Optimal Bloom filter bits per inserted element."""
    if not 0.0 < false_positive_rate < 1.0:
        raise ValueError(f"False positive rate must be in (0, 1), got {false_positive_rate}")
    return math.log(1.0 / false_positive_rate) / (math.log(2) ** 2)


class BloomFilter:
    """Approximate set membership with no false negatives."""

    def __init__(self, num_bits: int, num_hashes: int, epoch_id: int = 0) -> None:
        if num_bits < 8:
            raise ValueError("Bloom filter needs at least 8 bits")
        if not 1 <= num_hashes <= 255:
            raise ValueError("Number of hash functions must be between 1 and 255")
        self.num_bits = num_bits
        self.num_hashes = num_hashes
        self.epoch_id = epoch_id
        self.count = 0
        self.sealed = False
        self._bits = bytearray((num_bits + 7) // 8)

    @classmethod
    def for_capacity(
        cls,
        capacity: int,
        false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
        epoch_id: int = 0,
    ) -> BloomFilter:
        """Size a filter for at most ``capacity`` insertions at rate ``p``."""
        if capacity < 1:
            raise ValueError(f"Capacity must be at least 1, got {capacity}")
        b = bits_per_element(false_positive_rate)
        num_bits = max(8, math.ceil(capacity * b))
        num_hashes = max(1, round(b * math.log(2)))
        return cls(num_bits=num_bits, num_hashes=num_hashes, epoch_id=epoch_id)

    def _positions(self, item: bytes) -> list[int]:
        digest = hashlib.blake2b(bytes(item), digest_size=16, person=b"ledger-courier").digest()
        h1 = int.from_bytes(digest[:8], "big")
        h2 = int.from_bytes(digest[8:], "big") | 1
        return [(h1 + i * h2) % self.num_bits for i in range(self.num_hashes)]

    def add(self, item: bytes) -> None:
        """Insert an item."""
        if self.sealed:
            raise ValueError(f"Filter for epoch {self.epoch_id} is sealed")
        for pos in self._positions(item):
            self._bits[pos >> 3] |= 1 << (pos & 7)
        self.count += 1

    def query(self, item: bytes) -> FilterAnswer:
        """Test membership. POSSIBLY_PRESENT must be confirmed with a read."""
        for pos in self._positions(item):
            if not self._bits[pos >> 3] & (1 << (pos & 7)):
                return FilterAnswer.DEFINITELY_ABSENT
        return FilterAnswer.POSSIBLY_PRESENT

    def __contains__(self, item: bytes) -> bool:
        return self.query(item) is FilterAnswer.POSSIBLY_PRESENT

    def __len__(self) -> int:
        return self.count

    def seal(self) -> None:
        self.sealed = True

    def estimated_false_positive_rate(self) -> float:
        """Expected false-positive rate at the current fill level."""
        if self.count == 0:
            return 0.0
        return (1.0 - math.exp(-self.num_hashes * self.count / self.num_bits)) ** self.num_hashes

    def to_bytes(self) -> bytes:
        """Serialize to a filter blob."""
        header = _HEADER.pack(
            FILTER_MAGIC,
            FILTER_FORMAT_VERSION,
            self.num_hashes,
            self.num_bits,
            self.count,
            self.epoch_id,
            self.sealed,
        )
        return header + bytes(self._bits)

    @classmethod
    def from_bytes(cls, blob: bytes) -> BloomFilter:
        """Parse a filter blob.

        Raises:
            ValueError: If the blob is truncated or has an unknown format
        """
        if len(blob) < _HEADER.size:
            raise ValueError("Filter blob is truncated")
        magic, version, num_hashes, num_bits, count, epoch_id, sealed = _HEADER.unpack_from(blob)
        if magic != FILTER_MAGIC:
            raise ValueError("Not a filter blob")
        if version != FILTER_FORMAT_VERSION:
            raise ValueError(f"Unsupported filter format version {version}")

        # Blobs come from an unauthenticated repository; size from the header
        # is only trusted once the body matches it
        body = blob[_HEADER.size :]
        if len(body) != (num_bits + 7) // 8:
            raise ValueError("Filter blob length does not match its header")

        bloom = cls(num_bits=num_bits, num_hashes=num_hashes, epoch_id=epoch_id)
        bloom._bits[:] = body
        bloom.count = count
        bloom.sealed = sealed
        return bloom


@dataclass
class ArchivedFilter:
    """A sealed epoch filter and when its epoch ended."""

    epoch_id: int
    end_timestamp: float
    bloom: BloomFilter


class FilterAggregator:
    """Repository-side owner of the current and archived epoch filters."""

    def __init__(
        self,
        policy: EpochPolicy = EpochPolicy.WRITE_COUNT,
        capacity: int = DEFAULT_EPOCH_CAPACITY,
        false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
        interval_seconds: float = 60.0,
        max_archived_epochs: int = DEFAULT_MAX_ARCHIVED_EPOCHS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if policy == EpochPolicy.FIXED_INTERVAL and interval_seconds <= 0:
            raise ValueError("Epoch interval must be positive")
        if max_archived_epochs < 1:
            raise ValueError("Must retain at least one archived epoch")

        self.policy = policy
        self.capacity = capacity
        self.false_positive_rate = false_positive_rate
        self.interval_seconds = interval_seconds
        self.max_archived_epochs = max_archived_epochs
        self._clock = clock
        self._lock = threading.Lock()

        self._archive: OrderedDict[int, ArchivedFilter] = OrderedDict()
        self._current = BloomFilter.for_capacity(capacity, false_positive_rate, epoch_id=0)
        self._current_window = self._window(clock())
        self._overflow_warned = False

    def _window(self, now: float) -> int:
        return int(now // self.interval_seconds) if self.policy == EpochPolicy.FIXED_INTERVAL else 0

    def _boundary_reached(self, now: float) -> bool:
        if self.policy == EpochPolicy.WRITE_COUNT:
            return self._current.count >= self.capacity
        return self._window(now) != self._current_window

    def _seal_locked(self, now: float) -> None:
        sealed = self._current
        sealed.seal()
        self._archive[sealed.epoch_id] = ArchivedFilter(sealed.epoch_id, now, sealed)
        while len(self._archive) > self.max_archived_epochs:
            pruned, _ = self._archive.popitem(last=False)
            logger.debug("Pruned archived filter for epoch %d", pruned)

        self._current = BloomFilter.for_capacity(
            self.capacity, self.false_positive_rate, epoch_id=sealed.epoch_id + 1
        )
        self._current_window = self._window(now)
        self._overflow_warned = False
        logger.info("Sealed notification filter for epoch %d (%d entries)", sealed.epoch_id, sealed.count)

    def _rotate_locked(self) -> None:
        now = self._clock()
        if self._boundary_reached(now):
            self._seal_locked(now)

    def record(self, sequence_hash: bytes) -> int:
        """Insert an accepted sequence hash; returns the epoch it landed in."""
        with self._lock:
            self._rotate_locked()
            if self._current.count >= self.capacity and not self._overflow_warned:
                logger.warning(
                    "Epoch %d exceeded filter capacity %d; false positive rate will rise",
                    self._current.epoch_id,
                    self.capacity,
                )
                self._overflow_warned = True
            self._current.add(sequence_hash)
            return self._current.epoch_id

    def seal(self) -> int:
        """Force an epoch boundary; returns the sealed epoch id."""
        with self._lock:
            epoch_id = self._current.epoch_id
            self._seal_locked(self._clock())
            return epoch_id

    def current(self) -> BloomFilter:
        """Snapshot of the active filter; later writes do not show up in it."""
        with self._lock:
            self._rotate_locked()
            return BloomFilter.from_bytes(self._current.to_bytes())

    def current_blob(self) -> bytes:
        with self._lock:
            self._rotate_locked()
            return self._current.to_bytes()

    def archived_blob(self, epoch_id: int) -> bytes | None:
        with self._lock:
            self._rotate_locked()
            record = self._archive.get(epoch_id)
            return record.bloom.to_bytes() if record else None

    def list_epochs(self) -> list[int]:
        """Archived epoch ids, oldest first."""
        with self._lock:
            self._rotate_locked()
            return list(self._archive)

    def blobs_since(self, timestamp: float) -> list[bytes]:
        """Filters that may contain writes made at or after ``timestamp``.

        Archived epochs that ended at or after the timestamp, oldest first,
        followed by the current filter.
        """
        with self._lock:
            self._rotate_locked()
            blobs = [r.bloom.to_bytes() for r in self._archive.values() if r.end_timestamp >= timestamp]
            blobs.append(self._current.to_bytes())
            return blobs


class NotificationWatcher:
    """Client-side check for awaited sequence hashes.

    Filters are downloaded whole and tested locally. Only hashes that come
    back POSSIBLY_PRESENT are read directly, which is the one remaining
    point where the repository sees a specific hash.

    ``checked_through_epoch`` is the newest epoch whose archived filter has
    already been tested; default checks start after it. None means no epoch
    has been checked yet, so every retained archive is tested.
    """

    def __init__(self, repository: RepositoryClient, checked_through_epoch: int | None = None) -> None:
        self.repository = repository
        self.checked_through_epoch = checked_through_epoch
        self._awaited: set[bytes] = set()
        self.false_positives = 0

    def watch(self, sequence_hashes: Iterable[bytes]) -> None:
        self._awaited.update(bytes(h) for h in sequence_hashes)

    def unwatch(self, sequence_hash: bytes) -> None:
        self._awaited.discard(bytes(sequence_hash))

    @property
    def awaited(self) -> frozenset[bytes]:
        return frozenset(self._awaited)

    def candidates(self, blobs: Iterable[bytes]) -> set[bytes]:
        """Awaited hashes that any of the given filters may contain."""
        filters = [BloomFilter.from_bytes(blob) for blob in blobs]
        return {h for h in self._awaited if any(h in f for f in filters)}

    def unchecked_blobs(self) -> tuple[list[bytes], int]:
        """Filters that may hold writes no earlier check has covered.

        The current filter is downloaded first, then every archived epoch
        newer than ``checked_through_epoch`` and older than the current one.
        An epoch sealed between the two downloads is left for the next call.

        Returns:
            Tuple of (blobs, epoch id through which the blobs cover every
            sealed epoch)
        """
        current = self.repository.current_filter()
        current_epoch = BloomFilter.from_bytes(current).epoch_id
        floor = -1 if self.checked_through_epoch is None else self.checked_through_epoch

        blobs = []
        for epoch_id in self.repository.list_epochs():
            if not floor < epoch_id < current_epoch:
                continue
            try:
                blobs.append(self.repository.archived_filter(epoch_id))
            except EpochNotFoundError:
                logger.warning("Archived filter for epoch %d was pruned before it was checked", epoch_id)
        blobs.append(current)
        return blobs, current_epoch - 1

    def check(self, blobs: Iterable[bytes] | None = None) -> dict[bytes, bytes]:
        """Confirm candidates with direct reads.

        Args:
            blobs: Filters to test; defaults to every archived filter not
                yet checked plus the current filter, after which
                ``checked_through_epoch`` advances

        Returns:
            Mapping of newly present sequence hash -> ciphertext. Found
            hashes stop being watched.
        """
        covered = None
        if blobs is None:
            blobs, covered = self.unchecked_blobs()

        found: dict[bytes, bytes] = {}
        for h in self.candidates(blobs):
            value = self.repository.read(h)
            if value is None:
                self.false_positives += 1
                continue
            found[h] = value
            self._awaited.discard(h)

        if covered is not None and (self.checked_through_epoch is None or covered > self.checked_through_epoch):
            self.checked_through_epoch = covered

        if found:
            logger.debug("Notification check confirmed %d of %d awaited hashes", len(found), len(self._awaited) + len(found))
        return found
