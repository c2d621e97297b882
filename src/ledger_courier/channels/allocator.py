"""Partition of the sequence index space among channel writers."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from .exceptions import InvalidMembershipError
from .hash_chain import canonical_members


class GroupAllocator:
    """Deterministic interleaving of writer slots.

    The writer at canonical position ``p`` owns every global index
    congruent to ``p`` modulo the writer count, so
    ``global_index(S, i) = i * len(order) + slot(S)``. With a single
    writer this is a plain counter.
    """

    def __init__(self, writers: Iterable[bytes]):
        self.order: tuple[bytes, ...] = tuple(canonical_members(writers))
        self._slots = {w: i for i, w in enumerate(self.order)}

    def __repr__(self) -> str:
        return f"GroupAllocator(size={self.size})"

    @property
    def size(self) -> int:
        return len(self.order)

    def __contains__(self, writer: object) -> bool:
        return writer in self._slots

    def slot(self, writer: bytes) -> int:
        """Canonical position of a writer."""
        try:
            return self._slots[bytes(writer)]
        except KeyError:
            raise InvalidMembershipError("Key is not a writer in this channel") from None

    def global_index(self, writer: bytes, local_counter: int) -> int:
        """Global sequence index of a writer's ``local_counter``-th message."""
        if local_counter < 0:
            raise ValueError(f"Local counter must be non-negative, got {local_counter}")
        return local_counter * self.size + self.slot(writer)

    def local_counter(self, global_index: int) -> int:
        """Inverse of global_index for the owning writer."""
        if global_index < 0:
            raise ValueError(f"Global index must be non-negative, got {global_index}")
        return global_index // self.size

    def owner_of(self, global_index: int) -> bytes:
        """Writer that owns a global index."""
        if global_index < 0:
            raise ValueError(f"Global index must be non-negative, got {global_index}")
        return self.order[global_index % self.size]

    def indices_for(self, writer: bytes, start: int = 0, stop: int | None = None) -> Iterator[int]:
        """Global indices owned by ``writer`` in ``[start, stop]``.

        Unbounded when ``stop`` is None.
        """
        slot = self.slot(writer)
        first = max(start, 0)
        # Round up to the writer's first index at or after `first`
        offset = (slot - first) % self.size
        index = first + offset
        while stop is None or index <= stop:
            yield index
            index += self.size
