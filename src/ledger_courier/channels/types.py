"""Type definitions and enums for ledger channels."""

from enum import IntEnum, StrEnum


class Circuit(IntEnum):
    """Proof relations understood by the gateway.

    The value is the leading tag byte of every serialized proof.
    """

    SLOT_KEY_V1 = 1  # H(slot_key(i, n)) = h and AEAD(k, m; n, h) = c


class FilterAnswer(StrEnum):
    """Result of a notification filter membership query."""

    DEFINITELY_ABSENT = "definitely_absent"
    POSSIBLY_PRESENT = "possibly_present"


class EpochPolicy(StrEnum):
    """When the repository seals the current notification filter."""

    WRITE_COUNT = "write_count"  # Seal after a fixed number of accepted writes
    FIXED_INTERVAL = "fixed_interval"  # Seal on fixed wall-clock boundaries


class WriteOutcome(StrEnum):
    """Result of publishing a message through the messenger."""

    ACCEPTED = "accepted"
    ALREADY_PRESENT = "already_present"  # Benign retry of our own earlier write
