"""Exceptions for ledger channels and the proof-gated write path.

Grouped the way callers are expected to react to them:

- Local validation errors (caller misuse, never retried):
  InvalidSecretError, InvalidMembershipError, CircuitUnsatisfiableError
- Write-path rejections: InvalidProofError, DuplicateKeyError
- Integrity failures on a present entry: TamperedOrForeignEntryError
- Transport/availability: RepositoryUnavailableError (retry with backoff)
- Missing filter epochs: EpochNotFoundError
"""

from __future__ import annotations

from typing import Any

from ..exceptions import CourierException


class ChannelError(CourierException):
    """Base exception for channel and write-path errors."""

    pass


class InvalidSecretError(ChannelError):
    """Shared secret or channel identifier has the wrong length or format."""

    pass


class InvalidMembershipError(ChannelError):
    """Membership set is empty, has duplicates, or lacks the caller."""

    pass


class CircuitUnsatisfiableError(ChannelError):
    """The supplied witnesses do not satisfy the proof relation."""

    pass


class InvalidProofError(ChannelError):
    """A proof is malformed, for an unknown circuit, or does not verify."""

    pass


class DuplicateKeyError(ChannelError):
    """The sequence hash is already present in the repository."""

    def __init__(self, message: str, sequence_hash: bytes, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.sequence_hash = sequence_hash


class RepositoryUnavailableError(ChannelError):
    """The repository could not be reached or failed to complete a request."""

    pass


class EpochNotFoundError(ChannelError):
    """No archived filter exists for an epoch (unknown or already pruned)."""

    def __init__(self, message: str, epoch_id: int):
        super().__init__(message, {"epoch_id": epoch_id})
        self.epoch_id = epoch_id


class TamperedOrForeignEntryError(ChannelError):
    """A present entry failed authenticated decryption.

    Raised into the caller's rejected-entry list rather than propagated:
    decoy or foreign entries are expected and must not stop a channel.
    """

    def __init__(self, message: str, index: int, sequence_hash: bytes):
        super().__init__(message, {"index": index, "sequence_hash": sequence_hash.hex()})
        self.index = index
        self.sequence_hash = sequence_hash


class CounterCorruptionError(ChannelError):
    """Persisted counter state is missing or inconsistent.

    Fatal for the affected channel until it is resynchronized from
    repository history.
    """

    pass


class PublicKeyNotFoundError(ChannelError):
    """No public key is registered for an identity."""

    pass
