"""Sender and receiver orchestration of the proof-gated write protocol.

    sent  = channel.send(plaintext)                  # allocate n, derive h, encrypt c
    proof = gateway.prove(material, n, m, h, c)      # CPU-bound, cancellable via prove_async
    repository.write(h, c, proof)                    # verify, then insert-if-absent

A write whose outcome is unknown is retried by resubmitting the same
triplet: it either lands or fails with DuplicateKeyError because the
first attempt already did.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .channels.channel import Channel, ReceivedMessage, SentMessage
from .channels.exceptions import DuplicateKeyError
from .channels.types import WriteOutcome
from .notification import NotificationWatcher
from .proofs import ProofGateway
from .repository import RepositoryClient

logger = logging.getLogger(__name__)


@dataclass
class PreparedWrite:
    """A sent message with its proof, ready to (re)submit."""

    message: SentMessage
    proof: bytes


@dataclass
class PublishReceipt:
    """Result of publishing one message."""

    index: int
    sequence_hash: bytes
    outcome: WriteOutcome


class Messenger:
    """Publishes and polls channels through one repository client."""

    def __init__(self, repository: RepositoryClient, gateway: ProofGateway | None = None) -> None:
        self.repository = repository
        self.gateway = gateway or repository.gateway
        # Channel fingerprint -> (upto_index, newest epoch with no news)
        self._cleared_epochs: dict[str, tuple[int, int]] = {}

    def prepare(self, channel: Channel, plaintext: bytes | str) -> PreparedWrite:
        """Encrypt the next message and prove it, without writing."""
        sent = channel.send(plaintext)
        proof = self.gateway.prove(
            channel.proof_material, sent.index, sent.plaintext, sent.sequence_hash, sent.ciphertext
        )
        return PreparedWrite(message=sent, proof=proof)

    async def prepare_async(self, channel: Channel, plaintext: bytes | str) -> PreparedWrite:
        """Like prepare, with the proof built off the event loop.

        Cancelling abandons the proof. The allocated index stays consumed;
        indices are never reused even if nothing was written there.
        """
        sent = channel.send(plaintext)
        proof = await self.gateway.prove_async(
            channel.proof_material, sent.index, sent.plaintext, sent.sequence_hash, sent.ciphertext
        )
        return PreparedWrite(message=sent, proof=proof)

    def submit(self, prepared: PreparedWrite) -> PublishReceipt:
        """Write a prepared message; safe to call again after a failure.

        Raises:
            DuplicateKeyError: If the slot holds a different ciphertext,
                i.e. an index was reused or another writer got there first
            InvalidProofError: If the repository rejected the proof
            RepositoryUnavailableError: If the repository is unreachable
        """
        sent = prepared.message
        try:
            self.repository.write(sent.sequence_hash, sent.ciphertext, prepared.proof)
        except DuplicateKeyError:
            if self.repository.read(sent.sequence_hash) == sent.ciphertext:
                logger.info("Message at index %d was already written by an earlier attempt", sent.index)
                return PublishReceipt(sent.index, sent.sequence_hash, WriteOutcome.ALREADY_PRESENT)
            logger.error("Slot for index %d holds a different ciphertext; possible index reuse", sent.index)
            raise

        return PublishReceipt(sent.index, sent.sequence_hash, WriteOutcome.ACCEPTED)

    def publish(self, channel: Channel, plaintext: bytes | str) -> PublishReceipt:
        """Send, prove and write one message."""
        return self.submit(self.prepare(channel, plaintext))

    async def publish_async(self, channel: Channel, plaintext: bytes | str) -> PublishReceipt:
        return self.submit(await self.prepare_async(channel, plaintext))

    def poll(self, channel: Channel, upto_index: int) -> list[ReceivedMessage]:
        """Deliver new messages on a channel up to a global index."""
        return channel.try_receive(upto_index, self.repository)

    def has_news(self, channel: Channel, upto_index: int, since: float | None = None) -> bool:
        """Check notification filters before polling.

        Only hashes that pass a filter are read directly, so a quiet
        channel costs the filter downloads and no per-hash reads. By
        default every archived epoch this messenger has not yet cleared for
        the channel is checked along with the current filter, so a message
        whose epoch sealed before the call is still reported.

        Args:
            channel: Channel to check
            upto_index: Highest global index of interest
            since: Instead check the filters of epochs that ended after
                this timestamp, plus the current filter
        """
        watcher = NotificationWatcher(self.repository)
        watcher.watch(channel.awaited_hashes(upto_index))
        if not watcher.awaited:
            return False
        if since is not None:
            return bool(watcher.check(self.repository.filters_since(since)))

        # A cleared epoch only covers the indices that were awaited then
        cleared = self._cleared_epochs.get(channel.fingerprint)
        if cleared is not None and cleared[0] >= upto_index:
            watcher.checked_through_epoch = cleared[1]

        found = watcher.check()
        if not found and watcher.checked_through_epoch is not None:
            # Found hashes stay awaited until polled, so their epochs are
            # only cleared once nothing awaited turns up in them
            self._cleared_epochs[channel.fingerprint] = (upto_index, watcher.checked_through_epoch)
        return bool(found)
