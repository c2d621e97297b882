"""Proof gateway for repository writes.

Every write of ``(h, c)`` must carry a proof that the writer holds the
channel material behind ``h`` and used it to produce ``c``. The gateway
knows exactly one public relation, ``Circuit.SLOT_KEY_V1``:

    Private:  channel_id, message_key, n, plaintext
    Public:   h, c
    Relation: h == SHA512(pk(slot_key(channel_id, n)))
              c == AESGCM(message_key, nonce=n, aad=h).encrypt(plaintext)

The prover checks both lines before it proves anything. The proof itself
is a Fiat-Shamir Schnorr proof of knowledge of the slot key (an Ed25519
signature) over a transcript binding ``h`` and ``c``, sent with the slot
verification key that ``h`` commits to. A verifier needs nothing but
``(h, c, proof)`` and checks only the first line plus the binding of
``c``: it cannot see the message key, so a holder of the channel id can
still prove a write of bytes that do not decrypt. Receivers skip those as
tampered entries. Without the channel id nobody can produce a valid proof
for a different ``c`` at the same ``h``, which is what stops an in-flight
write from being sniped.

Wire format: ``tag(1) || slot_public_key(32) || signature(64)``.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .channels.cipher import encrypt_message
from .channels.constants import SEQUENCE_HASH_SIZE, SLOT_PUBLIC_KEY_SIZE
from .channels.exceptions import CircuitUnsatisfiableError, InvalidProofError
from .channels.hash_chain import derive_slot_key, hash_slot_public_key, slot_public_bytes
from .channels.types import Circuit

logger = logging.getLogger(__name__)

SIGNATURE_SIZE = 64
PROOF_SIZE = 1 + SLOT_PUBLIC_KEY_SIZE + SIGNATURE_SIZE
TRANSCRIPT_DOMAIN = b"ledger-courier-write-proof-v1"


def _transcript(circuit: Circuit, sequence_hash: bytes, ciphertext: bytes) -> bytes:
    return (
        TRANSCRIPT_DOMAIN
        + bytes([circuit])
        + len(sequence_hash).to_bytes(4, "big")
        + sequence_hash
        + len(ciphertext).to_bytes(8, "big")
        + ciphertext
    )


@dataclass(frozen=True)
class ProofMaterial:
    """Secret-derived witness for proving writes on one channel."""

    channel_id: bytes = field(repr=False)
    message_key: bytes = field(repr=False)


@dataclass(frozen=True)
class SlotProof:
    """Parsed ``Circuit.SLOT_KEY_V1`` proof."""

    circuit: Circuit
    slot_public_key: bytes
    signature: bytes

    def to_bytes(self) -> bytes:
        return bytes([self.circuit]) + self.slot_public_key + self.signature

    @classmethod
    def from_bytes(cls, data: bytes) -> SlotProof:
        """Parse a serialized proof.

        Raises:
            InvalidProofError: If the proof is malformed or names a circuit
                the gateway does not support
        """
        if not isinstance(data, bytes | bytearray) or not data:
            raise InvalidProofError("Proof is empty or not bytes")
        try:
            circuit = Circuit(data[0])
        except ValueError:
            raise InvalidProofError("Unsupported proof circuit", {"tag": data[0]}) from None
        if len(data) != PROOF_SIZE:
            raise InvalidProofError(
                f"Proof for {circuit.name} must be {PROOF_SIZE} bytes",
                {"length": len(data)},
            )
        key_end = 1 + SLOT_PUBLIC_KEY_SIZE
        return cls(
            circuit=circuit,
            slot_public_key=bytes(data[1:key_end]),
            signature=bytes(data[key_end:]),
        )


def _verify_slot_key_v1(sequence_hash: bytes, ciphertext: bytes, proof: SlotProof) -> bool:
    if not hmac.compare_digest(hash_slot_public_key(proof.slot_public_key), sequence_hash):
        return False
    try:
        public_key = Ed25519PublicKey.from_public_bytes(proof.slot_public_key)
        public_key.verify(proof.signature, _transcript(proof.circuit, sequence_hash, ciphertext))
    except (InvalidSignature, ValueError):
        return False
    return True


# Tag -> verifier. Adding a relation means adding a Circuit member and an entry here.
_VERIFIERS: dict[Circuit, Callable[[bytes, bytes, SlotProof], bool]] = {
    Circuit.SLOT_KEY_V1: _verify_slot_key_v1,
}


class ProofGateway:
    """Builds and checks write proofs.

    Stateless: a single instance may be shared freely across threads.
    """

    circuit = Circuit.SLOT_KEY_V1

    def prove(
        self,
        material: ProofMaterial,
        n: int,
        plaintext: bytes,
        sequence_hash: bytes,
        ciphertext: bytes,
    ) -> bytes:
        """Prove knowledge of the material behind ``(h, c)``.

        Args:
            material: Channel id and message key
            n: Global sequence index of the message
            plaintext: The message that was encrypted
            sequence_hash: Public input h
            ciphertext: Public input c

        Returns:
            Serialized proof

        Raises:
            CircuitUnsatisfiableError: If the witnesses do not reproduce
                ``h`` and ``c``
        """
        slot_key = derive_slot_key(material.channel_id, n)
        slot_public_key = slot_public_bytes(slot_key)

        if not hmac.compare_digest(hash_slot_public_key(slot_public_key), sequence_hash):
            raise CircuitUnsatisfiableError("Sequence hash does not match the channel slot", {"index": n})
        expected = encrypt_message(material.message_key, n, plaintext, sequence_hash)
        if not hmac.compare_digest(expected, ciphertext):
            raise CircuitUnsatisfiableError("Ciphertext does not match the encrypted message", {"index": n})

        signature = slot_key.sign(_transcript(self.circuit, sequence_hash, ciphertext))
        return SlotProof(self.circuit, slot_public_key, signature).to_bytes()

    async def prove_async(
        self,
        material: ProofMaterial,
        n: int,
        plaintext: bytes,
        sequence_hash: bytes,
        ciphertext: bytes,
    ) -> bytes:
        """Run ``prove`` in a worker thread so callers can cancel or time it out."""
        return await asyncio.to_thread(self.prove, material, n, plaintext, sequence_hash, ciphertext)

    def verify(self, sequence_hash: bytes, ciphertext: bytes, proof: bytes) -> bool:
        """Check a proof against public inputs only. Never raises."""
        if not all(isinstance(value, bytes | bytearray) for value in (sequence_hash, ciphertext, proof)):
            return False
        if len(sequence_hash) != SEQUENCE_HASH_SIZE:
            return False
        try:
            parsed = SlotProof.from_bytes(proof)
        except InvalidProofError as e:
            logger.debug("Rejecting malformed proof: %s", e.message)
            return False
        verifier = _VERIFIERS.get(parsed.circuit)
        if verifier is None:
            return False
        return verifier(bytes(sequence_hash), bytes(ciphertext), parsed)
