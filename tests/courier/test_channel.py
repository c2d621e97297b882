"""Tests for channels: sending, contiguous delivery, groups, persistence."""

import os

import pytest

from ledger_courier.channels import (
    Channel,
    InvalidMembershipError,
    InvalidSecretError,
    JsonFileCounterStore,
    TamperedOrForeignEntryError,
    decrypt_message,
    encrypt_message,
)

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def alice_out(alice, bob, shared_secret, repository):
    """Alice's sending side of the alice -> bob channel."""
    return Channel.one_way(alice, bob, shared_secret, self_key=alice, repository=repository)


@pytest.fixture
def bob_in(alice, bob, shared_secret, repository):
    """Bob's receiving side of the alice -> bob channel."""
    return Channel.one_way(alice, bob, shared_secret, self_key=bob, repository=repository)


def _pairs(messages):
    return [(m.index, m.plaintext) for m in messages]


# =============================================================================
# OPENING
# =============================================================================


class TestOpen:
    """Tests for Channel.open validation."""

    def test_empty_membership_rejected(self, shared_secret):
        with pytest.raises(InvalidMembershipError):
            Channel.open([], shared_secret)

    def test_self_key_must_be_member(self, alice, bob, carol, shared_secret):
        with pytest.raises(InvalidMembershipError, match="not a member"):
            Channel.open([alice, bob], shared_secret, self_key=carol)

    def test_writers_must_be_members(self, alice, bob, carol, shared_secret):
        with pytest.raises(InvalidMembershipError, match="writer must be a channel member"):
            Channel.open([alice, bob], shared_secret, self_key=alice, writers=[carol])

    def test_invalid_secret(self, alice, bob):
        with pytest.raises(InvalidSecretError):
            Channel.open([alice, bob], b"too short")

    def test_members_agree_on_sequence_hashes(self, alice, bob, shared_secret):
        """Both sides of a channel address the same slots."""
        mine = Channel.open([alice, bob], shared_secret, self_key=alice)
        theirs = Channel.open([bob, alice], shared_secret, self_key=bob)
        assert [mine.sequence_hash(n) for n in range(5)] == [theirs.sequence_hash(n) for n in range(5)]

    def test_one_way_directions_differ(self, alice, bob, shared_secret):
        """alice -> bob and bob -> alice never share addresses."""
        forward = Channel.one_way(alice, bob, shared_secret)
        backward = Channel.one_way(bob, alice, shared_secret)
        assert forward.sequence_hash(0) != backward.sequence_hash(0)

    def test_repr_hides_secret_material(self, alice, bob, shared_secret):
        channel = Channel.open([alice, bob], shared_secret, self_key=alice)
        assert shared_secret.hex() not in repr(channel)
        assert "Channel(members=2" in repr(channel)


# =============================================================================
# SENDING
# =============================================================================


class TestSend:
    """Tests for index allocation and encryption."""

    def test_indices_never_reused(self, alice_out):
        indices = [alice_out.send(f"m{i}").index for i in range(5)]
        assert indices == [0, 1, 2, 3, 4]

    def test_send_returns_hash_for_index(self, alice_out):
        sent = alice_out.send(b"hello")
        assert sent.sequence_hash == alice_out.sequence_hash(sent.index)
        assert sent.plaintext == b"hello"

    def test_string_plaintext_is_utf8(self, alice_out):
        assert alice_out.send("héllo").plaintext == "héllo".encode()

    def test_receiver_cannot_send_on_one_way_channel(self, bob_in):
        with pytest.raises(InvalidMembershipError, match="not a writer"):
            bob_in.send(b"nope")

    def test_receive_only_channel_cannot_send(self, alice, bob, shared_secret):
        channel = Channel.open([alice, bob], shared_secret)
        with pytest.raises(InvalidMembershipError, match="without a local key"):
            channel.send(b"x")

    def test_next_index_only_for_local_key(self, alice_out, bob):
        with pytest.raises(InvalidMembershipError, match="local key"):
            alice_out.next_index_for(bob)

    def test_send_does_not_write(self, alice_out, ledger):
        alice_out.send(b"unpublished")
        assert len(ledger) == 0


class TestCipher:
    """Round-trip of the slot-bound AEAD."""

    @pytest.mark.parametrize("message", [b"", b"a", b"x" * 1000, os.urandom(257)])
    def test_round_trip(self, message):
        key, h = os.urandom(32), os.urandom(64)
        assert decrypt_message(key, 5, encrypt_message(key, 5, message, h), h) == message

    def test_bound_to_sequence_hash(self):
        """A ciphertext replayed under another slot does not decrypt."""
        key, h = os.urandom(32), os.urandom(64)
        ciphertext = encrypt_message(key, 5, b"payload", h)
        assert decrypt_message(key, 5, ciphertext, os.urandom(64)) is None
        assert decrypt_message(key, 6, ciphertext, h) is None

    def test_garbage_does_not_decrypt(self):
        assert decrypt_message(os.urandom(32), 0, b"short", os.urandom(64)) is None


# =============================================================================
# RECEIVING
# =============================================================================


class TestTryReceive:
    """Tests for resumable, contiguous delivery."""

    def test_end_to_end_three_messages(self, alice_out, bob_in, messenger):
        """Bob receives a, b, c at indices 0, 1, 2 in order."""
        for text in ["a", "b", "c"]:
            messenger.publish(alice_out, text)

        assert bob_in.last_seen(bob_in.allocator.order[0]) == -1
        assert _pairs(bob_in.try_receive(2)) == [(0, b"a"), (1, b"b"), (2, b"c")]

    def test_delivery_is_exactly_once(self, alice_out, bob_in, messenger):
        messenger.publish(alice_out, "a")
        assert _pairs(bob_in.try_receive(5)) == [(0, b"a")]
        assert bob_in.try_receive(5) == []

    def test_upto_index_bounds_delivery(self, alice_out, bob_in, messenger):
        for text in ["a", "b", "c"]:
            messenger.publish(alice_out, text)
        assert _pairs(bob_in.try_receive(1)) == [(0, b"a"), (1, b"b")]
        assert _pairs(bob_in.try_receive(2)) == [(2, b"c")]

    def test_received_messages_carry_sender_and_timestamp(self, alice, alice_out, bob_in, messenger, clock):
        messenger.publish(alice_out, "a")
        [message] = bob_in.try_receive(0)
        assert message.sender == alice
        assert message.timestamp == clock()

    def test_gap_halts_advancement_and_caches_later_entries(self, alice, alice_out, bob_in, messenger):
        """Index 2 lands before index 1: it waits until 1 arrives."""
        prepared = [messenger.prepare(alice_out, text) for text in ["a", "b", "c"]]
        messenger.submit(prepared[0])
        messenger.submit(prepared[2])

        assert _pairs(bob_in.try_receive(2)) == [(0, b"a")]
        assert bob_in.last_seen(alice) == 0
        assert bob_in.pending_count == 1

        messenger.submit(prepared[1])
        assert _pairs(bob_in.try_receive(2)) == [(1, b"b"), (2, b"c")]
        assert bob_in.last_seen(alice) == 2
        assert bob_in.pending_count == 0

    def test_cached_entries_not_read_twice(self, alice_out, bob_in, messenger, repository, monkeypatch):
        prepared = [messenger.prepare(alice_out, text) for text in ["a", "b"]]
        messenger.submit(prepared[1])
        bob_in.try_receive(1)

        reads = []
        original = repository.read_entry
        monkeypatch.setattr(repository, "read_entry", lambda h: reads.append(h) or original(h))

        messenger.submit(prepared[0])
        bob_in.try_receive(1)
        assert reads == [alice_out.sequence_hash(0)]

    def test_empty_repository_is_not_an_error(self, bob_in):
        assert bob_in.try_receive(10) == []

    def test_requires_repository(self, alice, bob, shared_secret):
        channel = Channel.open([alice, bob], shared_secret, self_key=alice)
        with pytest.raises(ValueError, match="No repository"):
            channel.try_receive(0)

    def test_third_party_cannot_decrypt(self, alice, bob, other_secret, alice_out, messenger, ledger, repository):
        """Without the secret, entries are unreadable and unaddressable."""
        for text in ["a", "b", "c"]:
            messenger.publish(alice_out, text)

        outsider = Channel.one_way(alice, bob, other_secret, repository=repository)
        assert outsider.try_receive(2) == []
        assert all(ledger.get(outsider.sequence_hash(n)) is None for n in range(3))

        # Entries carry only the ciphertext and its GCM tag
        for n, text in enumerate([b"a", b"b", b"c"]):
            stored = ledger.get(alice_out.sequence_hash(n)).value
            assert len(stored) == len(text) + 16
            assert decrypt_message(bytes(32), n, stored, alice_out.sequence_hash(n)) is None


class TestTamperedEntries:
    """Entries that fail authentication are skipped, never fatal."""

    def test_garbage_entry_skipped_and_surfaced(self, alice_out, bob_in, messenger, ledger):
        # A decoy lands at index 0 without going through the proof gate
        ledger.put(alice_out.sequence_hash(0), os.urandom(48))
        alice_out.next_index_for(alice_out.self_key)
        messenger.publish(alice_out, "b")

        assert _pairs(bob_in.try_receive(1)) == [(1, b"b")]

        [rejected] = bob_in.drain_rejected()
        assert isinstance(rejected, TamperedOrForeignEntryError)
        assert rejected.index == 0
        assert rejected.sequence_hash == alice_out.sequence_hash(0)
        assert bob_in.drain_rejected() == []

    def test_receive_next_skips_tampered(self, alice, alice_out, bob_in, messenger, ledger):
        ledger.put(alice_out.sequence_hash(0), os.urandom(48))
        alice_out.next_index_for(alice)
        messenger.publish(alice_out, "b")

        message = bob_in.receive_next(alice)
        assert (message.index, message.plaintext) == (1, b"b")
        assert len(bob_in.drain_rejected()) == 1


class TestReceiveNext:
    """Tests for single-stream delivery."""

    def test_returns_none_until_next_slot_fills(self, alice, alice_out, bob_in, messenger):
        assert bob_in.receive_next(alice) is None
        messenger.publish(alice_out, "a")
        assert bob_in.receive_next(alice).plaintext == b"a"
        assert bob_in.receive_next(alice) is None

    def test_unknown_writer(self, bob, bob_in):
        with pytest.raises(InvalidMembershipError):
            bob_in.receive_next(bob)


# =============================================================================
# GROUPS
# =============================================================================


class TestGroupChannel:
    """Three-member channels with interleaved writer streams."""

    @pytest.fixture
    def group(self, alice, bob, carol, shared_secret, repository):
        members = [alice, bob, carol]
        return {m: Channel.open(members, shared_secret, self_key=m, repository=repository) for m in members}

    def test_slot_one_sends_at_one_and_four(self, group):
        any_view = next(iter(group.values()))
        slot_one = any_view.allocator.order[1]
        assert [group[slot_one].send(t).index for t in ["x", "y"]] == [1, 4]

    def test_all_members_received_in_index_order(self, group, messenger):
        order = next(iter(group.values())).allocator.order
        for member in order:
            messenger.publish(group[member], f"hi from {order.index(member)}")
        messenger.publish(group[order[0]], "again")

        reader = group[order[2]]
        received = reader.try_receive(10)
        assert _pairs(received) == [
            (0, b"hi from 0"),
            (1, b"hi from 1"),
            (2, b"hi from 2"),
            (3, b"again"),
        ]
        assert [m.sender for m in received] == [order[0], order[1], order[2], order[0]]

    def test_silent_member_does_not_block_others(self, group, messenger):
        """Gaps are per writer: slot 1 staying quiet does not hold back slot 0."""
        order = next(iter(group.values())).allocator.order
        messenger.publish(group[order[0]], "first")
        messenger.publish(group[order[0]], "second")

        assert _pairs(group[order[2]].try_receive(10)) == [(0, b"first"), (3, b"second")]

    def test_awaited_hashes_cover_every_writer(self, group):
        view = next(iter(group.values()))
        assert view.awaited_hashes(5) == [
            view.sequence_hash(n) for writer in view.allocator.order for n in view.allocator.indices_for(writer, 0, 5)
        ]


# =============================================================================
# PERSISTENCE
# =============================================================================


class TestCounterPersistence:
    """Counters survive a restart."""

    def test_send_counter_survives_restart(self, alice, bob, shared_secret, tmp_path):
        store = JsonFileCounterStore(tmp_path)
        first = Channel.one_way(alice, bob, shared_secret, self_key=alice, counter_store=store)
        first.send(b"a")
        first.send(b"b")

        restarted = Channel.one_way(alice, bob, shared_secret, self_key=alice, counter_store=JsonFileCounterStore(tmp_path))
        assert restarted.send(b"c").index == 2

    def test_receive_cursor_survives_restart(self, alice, bob, shared_secret, alice_out, messenger, repository, tmp_path):
        store = JsonFileCounterStore(tmp_path)
        reader = Channel.one_way(alice, bob, shared_secret, self_key=bob, counter_store=store, repository=repository)
        messenger.publish(alice_out, "a")
        reader.try_receive(5)

        restarted = Channel.one_way(alice, bob, shared_secret, self_key=bob, counter_store=store, repository=repository)
        assert restarted.last_seen(alice) == 0
        assert restarted.try_receive(5) == []

    def test_resynchronize_after_lost_counter(self, alice, bob, shared_secret, alice_out, messenger, repository):
        for text in ["a", "b", "c"]:
            messenger.publish(alice_out, text)

        # Fresh device state: counter lost
        recovered = Channel.one_way(alice, bob, shared_secret, self_key=alice, repository=repository)
        assert recovered.next_local_counter == 0
        assert recovered.resynchronize() == 3
        assert recovered.send(b"d").index == 3
