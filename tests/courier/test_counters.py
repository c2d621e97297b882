"""Tests for counter persistence."""

import json

import pytest

from ledger_courier.channels import (
    CounterCorruptionError,
    CounterState,
    CounterStore,
    InMemoryCounterStore,
    JsonFileCounterStore,
)

FINGERPRINT = "0123456789abcdef0123456789abcdef"


class TestCounterState:
    """Tests for CounterState serialization."""

    def test_round_trip(self):
        state = CounterState(next_local_counter=4, last_seen={"ab": 7})
        assert CounterState.from_dict(state.to_dict()) == state

    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"next_local_counter": "many"},
            {"next_local_counter": -1},
            {"next_local_counter": 0, "last_seen": {"ab": -2}},
        ],
    )
    def test_malformed(self, data):
        with pytest.raises(CounterCorruptionError):
            CounterState.from_dict(data)


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCounterStore()
    return JsonFileCounterStore(tmp_path / "counters")


class TestStores:
    """Behaviour shared by every store."""

    def test_unknown_channel(self, store):
        assert store.load(FINGERPRINT) is None

    def test_save_and_load(self, store):
        store.save(FINGERPRINT, CounterState(next_local_counter=3, last_seen={"aa": 5}))
        loaded = store.load(FINGERPRINT)
        assert loaded.next_local_counter == 3
        assert loaded.last_seen == {"aa": 5}

    def test_saved_state_is_a_copy(self, store):
        state = CounterState(next_local_counter=1)
        store.save(FINGERPRINT, state)
        state.next_local_counter = 99
        assert store.load(FINGERPRINT).next_local_counter == 1

    def test_protocol(self, store):
        assert isinstance(store, CounterStore)


class TestJsonFileCounterStore:
    """File-specific behaviour."""

    def test_file_layout(self, tmp_path):
        store = JsonFileCounterStore(tmp_path)
        store.save(FINGERPRINT, CounterState(next_local_counter=2))
        assert json.loads((tmp_path / f"{FINGERPRINT}.json").read_text()) == {
            "last_seen": {},
            "next_local_counter": 2,
        }
        assert [p.name for p in tmp_path.iterdir()] == [f"{FINGERPRINT}.json"]

    def test_corrupt_file(self, tmp_path):
        (tmp_path / f"{FINGERPRINT}.json").write_text("{not json")
        with pytest.raises(CounterCorruptionError, match="Unreadable"):
            JsonFileCounterStore(tmp_path).load(FINGERPRINT)

    def test_non_object_file(self, tmp_path):
        (tmp_path / f"{FINGERPRINT}.json").write_text("[1, 2]")
        with pytest.raises(CounterCorruptionError):
            JsonFileCounterStore(tmp_path).load(FINGERPRINT)

    @pytest.mark.parametrize("fingerprint", ["", "../escape", "ABCDEF"])
    def test_rejects_unsafe_names(self, tmp_path, fingerprint):
        with pytest.raises(ValueError):
            JsonFileCounterStore(tmp_path).load(fingerprint)
