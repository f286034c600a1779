"""Tests for the SQLite storage layer."""

import os
import sqlite3
import tempfile

import pytest

from kore_pet.behavior import BehaviorLog
from kore_pet.config import Settings
from kore_pet.errors import StorageError
from kore_pet.models import BehaviorEvent, Pet, Rarity, Stats, Trait
from kore_pet.oracle import StateOracle
from kore_pet.storage import Storage


@pytest.fixture
def storage():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    s = Storage(path)
    yield s
    s.close()
    os.unlink(path)


@pytest.fixture
def pet(storage):
    p = Pet(name="Ember", species="Fire Salamander", rarity=Rarity.R,
            traits=["blaze"])
    storage.save_pet(p)
    return p


# ── Pets ───────────────────────────────────────────────────────────────


class TestPets:
    def test_roundtrip(self, storage, pet):
        loaded = storage.load_pet(pet.id)
        assert loaded == pet

    def test_missing(self, storage):
        assert storage.load_pet("nope") is None

    def test_add_to_stats(self, storage, pet):
        storage.add_to_stats(pet.id, {"health": 5, "speed": -2})
        loaded = storage.load_pet(pet.id)
        assert loaded.stats == Stats().apply({"health": 5, "speed": -2})

    def test_update_descriptor(self, storage, pet):
        storage.update_descriptor(pet.id, "A small lizard", 123.0)
        loaded = storage.load_pet(pet.id)
        assert loaded.descriptor == "A small lizard"
        assert loaded.last_evolution_at == 123.0


# ── Events ─────────────────────────────────────────────────────────────


class TestEvents:
    def test_unprocessed_ordered(self, storage, pet):
        storage.save_event(BehaviorEvent(pet.id, "feed", timestamp=20.0))
        storage.save_event(BehaviorEvent(pet.id, "battle", timestamp=10.0))
        events = storage.unprocessed_events(pet.id)
        assert [e.action_type for e in events] == ["battle", "feed"]

    def test_mark_processed_only_once(self, storage, pet):
        e = BehaviorEvent(pet.id, "feed")
        storage.save_event(e)
        assert storage.mark_processed([e.id]) == 1
        assert storage.mark_processed([e.id]) == 0
        assert storage.unprocessed_events(pet.id) == []

    def test_purge_keeps_unprocessed(self, storage, pet):
        old_done = BehaviorEvent(pet.id, "feed", timestamp=1.0)
        old_pending = BehaviorEvent(pet.id, "feed", timestamp=1.0)
        fresh_done = BehaviorEvent(pet.id, "feed", timestamp=100.0)
        for e in (old_done, old_pending, fresh_done):
            storage.save_event(e)
        storage.mark_processed([old_done.id, fresh_done.id])

        assert storage.purge_events(pet.id, before=50.0) == 1
        ids = {e.id for e in storage.events(pet.id)}
        assert ids == {old_pending.id, fresh_done.id}

    def test_purge_caps_processed(self, storage, pet):
        events = [BehaviorEvent(pet.id, "chat", timestamp=float(i)) for i in range(10)]
        for e in events:
            storage.save_event(e)
        storage.mark_processed([e.id for e in events[:8]])

        storage.purge_events(pet.id, before=0.0, keep=3)
        kept = storage.events(pet.id, processed=True)
        assert [e.timestamp for e in kept] == [5.0, 6.0, 7.0]
        assert len(storage.events(pet.id, processed=False)) == 2


# ── Traits ─────────────────────────────────────────────────────────────


class TestTraits:
    def test_deactivate_oldest_exact(self, storage, pet):
        for i in range(5):
            storage.save_trait(Trait(pet.id, f"t{i}", created_at=float(i)))
        assert storage.deactivate_oldest_traits(pet.id, 2) == 2
        active = storage.load_traits(pet.id, active_only=True)
        assert [t.name for t in active] == ["t2", "t3", "t4"]
        assert len(storage.load_traits(pet.id)) == 5

    def test_deactivate_nothing(self, storage, pet):
        storage.save_trait(Trait(pet.id, "t"))
        assert storage.deactivate_oldest_traits(pet.id, 0) == 0
        assert storage.deactivate_oldest_traits(pet.id, -3) == 0
        assert storage.count_active_traits(pet.id) == 1


# ── Transactions ───────────────────────────────────────────────────────


class TestTransactions:
    def test_rollback_on_error(self, storage, pet):
        with pytest.raises(RuntimeError):
            with storage.transaction():
                storage.save_event(BehaviorEvent(pet.id, "feed"))
                raise RuntimeError("boom")
        assert storage.events(pet.id) == []

    def test_nested_joins_outer(self, storage, pet):
        with storage.transaction():
            with storage.transaction():
                storage.save_event(BehaviorEvent(pet.id, "feed"))
            storage.save_event(BehaviorEvent(pet.id, "chat"))
        assert len(storage.events(pet.id)) == 2

    def test_sqlite_errors_wrapped(self, storage):
        storage.close()
        with pytest.raises(StorageError):
            storage.load_pet("x")


class TestLockContention:
    """A second connection holding the write lock makes single writes fail."""

    @pytest.fixture
    def locker(self, storage):
        storage.conn.execute("PRAGMA busy_timeout = 0")
        other = sqlite3.connect(str(storage.path))
        other.execute("BEGIN IMMEDIATE")
        yield other
        other.close()

    def test_failed_write_leaves_no_open_transaction(self, storage, pet, locker):
        with pytest.raises(StorageError):
            storage.save_oracle_state("p", {}, {}, 1.0)
        assert not storage.conn.in_transaction
        locker.rollback()
        with storage.transaction():
            storage.save_event(BehaviorEvent(pet.id, "feed"))
        assert len(storage.events(pet.id)) == 1

    def test_swallowed_oracle_failure_does_not_block_recording(self, storage, pet, locker):
        fb = StateOracle(storage, Settings()).evaluate("INNOVATION: 0.9", scope=pet.id)
        assert fb.layer == "DEFAULT"
        locker.commit()
        event = BehaviorLog(storage, Settings()).record(pet.id, "feed")
        assert storage.unprocessed_events(pet.id) == [event]


# ── Oracle state ───────────────────────────────────────────────────────


class TestOracleState:
    def test_roundtrip_and_delete(self, storage):
        storage.save_oracle_state("p1", {"tone": 0.8}, {"first": {}}, 1.0)
        assert storage.load_oracle_state("p1") == ({"tone": 0.8}, {"first": {}})
        assert storage.oracle_scopes() == ["p1"]
        assert storage.delete_oracle_state("p1") is True
        assert storage.load_oracle_state("p1") is None
        assert storage.delete_oracle_state("p1") is False

    def test_counts(self, storage, pet):
        counts = storage.counts()
        assert counts["pets"] == 1
        assert counts["traits"] == 0
