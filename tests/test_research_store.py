"""
Research instance store tests — conditional transitions, the single-active
index and transaction rollback.
"""

import sqlite3

import pytest

from research_models import InvalidTransition, ResearchInstance, ResearchState, StorageError
from research_store import SqliteResearchStore

L, AV, R, C = (ResearchState.LOCKED, ResearchState.AVAILABLE, ResearchState.RESEARCHING, ResearchState.COMPLETED)


@pytest.fixture()
def store(seeded_db):
    s = SqliteResearchStore(seeded_db)
    with s.transaction():
        s.create_instances(
            [
                ResearchInstance("e1", "A", AV),
                ResearchInstance("e1", "B", AV),
                ResearchInstance("e1", "C", L),
            ]
        )
    return s


class TestQueries:
    def test_list_and_filter(self, store):
        assert [i.node_id for i in store.list_for_enterprise("e1")] == ["A", "B", "C"]
        assert [i.node_id for i in store.filter("e1", AV)] == ["A", "B"]
        assert store.researching("e1") is None
        assert store.get("e1", "nope") is None

    def test_due_only_returns_elapsed_research(self, store):
        with store.transaction():
            store.transition("e1", "A", AV, R, started_at=0.0, completes_at=100.0)
        assert store.due("e1", 99.0) == []
        assert [i.node_id for i in store.due("e1", 100.0)] == ["A"]

    def test_duplicate_instance_is_storage_error(self, store):
        with pytest.raises(StorageError):
            with store.transaction():
                store.create_instances([ResearchInstance("e1", "A", L)])


class TestTransition:
    def test_forward_steps_stamp_timestamps(self, store):
        with store.transaction():
            started = store.transition("e1", "A", AV, R, started_at=10.0, completes_at=70.0)
        assert started.state == R
        assert (started.started_at, started.completes_at) == (10.0, 70.0)

        with store.transaction():
            done = store.transition("e1", "A", R, C, completed_at=75.0)
        assert done.state == C
        assert done.started_at == 10.0
        assert done.completed_at == 75.0

    @pytest.mark.parametrize(
        "expected, target",
        [(C, R), (R, AV), (AV, L), (L, R), (AV, C)],
    )
    def test_non_forward_steps_rejected(self, store, expected, target):
        with pytest.raises(InvalidTransition):
            store.transition("e1", "A", expected, target, started_at=0.0, completes_at=1.0, completed_at=1.0)

    def test_expected_state_mismatch(self, store):
        with pytest.raises(InvalidTransition):
            store.transition("e1", "C", AV, R, started_at=0.0, completes_at=1.0)
        assert store.get("e1", "C").state == L

    def test_researching_requires_timestamps(self, store):
        with pytest.raises(ValueError):
            store.transition("e1", "A", AV, R)

    def test_second_active_research_blocked_by_index(self, store):
        with store.transaction():
            store.transition("e1", "A", AV, R, started_at=0.0, completes_at=10.0)
        with pytest.raises(InvalidTransition):
            with store.transaction():
                store.transition("e1", "B", AV, R, started_at=0.0, completes_at=10.0)
        assert store.get("e1", "B").state == AV
        assert store.researching("e1").node_id == "A"


class TestTransaction:
    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.transition("e1", "A", AV, R, started_at=0.0, completes_at=10.0)
                raise RuntimeError("boom")
        assert store.get("e1", "A").state == AV

    def test_sqlite_error_wrapped(self, store):
        with pytest.raises(StorageError):
            with store.transaction():
                store.connection.execute("INSERT INTO no_such_table VALUES (1)")

    def test_delete_for_enterprise(self, store):
        with store.transaction():
            assert store.delete_for_enterprise("e1") == 3
        assert store.list_for_enterprise("e1") == []

    def test_cascade_on_enterprise_delete(self, store, seeded_db):
        from enterprise_repository import delete_enterprise

        assert delete_enterprise(seeded_db, "e1") is True
        assert store.list_for_enterprise("e1") == []
        assert delete_enterprise(seeded_db, "e1") is False


def test_store_uses_row_factory(seeded_db):
    assert seeded_db.row_factory is sqlite3.Row
