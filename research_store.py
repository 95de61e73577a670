"""
Research instance store — durable per-enterprise node states in SQLite.

Every state change goes through transition(), a single conditional UPDATE
guarded on the expected current state.  The partial unique index on
research_instances(enterprise_id) WHERE state = 'researching' makes the
"one active track" rule hold even across processes.
"""

import sqlite3
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional, Protocol, Sequence

from research_models import (
    STATE_ORDER,
    InvalidTransition,
    ResearchInstance,
    ResearchState,
    StorageError,
)


class ResearchInstanceStore(Protocol):
    def transaction(self): ...

    def create_instances(self, instances: Sequence[ResearchInstance]) -> None: ...

    def get(self, enterprise_id: str, node_id: str) -> Optional[ResearchInstance]: ...

    def list_for_enterprise(self, enterprise_id: str) -> List[ResearchInstance]: ...

    def filter(self, enterprise_id: str, state: ResearchState) -> List[ResearchInstance]: ...

    def researching(self, enterprise_id: str) -> Optional[ResearchInstance]: ...

    def due(self, enterprise_id: str, now: float) -> List[ResearchInstance]: ...

    def transition(
        self,
        enterprise_id: str,
        node_id: str,
        expected: ResearchState,
        target: ResearchState,
        *,
        started_at: Optional[float] = None,
        completes_at: Optional[float] = None,
        completed_at: Optional[float] = None,
    ) -> ResearchInstance: ...

    def delete_for_enterprise(self, enterprise_id: str) -> int: ...


_COLUMNS = "enterprise_id, node_id, state, started_at, completes_at, completed_at"


def _row_to_instance(row: sqlite3.Row) -> ResearchInstance:
    return ResearchInstance(
        enterprise_id=str(row["enterprise_id"]),
        node_id=str(row["node_id"]),
        state=ResearchState(str(row["state"])),
        started_at=float(row["started_at"]) if row["started_at"] is not None else None,
        completes_at=float(row["completes_at"]) if row["completes_at"] is not None else None,
        completed_at=float(row["completed_at"]) if row["completed_at"] is not None else None,
    )


def _is_forward_step(expected: ResearchState, target: ResearchState) -> bool:
    return STATE_ORDER.index(target) == STATE_ORDER.index(expected) + 1


class SqliteResearchStore:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit on success, roll back on any exception.

        sqlite3 errors raised inside the block are re-raised as StorageError.
        """
        try:
            yield
        except sqlite3.Error as exc:
            self._rollback()
            raise StorageError(str(exc)) from exc
        except BaseException:
            self._rollback()
            raise
        try:
            self._conn.commit()
        except sqlite3.Error as exc:
            self._rollback()
            raise StorageError(str(exc)) from exc

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error:
            pass

    def _query(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    def create_instances(self, instances: Sequence[ResearchInstance]) -> None:
        now = time.time()
        try:
            self._conn.executemany(
                f"""INSERT INTO research_instances ({_COLUMNS}, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [
                    (i.enterprise_id, i.node_id, i.state.value, i.started_at, i.completes_at, i.completed_at, now)
                    for i in instances
                ],
            )
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    def get(self, enterprise_id: str, node_id: str) -> Optional[ResearchInstance]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM research_instances WHERE enterprise_id = ? AND node_id = ?",
            (enterprise_id, node_id),
        )
        return _row_to_instance(rows[0]) if rows else None

    def list_for_enterprise(self, enterprise_id: str) -> List[ResearchInstance]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM research_instances WHERE enterprise_id = ? ORDER BY node_id",
            (enterprise_id,),
        )
        return [_row_to_instance(r) for r in rows]

    def filter(self, enterprise_id: str, state: ResearchState) -> List[ResearchInstance]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM research_instances WHERE enterprise_id = ? AND state = ? ORDER BY node_id",
            (enterprise_id, state.value),
        )
        return [_row_to_instance(r) for r in rows]

    def researching(self, enterprise_id: str) -> Optional[ResearchInstance]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM research_instances WHERE enterprise_id = ? AND state = 'researching'",
            (enterprise_id,),
        )
        return _row_to_instance(rows[0]) if rows else None

    def due(self, enterprise_id: str, now: float) -> List[ResearchInstance]:
        """Researching instances whose completes_at has passed."""
        rows = self._query(
            f"""SELECT {_COLUMNS} FROM research_instances
                WHERE enterprise_id = ? AND state = 'researching' AND completes_at <= ?""",
            (enterprise_id, now),
        )
        return [_row_to_instance(r) for r in rows]

    def transition(
        self,
        enterprise_id: str,
        node_id: str,
        expected: ResearchState,
        target: ResearchState,
        *,
        started_at: Optional[float] = None,
        completes_at: Optional[float] = None,
        completed_at: Optional[float] = None,
    ) -> ResearchInstance:
        if not _is_forward_step(expected, target):
            raise InvalidTransition(enterprise_id, node_id, expected, target)
        if target == ResearchState.RESEARCHING and (started_at is None or completes_at is None):
            raise ValueError("researching requires started_at and completes_at")
        if target == ResearchState.COMPLETED and completed_at is None:
            raise ValueError("completed requires completed_at")

        # COALESCE keeps timestamps already written; completed_at is only ever set once.
        try:
            cur = self._conn.execute(
                """UPDATE research_instances
                   SET state = ?,
                       started_at = COALESCE(started_at, ?),
                       completes_at = COALESCE(completes_at, ?),
                       completed_at = COALESCE(completed_at, ?),
                       updated_at = ?
                   WHERE enterprise_id = ? AND node_id = ? AND state = ?""",
                (
                    target.value,
                    started_at,
                    completes_at,
                    completed_at,
                    time.time(),
                    enterprise_id,
                    node_id,
                    expected.value,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise InvalidTransition(enterprise_id, node_id, expected, target) from exc
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

        if cur.rowcount != 1:
            raise InvalidTransition(enterprise_id, node_id, expected, target)

        updated = self.get(enterprise_id, node_id)
        if updated is None:
            raise StorageError(f"Research '{node_id}' for enterprise {enterprise_id} vanished during update")
        return updated

    def delete_for_enterprise(self, enterprise_id: str) -> int:
        try:
            cur = self._conn.execute("DELETE FROM research_instances WHERE enterprise_id = ?", (enterprise_id,))
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return int(cur.rowcount)
