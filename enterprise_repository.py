import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from research_models import EnterpriseAttributes, StorageError


@dataclass(frozen=True)
class EnterpriseRecord:
    id: str
    player_id: str
    name: str
    category: str
    attributes: EnterpriseAttributes


class EnterpriseRepository(Protocol):
    def get(self, enterprise_id: str) -> Optional[EnterpriseRecord]: ...

    def update_attributes(self, enterprise_id: str, attributes: EnterpriseAttributes) -> None: ...


_SELECT = """SELECT id, player_id, name, category, production_rate, storage_capacity,
                    security_level, heat_level, revenue_multiplier, passive_income
             FROM enterprises"""


def _row_to_record(row: sqlite3.Row) -> EnterpriseRecord:
    return EnterpriseRecord(
        id=str(row["id"]),
        player_id=str(row["player_id"]),
        name=str(row["name"]),
        category=str(row["category"]),
        attributes=EnterpriseAttributes(
            production_rate=float(row["production_rate"]),
            storage_capacity=float(row["storage_capacity"]),
            security_level=float(row["security_level"]),
            heat_level=float(row["heat_level"]),
            revenue_multiplier=float(row["revenue_multiplier"]),
            passive_income=float(row["passive_income"]),
        ),
    )


class SqliteEnterpriseRepository:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def get(self, enterprise_id: str) -> Optional[EnterpriseRecord]:
        try:
            row = self._conn.execute(f"{_SELECT} WHERE id = ?", (enterprise_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return _row_to_record(row) if row else None

    def update_attributes(self, enterprise_id: str, attributes: EnterpriseAttributes) -> None:
        try:
            cur = self._conn.execute(
                """UPDATE enterprises
                   SET production_rate = ?, storage_capacity = ?, security_level = ?,
                       heat_level = ?, revenue_multiplier = ?, passive_income = ?
                   WHERE id = ?""",
                (
                    attributes.production_rate,
                    attributes.storage_capacity,
                    attributes.security_level,
                    attributes.heat_level,
                    attributes.revenue_multiplier,
                    attributes.passive_income,
                    enterprise_id,
                ),
            )
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        if cur.rowcount != 1:
            raise StorageError(f"Enterprise {enterprise_id} not found")


def create_enterprise(
    conn: sqlite3.Connection,
    player_id: str,
    name: str,
    category: str,
    attributes: Optional[EnterpriseAttributes] = None,
    enterprise_id: Optional[str] = None,
) -> EnterpriseRecord:
    """Insert an enterprise row (no commit). Returns the new record."""
    eid = enterprise_id or str(uuid.uuid4())
    attrs = attributes or EnterpriseAttributes()
    conn.execute(
        """INSERT INTO enterprises (id, player_id, name, category, production_rate, storage_capacity,
                                    security_level, heat_level, revenue_multiplier, passive_income, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            eid,
            player_id,
            name,
            category,
            attrs.production_rate,
            attrs.storage_capacity,
            attrs.security_level,
            attrs.heat_level,
            attrs.revenue_multiplier,
            attrs.passive_income,
            time.time(),
        ),
    )
    return EnterpriseRecord(id=eid, player_id=player_id, name=name, category=category, attributes=attrs)


def delete_enterprise(conn: sqlite3.Connection, enterprise_id: str) -> bool:
    """Delete an enterprise; its research instances cascade. Commits."""
    cur = conn.execute("DELETE FROM enterprises WHERE id = ?", (enterprise_id,))
    conn.commit()
    return cur.rowcount == 1
