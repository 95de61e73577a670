import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, List


@dataclass(frozen=True)
class Migration:
    migration_id: str
    description: str
    apply: Callable[[sqlite3.Connection], None]


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return {str(r["name"]) for r in rows}


def _safe_add_column(conn: sqlite3.Connection, table: str, name: str, coltype: str) -> None:
    if name in _table_columns(conn, table):
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {coltype};")


def _migration_0001_initial(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS players (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          balance REAL NOT NULL DEFAULT 0.0,
          created_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS enterprises (
          id TEXT PRIMARY KEY,
          player_id TEXT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          category TEXT NOT NULL,
          production_rate REAL NOT NULL DEFAULT 0.0,
          storage_capacity REAL NOT NULL DEFAULT 0.0,
          security_level REAL NOT NULL DEFAULT 0.0,
          heat_level REAL NOT NULL DEFAULT 0.0,
          created_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_enterprises_player ON enterprises(player_id);
        """
    )


def _migration_0002_research_instances(conn: sqlite3.Connection) -> None:
    """Per-enterprise research node instances."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS research_instances (
          enterprise_id TEXT NOT NULL REFERENCES enterprises(id) ON DELETE CASCADE,
          node_id TEXT NOT NULL,
          state TEXT NOT NULL DEFAULT 'locked',
          started_at REAL,
          completes_at REAL,
          completed_at REAL,
          updated_at REAL NOT NULL,
          PRIMARY KEY (enterprise_id, node_id)
        );
        CREATE INDEX IF NOT EXISTS idx_research_instances_state ON research_instances(enterprise_id, state);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_research_instances_one_active
          ON research_instances(enterprise_id) WHERE state = 'researching';
        """
    )


def _migration_0003_enterprise_income_columns(conn: sqlite3.Connection) -> None:
    """Revenue multiplier and passive income modified by research effects."""
    _safe_add_column(conn, "enterprises", "revenue_multiplier", "REAL NOT NULL DEFAULT 1.0")
    _safe_add_column(conn, "enterprises", "passive_income", "REAL NOT NULL DEFAULT 0.0")


def _migration_0004_simulation_state(conn: sqlite3.Connection) -> None:
    """Persisted game clock anchor so timestamps survive restarts."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS simulation_state (
          key TEXT PRIMARY KEY,
          value REAL NOT NULL,
          updated_at REAL NOT NULL
        );
        """
    )


def _migrations() -> List[Migration]:
    return [
        Migration("0001_initial", "Create players and enterprises tables", _migration_0001_initial),
        Migration("0002_research_instances", "Add research instance table with single-active index", _migration_0002_research_instances),
        Migration("0003_enterprise_income_columns", "Add revenue multiplier and passive income to enterprises", _migration_0003_enterprise_income_columns),
        Migration("0004_simulation_state", "Add persisted simulation clock state", _migration_0004_simulation_state),
    ]


def apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          migration_id TEXT PRIMARY KEY,
          description TEXT NOT NULL,
          applied_at REAL NOT NULL
        );
        """
    )

    applied = {
        str(r["migration_id"])
        for r in conn.execute("SELECT migration_id FROM schema_migrations").fetchall()
    }

    for migration in _migrations():
        if migration.migration_id in applied:
            continue
        migration.apply(conn)
        conn.execute(
            "INSERT INTO schema_migrations (migration_id,description,applied_at) VALUES (?,?,?)",
            (migration.migration_id, migration.description, time.time()),
        )
    conn.commit()
