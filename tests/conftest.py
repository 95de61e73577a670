"""
Shared pytest fixtures for the enterprise research tests.

Provides:
  - In-memory SQLite DB with migrations applied
  - A manual game clock and a small four-node scenario catalog
  - Seeded player / enterprise rows and a wired ResearchController
  - FastAPI TestClient backed by a temporary on-disk DB
"""

import os
import sqlite3
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

# ---------------------------------------------------------------------------
# Ensure the project root is on sys.path so we can import app modules
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Use a writable temp directory for the test DB so the app startup succeeds.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="research_test_")
os.environ["DB_DIR"] = _TEST_DB_DIR
os.environ.setdefault("ADVISOR_ENABLED", "1")

START_TIME_S = 1_000_000.0
HOUR_S = 3600.0


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class ManualClock:
    """GameClock whose time only moves when a test says so."""

    def __init__(self, start: float = START_TIME_S):
        self.t = float(start)

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> float:
        self.t += float(seconds)
        return self.t


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

SCENARIO_CATEGORY = "marijuana_farm"


def scenario_tree_payload() -> Dict[str, Any]:
    """A (tier 1) -> B, C (tier 2) -> D (tier 3, requires B and C)."""
    return {
        "category": SCENARIO_CATEGORY,
        "display_name": "Scenario Farm",
        "nodes": [
            {"id": "A", "name": "Alpha", "tier": 1, "branch": "production", "cost": 100,
             "duration_hours": 1, "effects": {"production_rate": 0.5}},
            {"id": "B", "name": "Bravo", "tier": 2, "branch": "security", "prerequisites": ["A"],
             "cost": 200, "duration_hours": 2, "effects": {"security_level": 2}},
            {"id": "C", "name": "Charlie", "tier": 2, "branch": "security", "prerequisites": ["A"],
             "cost": 150, "duration_hours": 1, "effects": {"heat_reduction": 10}},
            {"id": "D", "name": "Delta", "tier": 3, "branch": "special", "prerequisites": ["B", "C"],
             "cost": 500, "duration_hours": 3, "effects": {"passive_income": 1000},
             "unlocks_items": ["delta_goods"]},
        ],
    }


def build_catalog(*payloads: Dict[str, Any]):
    from tech_catalog import TechnologyCatalog, parse_tree
    from research_models import CatalogError

    errors: List[str] = []
    trees = [parse_tree(p, f"payload[{i}]", errors) for i, p in enumerate(payloads)]
    if errors:
        raise CatalogError(errors)
    return TechnologyCatalog(t for t in trees if t is not None)


@pytest.fixture()
def scenario_catalog():
    return build_catalog(scenario_tree_payload())


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def db_conn() -> Generator[sqlite3.Connection, None, None]:
    """Yield an in-memory SQLite connection with all migrations applied."""
    from db import connect_db
    from db_migrations import apply_migrations

    conn = connect_db(Path(":memory:"))
    apply_migrations(conn)
    yield conn
    conn.close()


class TestHelpers:
    """Stateless helper methods for common test-data operations."""

    @staticmethod
    def create_player(conn: sqlite3.Connection, balance: float = 10_000.0, player_id: str = "p1") -> str:
        from funds_service import create_player
        return create_player(conn, f"Player {player_id}", balance=balance, player_id=player_id)

    @staticmethod
    def create_enterprise(
        conn: sqlite3.Connection,
        player_id: str = "p1",
        category: str = SCENARIO_CATEGORY,
        enterprise_id: str = "e1",
        attributes=None,
    ) -> str:
        from enterprise_repository import create_enterprise
        from research_models import EnterpriseAttributes

        attrs = attributes or EnterpriseAttributes(production_rate=10.0, storage_capacity=100.0, heat_level=20.0)
        create_enterprise(conn, player_id, f"Enterprise {enterprise_id}", category, attrs, enterprise_id=enterprise_id)
        conn.commit()
        return enterprise_id

    @staticmethod
    def balance(conn: sqlite3.Connection, player_id: str = "p1") -> float:
        row = conn.execute("SELECT balance FROM players WHERE id = ?", (player_id,)).fetchone()
        return float(row["balance"])

    @staticmethod
    def states(conn: sqlite3.Connection, enterprise_id: str = "e1") -> Dict[str, str]:
        rows = conn.execute(
            "SELECT node_id, state FROM research_instances WHERE enterprise_id = ?", (enterprise_id,)
        ).fetchall()
        return {r["node_id"]: r["state"] for r in rows}


@pytest.fixture()
def helpers() -> TestHelpers:
    return TestHelpers()


@pytest.fixture()
def seeded_db(db_conn: sqlite3.Connection, helpers: TestHelpers) -> sqlite3.Connection:
    """db_conn with player p1 (balance 10k) owning enterprise e1 in the scenario category."""
    helpers.create_player(db_conn)
    helpers.create_enterprise(db_conn)
    return db_conn


def make_controller(conn: sqlite3.Connection, catalog, clock: Optional[ManualClock] = None, funds=None):
    from enterprise_repository import SqliteEnterpriseRepository
    from funds_service import SqliteFundsLedger
    from research_service import ResearchController
    from research_store import SqliteResearchStore

    return ResearchController(
        catalog,
        SqliteResearchStore(conn),
        funds or SqliteFundsLedger(conn),
        SqliteEnterpriseRepository(conn),
        clock=clock or ManualClock(),
    )


@pytest.fixture()
def controller(seeded_db, scenario_catalog, clock):
    ctl = make_controller(seeded_db, scenario_catalog, clock)
    ctl.track_enterprise("e1")
    return ctl


# ---------------------------------------------------------------------------
# FastAPI TestClient
# ---------------------------------------------------------------------------

@pytest.fixture()
def client(tmp_path, monkeypatch):
    """TestClient wired to the FastAPI app with a fresh on-disk DB per test."""
    from fastapi.testclient import TestClient

    monkeypatch.setenv("DB_PATH", str(tmp_path / "research.db"))
    from main import app

    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def api_player(client) -> str:
    """A player with a 100k balance in the TestClient's DB."""
    from db import connect_db
    from funds_service import create_player

    conn = connect_db()
    try:
        return create_player(conn, "Api Player", balance=100_000.0, player_id="api-player")
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Simulation clock helpers
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_sim_clock():
    """Ensure the simulation clock is reset between tests."""
    from sim_service import reset_simulation_clock
    reset_simulation_clock()
    yield
    reset_simulation_clock()
