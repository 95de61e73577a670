"""
Funds collaborator — player balances that research costs are debited from.

SqliteFundsLedger never commits: it writes on the same connection as the
research store so a debit and the matching state transition commit or roll
back together.
"""

import logging
import sqlite3
import time
import uuid
from typing import Optional, Protocol

from research_models import StorageError

logger = logging.getLogger(__name__)


class FundsLedger(Protocol):
    def balance(self, player_id: str) -> float: ...

    def debit(self, player_id: str, amount: float) -> bool: ...


class SqliteFundsLedger:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def balance(self, player_id: str) -> float:
        try:
            row = self._conn.execute("SELECT balance FROM players WHERE id = ?", (player_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return float(row["balance"]) if row else 0.0

    def debit(self, player_id: str, amount: float) -> bool:
        """Subtract amount if the player can cover it. Returns False otherwise."""
        if amount < 0:
            raise ValueError("debit amount must be non-negative")
        try:
            cur = self._conn.execute(
                "UPDATE players SET balance = balance - ? WHERE id = ? AND balance >= ?",
                (amount, player_id, amount),
            )
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        if cur.rowcount != 1:
            logger.info("Debit of %.2f refused for player %s", amount, player_id)
            return False
        return True


def create_player(
    conn: sqlite3.Connection,
    name: str,
    balance: float = 0.0,
    player_id: Optional[str] = None,
) -> str:
    """Insert a player row and commit. Returns player_id."""
    pid = player_id or str(uuid.uuid4())
    conn.execute(
        "INSERT INTO players (id, name, balance, created_at) VALUES (?, ?, ?, ?)",
        (pid, name, float(balance), time.time()),
    )
    conn.commit()
    return pid


def player_exists(conn: sqlite3.Connection, player_id: str) -> bool:
    row = conn.execute("SELECT 1 FROM players WHERE id = ?", (player_id,)).fetchone()
    return bool(row)
