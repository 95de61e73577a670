"""
Authoritative game clock.

All research timestamps (started_at, completes_at, completed_at) are game
seconds from this clock.  Game time runs at GAME_TIME_SCALE times real time,
can be paused, and never moves backwards: game_now_s() is clamped to the
highest value it has already handed out, so a wall-clock step back cannot
make a finished research look unfinished.  The anchors are saved to the
simulation_state table on shutdown and restored on startup so timestamps
written before a restart stay in the same clock domain.
"""

import os
import sqlite3
import threading
import time
from typing import Dict, Optional, Protocol

GAME_TIME_SCALE = float(os.environ.get("GAME_TIME_SCALE", "1"))
RESET_GAME_EPOCH_S = 946684800.0  # 2000-01-01T00:00:00Z
_REAL_TIME_ANCHOR_S = time.time()
_GAME_TIME_ANCHOR_S = RESET_GAME_EPOCH_S
_HIGH_WATER_S = RESET_GAME_EPOCH_S
_SIMULATION_PAUSED = False
_SIMULATION_LOCK = threading.Lock()


class GameClock(Protocol):
    def now(self) -> float:
        ...


def _current_game_s(now_real_s: float) -> float:
    if _SIMULATION_PAUSED:
        return _GAME_TIME_ANCHOR_S
    real_elapsed_s = now_real_s - _REAL_TIME_ANCHOR_S
    return _GAME_TIME_ANCHOR_S + (real_elapsed_s * GAME_TIME_SCALE)


def game_now_s() -> float:
    global _HIGH_WATER_S

    now_real_s = time.time()
    with _SIMULATION_LOCK:
        current = max(_current_game_s(now_real_s), _HIGH_WATER_S)
        _HIGH_WATER_S = current
        return current


def simulation_paused() -> bool:
    with _SIMULATION_LOCK:
        return _SIMULATION_PAUSED


def effective_time_scale() -> float:
    return 0.0 if simulation_paused() else GAME_TIME_SCALE


def set_simulation_paused(paused: bool) -> None:
    global _REAL_TIME_ANCHOR_S, _GAME_TIME_ANCHOR_S, _SIMULATION_PAUSED

    now_real_s = time.time()
    with _SIMULATION_LOCK:
        _GAME_TIME_ANCHOR_S = max(_current_game_s(now_real_s), _HIGH_WATER_S)
        _REAL_TIME_ANCHOR_S = now_real_s
        _SIMULATION_PAUSED = bool(paused)


def reset_simulation_clock() -> None:
    global _REAL_TIME_ANCHOR_S, _GAME_TIME_ANCHOR_S, _HIGH_WATER_S, _SIMULATION_PAUSED

    now_real_s = time.time()
    with _SIMULATION_LOCK:
        _REAL_TIME_ANCHOR_S = now_real_s
        _GAME_TIME_ANCHOR_S = RESET_GAME_EPOCH_S
        _HIGH_WATER_S = RESET_GAME_EPOCH_S
        _SIMULATION_PAUSED = False


def export_simulation_state() -> Dict[str, float]:
    now_real_s = time.time()
    with _SIMULATION_LOCK:
        return {
            "game_time_s": max(_current_game_s(now_real_s), _HIGH_WATER_S),
            "paused": 1.0 if _SIMULATION_PAUSED else 0.0,
        }


def import_simulation_state(game_time_s: float, paused: float = 0.0) -> None:
    """Resume the clock at game_time_s as of now.

    Real time spent while the process was down is not counted, and the clock
    never resumes below a value it already handed out.
    """
    global _REAL_TIME_ANCHOR_S, _GAME_TIME_ANCHOR_S, _HIGH_WATER_S, _SIMULATION_PAUSED

    now_real_s = time.time()
    with _SIMULATION_LOCK:
        resumed = max(float(game_time_s), _HIGH_WATER_S)
        _REAL_TIME_ANCHOR_S = now_real_s
        _GAME_TIME_ANCHOR_S = resumed
        _HIGH_WATER_S = resumed
        _SIMULATION_PAUSED = bool(paused)


def save_simulation_state(conn: sqlite3.Connection) -> None:
    state = export_simulation_state()
    now = time.time()
    for key, value in state.items():
        conn.execute(
            """INSERT INTO simulation_state (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (key, float(value), now),
        )
    conn.commit()


def _latest_stamped_game_s(conn: sqlite3.Connection) -> Optional[float]:
    row = conn.execute(
        "SELECT MAX(started_at) AS started, MAX(completed_at) AS completed FROM research_instances"
    ).fetchone()
    stamps = [float(v) for v in (row["started"], row["completed"]) if v is not None]
    return max(stamps) if stamps else None


def load_simulation_state(conn: sqlite3.Connection) -> bool:
    """Restore the clock from the DB. Returns False when there is nothing to restore.

    The saved anchor may predate a crash, so the clock resumes no earlier than
    the latest started_at / completed_at already written to research_instances.
    """
    rows = conn.execute("SELECT key, value FROM simulation_state").fetchall()
    state = {str(r["key"]): float(r["value"]) for r in rows}
    latest = _latest_stamped_game_s(conn)
    if "game_time_s" not in state and latest is None:
        return False
    candidates = [v for v in (state.get("game_time_s"), latest) if v is not None]
    import_simulation_state(max(candidates), state.get("paused", 0.0))
    return True


class SimulationClock:
    """GameClock backed by the module-level simulation clock."""

    def now(self) -> float:
        return game_now_s()
