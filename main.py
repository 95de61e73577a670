import logging
import os
import sqlite3
from typing import Any, Dict

from fastapi import Depends, FastAPI

from db import connect_db, get_db
from db_migrations import apply_migrations
from research_router import router as research_router
from sim_service import (
    effective_time_scale,
    game_now_s,
    load_simulation_state,
    save_simulation_state,
    set_simulation_paused,
    simulation_paused,
)
from tech_catalog import default_catalog

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("enterprise_research")

app = FastAPI(title="Enterprise Research")
app.include_router(research_router)


def _clock_payload() -> Dict[str, Any]:
    return {
        "game_time_s": game_now_s(),
        "time_scale": effective_time_scale(),
        "paused": simulation_paused(),
    }


@app.on_event("startup")
def _startup():
    conn = connect_db()
    try:
        apply_migrations(conn)
        if load_simulation_state(conn):
            logger.info("Resumed game clock at %.0f", game_now_s())
        save_simulation_state(conn)
    finally:
        conn.close()

    # CatalogError propagates and aborts startup.
    catalog = default_catalog()
    logger.info("Loaded technology trees: %s", ", ".join(catalog.categories()) or "none")


@app.on_event("shutdown")
def _shutdown():
    conn = connect_db()
    try:
        save_simulation_state(conn)
    finally:
        conn.close()


@app.get("/api/health")
def api_health() -> Dict[str, Any]:
    conn = connect_db()
    try:
        conn.execute("SELECT 1")
    finally:
        conn.close()
    return {"ok": True, "service": "enterprise-research", **_clock_payload()}


@app.post("/api/simulation/toggle_pause")
def api_toggle_pause(conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    """Pause or resume game time; research timers freeze while paused."""
    set_simulation_paused(not simulation_paused())
    save_simulation_state(conn)
    logger.info("Simulation %s", "paused" if simulation_paused() else "resumed")
    return {"ok": True, **_clock_payload()}
