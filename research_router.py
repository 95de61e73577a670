"""
Research router — API routes for technology trees and enterprise research.

Routes:
  /api/research/categories                     — enterprise categories with a tree
  /api/research/trees/{category}               — static tree for a category
  /api/enterprises                             — create (and track) an enterprise
  /api/enterprises/{id}                        — delete an enterprise
  /api/enterprises/{id}/research               — tree with per-node state (settled)
  /api/enterprises/{id}/research/start         — start researching a node
  /api/enterprises/{id}/research/complete      — complete a node whose timer ran out
  /api/enterprises/{id}/research/advice        — ranked suggestions from the advisor
"""

import sqlite3
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from advisory_service import AdvisoryClient, ResearchAdvisor, WorldContext
from constants import ENTERPRISE_CATEGORY_BY_ID
from db import get_db
from enterprise_repository import SqliteEnterpriseRepository, create_enterprise, delete_enterprise
from funds_service import SqliteFundsLedger, player_exists
from progression_graph import build_tree_payload, initial_states
from research_models import EnterpriseAttributes, ResearchError, ResearchInstance
from research_service import ResearchController, forget_enterprise_lock
from research_store import SqliteResearchStore
from sim_service import game_now_s
from tech_catalog import TechnologyCatalog, default_catalog

router = APIRouter()


_ERROR_STATUS: Dict[ResearchError, int] = {
    ResearchError.UNKNOWN_ENTERPRISE: 404,
    ResearchError.UNKNOWN_NODE: 404,
    ResearchError.INSUFFICIENT_FUNDS: 402,
}


def _raise_for(error: ResearchError, message: str) -> None:
    raise HTTPException(
        status_code=_ERROR_STATUS.get(error, 409),
        detail={"error": error.value, "message": message},
    )


def get_catalog() -> TechnologyCatalog:
    return default_catalog()


def get_advisory_client() -> Optional[AdvisoryClient]:
    """Override in tests; None means the LangChain-backed client."""
    return None


def _controller(conn: sqlite3.Connection, catalog: TechnologyCatalog) -> ResearchController:
    return ResearchController(
        catalog,
        SqliteResearchStore(conn),
        SqliteFundsLedger(conn),
        SqliteEnterpriseRepository(conn),
    )


# ── Request models ─────────────────────────────────────────────────────────────

class CreateEnterpriseRequest(BaseModel):
    player_id: str
    name: str
    category: str
    production_rate: float = 0.0
    storage_capacity: float = 0.0
    security_level: float = 0.0
    heat_level: float = 0.0

class NodeRequest(BaseModel):
    node_id: str

class AdviceRequest(BaseModel):
    world_events: list[str] = Field(default_factory=list)
    market_trends: list[str] = Field(default_factory=list)


# ── Catalog ────────────────────────────────────────────────────────────────────

@router.get("/api/research/categories")
def api_research_categories(catalog: TechnologyCatalog = Depends(get_catalog)) -> Dict[str, Any]:
    categories = []
    for category in catalog.categories():
        tree = catalog.tree(category)
        meta = ENTERPRISE_CATEGORY_BY_ID.get(category, {})
        categories.append(
            {
                "id": category,
                "name": tree.display_name if tree else category,
                "description": meta.get("description", ""),
                "node_count": len(tree.nodes) if tree else 0,
            }
        )
    return {"categories": categories}


@router.get("/api/research/trees/{category}")
def api_research_tree(category: str, catalog: TechnologyCatalog = Depends(get_catalog)) -> Dict[str, Any]:
    """Tree layout as a freshly tracked enterprise would see it."""
    tree = catalog.tree(category)
    if tree is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "unknown_category", "message": f"No technology tree for category '{category}'"},
        )
    nodes = catalog.nodes(category)
    instances = [
        ResearchInstance(enterprise_id="", node_id=node_id, state=state)
        for node_id, state in initial_states(nodes).items()
    ]
    payload = build_tree_payload(nodes, instances, game_now_s(), category=category, display_name=tree.display_name)
    return {"tree": payload}


# ── Enterprises ────────────────────────────────────────────────────────────────

@router.post("/api/enterprises")
def api_create_enterprise(
    body: CreateEnterpriseRequest,
    conn: sqlite3.Connection = Depends(get_db),
    catalog: TechnologyCatalog = Depends(get_catalog),
) -> Dict[str, Any]:
    """Create an enterprise and track research instances for its category."""
    category = body.category.strip()
    if category not in ENTERPRISE_CATEGORY_BY_ID:
        raise HTTPException(
            status_code=400,
            detail={"error": "unknown_category", "message": f"Unknown enterprise category '{category}'"},
        )
    if not player_exists(conn, body.player_id):
        raise HTTPException(
            status_code=404,
            detail={"error": "unknown_player", "message": f"Player {body.player_id} not found"},
        )
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail={"error": "invalid_name", "message": "Name is required"})

    attributes = EnterpriseAttributes(
        production_rate=body.production_rate,
        storage_capacity=body.storage_capacity,
        security_level=body.security_level,
        heat_level=body.heat_level,
    )
    record = create_enterprise(conn, body.player_id, name, category, attributes)
    conn.commit()

    instances = _controller(conn, catalog).track_enterprise(record.id)
    return {
        "ok": True,
        "enterprise": {
            "id": record.id,
            "player_id": record.player_id,
            "name": record.name,
            "category": record.category,
            "attributes": asdict(record.attributes),
        },
        "tracked": len(instances),
    }


@router.delete("/api/enterprises/{enterprise_id}")
def api_delete_enterprise(enterprise_id: str, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    if not delete_enterprise(conn, enterprise_id):
        _raise_for(ResearchError.UNKNOWN_ENTERPRISE, f"Enterprise {enterprise_id} not found")
    forget_enterprise_lock(enterprise_id)
    return {"ok": True, "deleted": enterprise_id}


# ── Research ───────────────────────────────────────────────────────────────────

@router.get("/api/enterprises/{enterprise_id}/research")
def api_enterprise_research(
    enterprise_id: str,
    conn: sqlite3.Connection = Depends(get_db),
    catalog: TechnologyCatalog = Depends(get_catalog),
) -> Dict[str, Any]:
    """Enterprise tree with due research settled first."""
    payload = _controller(conn, catalog).tree(enterprise_id)
    if payload is None:
        _raise_for(ResearchError.UNKNOWN_ENTERPRISE, f"Enterprise {enterprise_id} not found")
    return {"research": payload}


@router.post("/api/enterprises/{enterprise_id}/research/start")
def api_start_research(
    enterprise_id: str,
    body: NodeRequest,
    conn: sqlite3.Connection = Depends(get_db),
    catalog: TechnologyCatalog = Depends(get_catalog),
) -> Dict[str, Any]:
    result = _controller(conn, catalog).start(enterprise_id, body.node_id)
    if not result.ok:
        _raise_for(result.error, result.message)
    instance = result.instance
    return {
        "ok": True,
        "node_id": instance.node_id,
        "state": instance.state.value,
        "started_at": instance.started_at,
        "completes_at": instance.completes_at,
        "cost": result.cost,
    }


@router.post("/api/enterprises/{enterprise_id}/research/complete")
def api_complete_research(
    enterprise_id: str,
    body: NodeRequest,
    conn: sqlite3.Connection = Depends(get_db),
    catalog: TechnologyCatalog = Depends(get_catalog),
) -> Dict[str, Any]:
    result = _controller(conn, catalog).try_complete(enterprise_id, body.node_id)
    if result.pending:
        return {
            "ok": False,
            "status": "pending",
            "node_id": body.node_id,
            "completes_at": result.completes_at,
            "message": result.message,
        }
    if not result.ok:
        _raise_for(result.error, result.message)
    outcome = result.outcome
    return {
        "ok": True,
        "status": "completed",
        "completed": outcome.completed,
        "newly_available": outcome.newly_available,
        "completed_at": outcome.completed_at,
        "attributes": asdict(outcome.attributes),
        "unlocked_items": outcome.unlocked_items,
    }


@router.post("/api/enterprises/{enterprise_id}/research/advice")
def api_research_advice(
    enterprise_id: str,
    body: AdviceRequest,
    conn: sqlite3.Connection = Depends(get_db),
    catalog: TechnologyCatalog = Depends(get_catalog),
    client: Optional[AdvisoryClient] = Depends(get_advisory_client),
) -> Dict[str, Any]:
    advisor = ResearchAdvisor(
        catalog,
        SqliteResearchStore(conn),
        SqliteEnterpriseRepository(conn),
        SqliteFundsLedger(conn),
        client=client,
    )
    world = WorldContext(world_events=tuple(body.world_events), market_trends=tuple(body.market_trends))
    result = advisor.recommend(enterprise_id, world)
    if result is None:
        _raise_for(ResearchError.UNKNOWN_ENTERPRISE, f"Enterprise {enterprise_id} not found")
    return {
        "available": result.available,
        "summary": result.summary,
        "suggestions": [asdict(s) for s in result.suggestions],
        "unmatched": result.unmatched,
    }
