"""
API tests — drive the research routes through the FastAPI TestClient.

The goal is to catch:
  - import errors / missing dependencies
  - broken SQL (syntax errors, missing columns)
  - wrong status codes or error payloads for expected research outcomes
"""

import pytest

from advisory_service import AdvisoryRecommendation, AdvisoryReply
from research_router import get_advisory_client
from sim_service import game_now_s, import_simulation_state


def _create(client, player_id, category="marijuana_farm", name="Green Acres"):
    r = client.post(
        "/api/enterprises",
        json={"player_id": player_id, "name": name, "category": category, "production_rate": 10.0, "heat_level": 30.0},
    )
    assert r.status_code == 200, r.text
    return r.json()["enterprise"]["id"]


def _advance_game_time(seconds: float) -> None:
    import_simulation_state(game_now_s() + seconds)


# ── Health & catalog (no state) ─────────────────────────────────────────────

class TestHealthAndCatalog:
    def test_health(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True

    def test_toggle_pause(self, client):
        r = client.post("/api/simulation/toggle_pause")
        assert r.status_code == 200
        body = r.json()
        assert body["paused"] is True
        assert body["time_scale"] == 0.0

        health = client.get("/api/health").json()
        assert health["paused"] is True
        assert health["game_time_s"] == body["game_time_s"]

        r = client.post("/api/simulation/toggle_pause")
        assert r.json()["paused"] is False

    def test_categories(self, client):
        r = client.get("/api/research/categories")
        assert r.status_code == 200
        ids = [c["id"] for c in r.json()["categories"]]
        assert "marijuana_farm" in ids
        assert "chop_shop" in ids

    def test_tree_for_category(self, client):
        r = client.get("/api/research/trees/marijuana_farm")
        assert r.status_code == 200
        tree = r.json()["tree"]
        states = {n["id"]: n["state"] for n in tree["nodes"]}
        assert states["hydro_1"] == "available"
        assert states["special_1"] == "locked"

    def test_tree_unknown_category(self, client):
        r = client.get("/api/research/trees/lemonade_stand")
        assert r.status_code == 404
        assert r.json()["detail"]["error"] == "unknown_category"


# ── Enterprises ─────────────────────────────────────────────────────────────

class TestEnterprises:
    def test_create_tracks_instances(self, client, api_player):
        r = client.post(
            "/api/enterprises",
            json={"player_id": api_player, "name": "Green Acres", "category": "marijuana_farm"},
        )
        assert r.status_code == 200
        assert r.json()["tracked"] == 8

    def test_create_unknown_category(self, client, api_player):
        r = client.post("/api/enterprises", json={"player_id": api_player, "name": "x", "category": "nope"})
        assert r.status_code == 400

    def test_create_unknown_player(self, client):
        r = client.post("/api/enterprises", json={"player_id": "ghost", "name": "x", "category": "chop_shop"})
        assert r.status_code == 404
        assert r.json()["detail"]["error"] == "unknown_player"

    def test_delete_enterprise(self, client, api_player):
        eid = _create(client, api_player)
        assert client.delete(f"/api/enterprises/{eid}").status_code == 200
        assert client.get(f"/api/enterprises/{eid}/research").status_code == 404
        assert client.delete(f"/api/enterprises/{eid}").status_code == 404


# ── Research flow ───────────────────────────────────────────────────────────

class TestResearchFlow:
    def test_start_complete_and_unlock(self, client, api_player):
        eid = _create(client, api_player)

        r = client.post(f"/api/enterprises/{eid}/research/start", json={"node_id": "hydro_1"})
        assert r.status_code == 200, r.text
        started = r.json()
        assert started["state"] == "researching"
        assert started["completes_at"] - started["started_at"] == pytest.approx(2 * 3600)

        r = client.post(f"/api/enterprises/{eid}/research/complete", json={"node_id": "hydro_1"})
        assert r.status_code == 200
        assert r.json()["status"] == "pending"
        assert r.json()["completes_at"] == pytest.approx(started["completes_at"])

        _advance_game_time(2 * 3600 + 1)
        r = client.post(f"/api/enterprises/{eid}/research/complete", json={"node_id": "hydro_1"})
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "completed"
        assert body["newly_available"] == ["efficiency_1", "hydro_2"]
        assert body["attributes"]["production_rate"] == pytest.approx(12.0)

        r = client.post(f"/api/enterprises/{eid}/research/complete", json={"node_id": "hydro_1"})
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "already_completed"

    def test_research_view_settles(self, client, api_player):
        eid = _create(client, api_player)
        client.post(f"/api/enterprises/{eid}/research/start", json={"node_id": "security_1"})
        _advance_game_time(3600)

        r = client.get(f"/api/enterprises/{eid}/research")
        assert r.status_code == 200
        research = r.json()["research"]
        states = {n["id"]: n["state"] for n in research["nodes"]}
        assert states["security_1"] == "completed"
        assert research["enterprise"]["attributes"]["security_level"] == 1.0
        assert research["balance"] == 100_000.0 - 8000.0

    def test_second_start_conflicts(self, client, api_player):
        eid = _create(client, api_player)
        assert client.post(f"/api/enterprises/{eid}/research/start", json={"node_id": "hydro_1"}).status_code == 200
        r = client.post(f"/api/enterprises/{eid}/research/start", json={"node_id": "strain_1"})
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "already_researching"

    def test_locked_node_conflicts(self, client, api_player):
        eid = _create(client, api_player)
        r = client.post(f"/api/enterprises/{eid}/research/start", json={"node_id": "special_1"})
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "not_eligible"

    def test_unknown_node(self, client, api_player):
        eid = _create(client, api_player)
        r = client.post(f"/api/enterprises/{eid}/research/start", json={"node_id": "warp_drive"})
        assert r.status_code == 404
        assert r.json()["detail"]["error"] == "unknown_node"

    def test_insufficient_funds_is_402(self, client):
        from db import connect_db
        from funds_service import create_player

        conn = connect_db()
        try:
            poor = create_player(conn, "Broke", balance=500.0)
        finally:
            conn.close()
        eid = _create(client, poor)
        r = client.post(f"/api/enterprises/{eid}/research/start", json={"node_id": "hydro_1"})
        assert r.status_code == 402
        assert r.json()["detail"]["error"] == "insufficient_funds"

    def test_unknown_enterprise(self, client):
        r = client.post("/api/enterprises/ghost/research/start", json={"node_id": "hydro_1"})
        assert r.status_code == 404


# ── Advice ──────────────────────────────────────────────────────────────────

class _StubAdvisor:
    def advise(self, prompt):
        return AdvisoryReply(
            recommendations=[
                AdvisoryRecommendation(target_name="Basic Security", priority="2", rationale="heat"),
                AdvisoryRecommendation(target_name="Hydroponics Basic", priority="1", rationale="output"),
                AdvisoryRecommendation(target_name="Time Machine", priority="3", rationale="?"),
            ],
            summary="Produce, then protect.",
        )


class TestAdvice:
    def test_advice_ranked_and_matched(self, client, api_player):
        from main import app

        app.dependency_overrides[get_advisory_client] = lambda: _StubAdvisor()
        eid = _create(client, api_player)
        r = client.post(
            f"/api/enterprises/{eid}/research/advice",
            json={"world_events": ["Police crackdown"], "market_trends": []},
        )
        assert r.status_code == 200
        body = r.json()
        assert body["available"] is True
        assert [s["node_id"] for s in body["suggestions"]] == ["hydro_1", "security_1"]
        assert body["unmatched"] == ["Time Machine"]

    def test_advice_unknown_enterprise(self, client):
        from main import app

        app.dependency_overrides[get_advisory_client] = lambda: _StubAdvisor()
        r = client.post("/api/enterprises/ghost/research/advice", json={})
        assert r.status_code == 404
