"""
Progression graph resolver.

Given a tree's nodes and an enterprise's per-node states, decides which locked
nodes have every prerequisite completed.  Also renders the tree (nodes, edges,
tiers) for clients.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from effects import describe_effect, effects_to_dict
from research_models import ResearchInstance, ResearchState
from research_store import ResearchInstanceStore
from tech_catalog import TechnologyCatalog, TechnologyNode


def eligible(nodes: Iterable[TechnologyNode], states: Mapping[str, ResearchState]) -> Set[str]:
    """Locked nodes whose full prerequisite set is completed.

    Nodes missing from states are treated as locked.
    """
    out: Set[str] = set()
    for node in nodes:
        if states.get(node.id, ResearchState.LOCKED) != ResearchState.LOCKED:
            continue
        if all(states.get(p) == ResearchState.COMPLETED for p in node.prerequisite_ids):
            out.add(node.id)
    return out


def initial_states(nodes: Iterable[TechnologyNode]) -> Dict[str, ResearchState]:
    """States for a freshly tracked enterprise: roots available, the rest locked."""
    node_list = list(nodes)
    states = {n.id: ResearchState.LOCKED for n in node_list}
    for node_id in eligible(node_list, states):
        states[node_id] = ResearchState.AVAILABLE
    return states


def states_by_node(instances: Iterable[ResearchInstance]) -> Dict[str, ResearchState]:
    return {i.node_id: i.state for i in instances}


def unmet_prerequisites(node: TechnologyNode, states: Mapping[str, ResearchState]) -> List[str]:
    return sorted(p for p in node.prerequisite_ids if states.get(p) != ResearchState.COMPLETED)


def build_tree_payload(
    nodes: List[TechnologyNode],
    instances: Iterable[ResearchInstance],
    now: float,
    *,
    category: str,
    display_name: Optional[str] = None,
) -> Dict[str, Any]:
    by_node = {i.node_id: i for i in instances}
    states = {node_id: inst.state for node_id, inst in by_node.items()}

    node_payloads: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []
    tiers: Dict[int, List[str]] = {}
    active: Optional[str] = None

    for node in nodes:
        inst = by_node.get(node.id)
        state = inst.state if inst else ResearchState.LOCKED
        if state == ResearchState.RESEARCHING:
            active = node.id
        node_payloads.append(
            {
                "id": node.id,
                "name": node.name,
                "tier": node.tier,
                "branch": node.branch,
                "description": node.description,
                "cost": node.cost,
                "duration_s": node.duration_s,
                "prerequisites": sorted(node.prerequisite_ids),
                "missing_prerequisites": unmet_prerequisites(node, states),
                "effects": effects_to_dict(node.effects),
                "effects_text": [describe_effect(e) for e in node.effects],
                "unlocks_items": list(node.unlocks_items),
                "state": state.value,
                "started_at": inst.started_at if inst else None,
                "completes_at": inst.completes_at if inst else None,
                "completed_at": inst.completed_at if inst else None,
                "remaining_s": inst.remaining_s(now) if inst else 0.0,
            }
        )
        tiers.setdefault(node.tier, []).append(node.id)
        for prereq_id in sorted(node.prerequisite_ids):
            edges.append({"from": prereq_id, "to": node.id})

    counts = {s.value: 0 for s in ResearchState}
    for state in states.values():
        counts[state.value] += 1

    return {
        "category": category,
        "display_name": display_name or category,
        "nodes": node_payloads,
        "edges": edges,
        "tiers": [{"tier": t, "nodes": ids} for t, ids in sorted(tiers.items())],
        "active_node_id": active,
        "counts": counts,
        "now": now,
    }


def eligible_for_enterprise(
    catalog: TechnologyCatalog,
    store: ResearchInstanceStore,
    enterprise_id: str,
    category: str,
) -> Set[str]:
    """eligible() over the enterprise's tracked instances."""
    states = states_by_node(store.list_for_enterprise(enterprise_id))
    tracked = [n for n in catalog.nodes(category) if n.id in states]
    return eligible(tracked, states)
