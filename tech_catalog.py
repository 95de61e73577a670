import json
import math
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from constants import ENTERPRISE_CATEGORY_BY_ID, RESEARCH_BRANCH_IDS, SECONDS_PER_HOUR
from db import APP_DIR
from effects import Effect, parse_effect
from research_models import CatalogError


@dataclass(frozen=True)
class TechnologyNode:
    id: str
    name: str
    category: str
    tier: int
    prerequisite_ids: FrozenSet[str]
    cost: float
    duration_s: float
    effects: Tuple[Effect, ...] = ()
    branch: str = "special"
    description: str = ""
    unlocks_items: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TechnologyTree:
    category: str
    display_name: str
    nodes: Dict[str, TechnologyNode] = field(default_factory=dict)


class TechnologyCatalog:
    """Read-only lookup over every enterprise category's technology tree."""

    def __init__(self, trees: Iterable[TechnologyTree]):
        self._trees: Dict[str, TechnologyTree] = {t.category: t for t in trees}

    def categories(self) -> List[str]:
        return sorted(self._trees)

    def has_category(self, category: str) -> bool:
        return category in self._trees

    def tree(self, category: str) -> Optional[TechnologyTree]:
        return self._trees.get(category)

    def node(self, category: str, node_id: str) -> Optional[TechnologyNode]:
        tree = self._trees.get(category)
        return tree.nodes.get(node_id) if tree else None

    def nodes(self, category: str) -> List[TechnologyNode]:
        tree = self._trees.get(category)
        if not tree:
            return []
        return sorted(tree.nodes.values(), key=lambda n: (n.tier, n.id))

    def tier(self, category: str, tier: int) -> List[TechnologyNode]:
        return [n for n in self.nodes(category) if n.tier == tier]

    def tiers(self, category: str) -> List[int]:
        return sorted({n.tier for n in self.nodes(category)})


# ── Validation ────────────────────────────────────────────────────────────────


def _validate_non_empty_str(entry: Dict[str, Any], key: str, where: str, errors: List[str]) -> None:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        errors.append(f"{where}: '{key}' must be a non-empty string")


def _validate_non_negative(entry: Dict[str, Any], key: str, where: str, errors: List[str]) -> None:
    value = entry.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
        errors.append(f"{where}: '{key}' must be a non-negative number")


def _validate_tier(entry: Dict[str, Any], where: str, errors: List[str]) -> None:
    tier = entry.get("tier")
    if isinstance(tier, bool) or not isinstance(tier, int) or tier < 1:
        errors.append(f"{where}: 'tier' must be a positive integer")


def _validate_string_list(entry: Dict[str, Any], key: str, where: str, errors: List[str]) -> None:
    value = entry.get(key)
    if value is None:
        return
    if not isinstance(value, list) or any(not isinstance(v, str) or not v.strip() for v in value):
        errors.append(f"{where}: '{key}' must be a list of non-empty strings")


def _validate_graph(tree: TechnologyTree, where: str, errors: List[str]) -> None:
    for node in tree.nodes.values():
        for prereq_id in sorted(node.prerequisite_ids):
            prereq = tree.nodes.get(prereq_id)
            if prereq is None:
                errors.append(f"{where}: node '{node.id}' requires unknown node '{prereq_id}'")
            elif prereq.tier >= node.tier:
                errors.append(
                    f"{where}: node '{node.id}' (tier {node.tier}) requires '{prereq_id}' "
                    f"(tier {prereq.tier}); prerequisites must be in a lower tier"
                )
        if node.tier > 1 and not node.prerequisite_ids:
            errors.append(f"{where}: node '{node.id}' is tier {node.tier} but has no prerequisites")


# ── Loading ───────────────────────────────────────────────────────────────────


def _parse_node(entry: Dict[str, Any], category: str, where: str, errors: List[str]) -> Optional[TechnologyNode]:
    before = len(errors)
    _validate_non_empty_str(entry, "id", where, errors)
    _validate_non_empty_str(entry, "name", where, errors)
    _validate_tier(entry, where, errors)
    _validate_non_negative(entry, "cost", where, errors)
    _validate_non_negative(entry, "duration_hours", where, errors)
    _validate_string_list(entry, "prerequisites", where, errors)
    _validate_string_list(entry, "unlocks_items", where, errors)

    branch = str(entry.get("branch") or "special")
    if branch not in RESEARCH_BRANCH_IDS:
        errors.append(f"{where}: unknown branch '{branch}'")

    raw_effects = entry.get("effects") or {}
    effects: List[Effect] = []
    if not isinstance(raw_effects, dict):
        errors.append(f"{where}: 'effects' must be an object of name -> number")
    else:
        for name, value in raw_effects.items():
            try:
                effects.append(parse_effect(name, value))
            except ValueError as exc:
                errors.append(f"{where}: {exc}")

    if len(errors) > before:
        return None

    return TechnologyNode(
        id=entry["id"].strip(),
        name=entry["name"].strip(),
        category=category,
        tier=int(entry["tier"]),
        prerequisite_ids=frozenset(p.strip() for p in entry.get("prerequisites") or []),
        cost=float(entry["cost"]),
        duration_s=float(entry["duration_hours"]) * SECONDS_PER_HOUR,
        effects=tuple(effects),
        branch=branch,
        description=str(entry.get("description") or "").strip(),
        unlocks_items=tuple(entry.get("unlocks_items") or []),
    )


def _load_json_file(path: Path) -> Dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise CatalogError([f"Invalid JSON in {path}: {exc}"]) from exc
    if not isinstance(payload, dict):
        raise CatalogError([f"Top-level JSON in {path} must be an object"])
    return payload


def parse_tree(payload: Dict[str, Any], where: str, errors: List[str]) -> Optional[TechnologyTree]:
    category = str(payload.get("category") or "").strip()
    if not category:
        errors.append(f"{where}: 'category' must be a non-empty string")
        return None
    if category not in ENTERPRISE_CATEGORY_BY_ID:
        errors.append(f"{where}: unknown enterprise category '{category}'")

    raw_nodes = payload.get("nodes")
    if not isinstance(raw_nodes, list):
        errors.append(f"{where}: 'nodes' must be a list")
        return None

    nodes: Dict[str, TechnologyNode] = {}
    for idx, entry in enumerate(raw_nodes):
        node_where = f"{where}[{idx}]"
        if not isinstance(entry, dict):
            errors.append(f"{node_where}: node must be an object")
            continue
        node = _parse_node(entry, category, node_where, errors)
        if node is None:
            continue
        if node.id in nodes:
            errors.append(f"{node_where}: duplicate node id '{node.id}'")
            continue
        nodes[node.id] = node

    display_name = str(payload.get("display_name") or ENTERPRISE_CATEGORY_BY_ID.get(category, {}).get("name") or category)
    tree = TechnologyTree(category=category, display_name=display_name, nodes=nodes)
    _validate_graph(tree, where, errors)
    return tree


def load_catalog(root: Optional[Path] = None) -> TechnologyCatalog:
    """Load and validate every tree file under root.

    Raises CatalogError listing every problem found; a partially valid catalog
    is never returned.
    """
    trees_dir = root or tech_trees_dir()
    if not trees_dir.is_dir():
        raise CatalogError([f"Technology tree directory not found: {trees_dir}"])

    errors: List[str] = []
    trees: List[TechnologyTree] = []
    seen_categories: Dict[str, Path] = {}
    for path in sorted(trees_dir.glob("*.json")):
        payload = _load_json_file(path)
        tree = parse_tree(payload, path.name, errors)
        if tree is None:
            continue
        if tree.category in seen_categories:
            errors.append(f"{path.name}: category '{tree.category}' already defined in {seen_categories[tree.category].name}")
            continue
        seen_categories[tree.category] = path
        trees.append(tree)

    if errors:
        raise CatalogError(errors)
    return TechnologyCatalog(trees)


def tech_trees_dir() -> Path:
    return Path(os.environ.get("TECH_TREES_DIR", str(APP_DIR / "tech_trees")))


@lru_cache(maxsize=1)
def default_catalog() -> TechnologyCatalog:
    return load_catalog()
