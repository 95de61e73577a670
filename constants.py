"""
Canonical shared constants for the enterprise research engine.

tech_catalog.py, effects.py and the routers all read from here; this module
is the single source of truth for enterprise categories and effect spellings.
"""

from typing import Any, Dict, List, Tuple

# ---------------------------------------------------------------------------
# Enterprise categories
# ---------------------------------------------------------------------------

ENTERPRISE_CATEGORIES: List[Dict[str, Any]] = [
    {
        "id": "marijuana_farm",
        "name": "Marijuana Farm",
        "description": "Grow operation producing cannabis products.",
    },
    {
        "id": "chop_shop",
        "name": "Chop Shop",
        "description": "Strips stolen vehicles for parts and resale.",
    },
    {
        "id": "money_laundering",
        "name": "Money Laundering",
        "description": "Washes dirty cash through fronts and accounts.",
    },
    {
        "id": "material_production",
        "name": "Material Production",
        "description": "Fabricates raw and finished materials for other rackets.",
    },
    {
        "id": "weapons_cache",
        "name": "Weapons Cache",
        "description": "Stores and moves illicit arms.",
    },
]

ENTERPRISE_CATEGORY_BY_ID: Dict[str, Dict[str, Any]] = {c["id"]: c for c in ENTERPRISE_CATEGORIES}

# ---------------------------------------------------------------------------
# Research branches (display grouping within a tree)
# ---------------------------------------------------------------------------

RESEARCH_BRANCHES: List[Dict[str, str]] = [
    {"id": "production", "label": "Production"},
    {"id": "efficiency", "label": "Efficiency"},
    {"id": "security", "label": "Security"},
    {"id": "automation", "label": "Automation"},
    {"id": "expansion", "label": "Expansion"},
    {"id": "special", "label": "Special"},
]

RESEARCH_BRANCH_IDS = {b["id"] for b in RESEARCH_BRANCHES}

# ---------------------------------------------------------------------------
# Effect name aliases
# ---------------------------------------------------------------------------

# Legacy effect spellings from older tree definitions -> (canonical name, sign).
# Only names whose old arithmetic matches the canonical rule are listed; the
# flat storage_increase and the scaled security_bonus are rejected at load.
# heat_reduction is stored as a positive amount but lowers heat.
EFFECT_ALIASES: Dict[str, Tuple[str, float]] = {
    "production_boost": ("production_rate", 1.0),
    "production_rate_increase": ("production_rate", 1.0),
    "efficiency_bonus": ("storage_capacity", 1.0),
    "security_increase": ("security_level", 1.0),
    "heat_reduction": ("heat_level", -1.0),
}

# ---------------------------------------------------------------------------
# Attribute bounds
# ---------------------------------------------------------------------------

HEAT_LEVEL_MIN = 0.0
HEAT_LEVEL_MAX = 100.0
SECURITY_LEVEL_MIN = 0.0

SECONDS_PER_HOUR = 3600.0
