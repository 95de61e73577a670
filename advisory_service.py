"""
Research advisory — asks an LLM which available research an enterprise should
pursue next and maps the answer back onto catalog node ids.

Advice is best-effort and read-only: nothing here writes to the research
store, and an advisor failure yields an empty, unavailable result rather than
an error.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, Field

from effects import describe_effect
from enterprise_repository import EnterpriseRecord, EnterpriseRepository
from funds_service import FundsLedger
from llm import get_chat_model, normalize_structured_output
from research_models import ResearchState
from research_store import ResearchInstanceStore
from tech_catalog import TechnologyCatalog, TechnologyNode

logger = logging.getLogger(__name__)


# ── Reply contract ────────────────────────────────────────────────────────────


class AdvisoryRecommendation(BaseModel):
    target_name: str = Field(description="Name or id of the recommended research")
    priority: str = Field(default="medium", description="1 = do first; or high / medium / low")
    rationale: str = Field(default="", description="Why this research, in one or two sentences")


class AdvisoryReply(BaseModel):
    recommendations: List[AdvisoryRecommendation] = Field(default_factory=list)
    summary: str = ""


@dataclass(frozen=True)
class WorldContext:
    world_events: Sequence[str] = ()
    market_trends: Sequence[str] = ()


@dataclass(frozen=True)
class Suggestion:
    node_id: str
    name: str
    priority: int
    rationale: str


@dataclass(frozen=True)
class AdvisoryResult:
    suggestions: List[Suggestion]
    summary: str
    available: bool = True
    unmatched: List[str] = field(default_factory=list)


class AdvisoryClient(Protocol):
    def advise(self, prompt: str) -> AdvisoryReply: ...


SYSTEM_PROMPT = (
    "You are the strategic advisor in a criminal enterprise management game. "
    "Recommend research using only the exact names from the available list."
)


class LangChainAdvisoryClient:
    """AdvisoryClient backed by a structured-output chat model."""

    def __init__(self, chat_model=None):
        self._chat_model = chat_model

    def advise(self, prompt: str) -> AdvisoryReply:
        model = self._chat_model or get_chat_model()
        runnable = model.with_structured_output(AdvisoryReply)
        raw = runnable.invoke([("system", SYSTEM_PROMPT), ("human", prompt)])
        return normalize_structured_output(raw, AdvisoryReply)


def advisor_enabled() -> bool:
    return os.environ.get("ADVISOR_ENABLED", "1").strip().lower() not in ("0", "false", "no", "off")


# ── Prompt ────────────────────────────────────────────────────────────────────


def _node_line(node: TechnologyNode) -> str:
    effects = ", ".join(describe_effect(e) for e in node.effects) or "no stat change"
    hours = node.duration_s / 3600.0
    return f"- {node.name} [{node.id}] ({node.branch}, tier {node.tier}, ${node.cost:,.0f}, {hours:g}h): {effects}"


def build_advisory_prompt(
    enterprise: EnterpriseRecord,
    balance: float,
    completed: Sequence[TechnologyNode],
    available: Sequence[TechnologyNode],
    world: Optional[WorldContext] = None,
    top_n: int = 3,
) -> str:
    attrs = enterprise.attributes
    lines = [
        f"Enterprise: {enterprise.name} ({enterprise.category})",
        "",
        "Current status:",
        f"- Production rate: {attrs.production_rate:g}/hr",
        f"- Storage capacity: {attrs.storage_capacity:g}",
        f"- Security level: {attrs.security_level:g}",
        f"- Heat level: {attrs.heat_level:g}/100",
        f"- Revenue multiplier: {attrs.revenue_multiplier:g}x",
        f"- Passive income: ${attrs.passive_income:,.0f}",
        f"- Player balance: ${balance:,.0f}",
        "",
        "Completed research: " + (", ".join(n.name for n in completed) or "None"),
        "",
        "Available research:",
    ]
    lines.extend(_node_line(n) for n in available)
    if not available:
        lines.append("- None")

    if world is not None:
        lines.append("")
        lines.append("Active world events: " + (", ".join(world.world_events) or "None"))
        lines.append("Market trends: " + (", ".join(world.market_trends) or "None"))

    lines.extend(
        [
            "",
            f"Recommend the top {top_n} research priorities from the available list, ranked 1 (first) "
            f"to {top_n}. Weigh ROI against the balance, synergies with completed research, heat "
            "(high heat favors security), and any world events or market trends. "
            "Finish with a one-paragraph overall strategy as the summary.",
        ]
    )
    return "\n".join(lines)


# ── Reply mapping ─────────────────────────────────────────────────────────────

_PRIORITY_WORDS: Tuple[Tuple[str, int], ...] = (
    ("critical", 1),
    ("high", 1),
    ("medium", 2),
    ("normal", 2),
    ("low", 3),
)
_UNRANKED = 99


def priority_rank(raw: str) -> int:
    text = str(raw or "").strip().lower()
    digits = re.search(r"\d+", text)
    if digits:
        return max(1, int(digits.group(0)))
    for word, rank in _PRIORITY_WORDS:
        if word in text:
            return rank
    return _UNRANKED


def _normalize_name(raw: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", str(raw or "").lower()).strip()


def match_recommendations(
    reply: AdvisoryReply,
    nodes: Sequence[TechnologyNode],
) -> Tuple[List[Suggestion], List[str]]:
    """Map reply names onto catalog nodes. Returns (suggestions, unmatched names)."""
    by_id: Dict[str, TechnologyNode] = {n.id: n for n in nodes}
    by_name: Dict[str, TechnologyNode] = {}
    for node in nodes:
        by_name.setdefault(_normalize_name(node.name), node)
        by_name.setdefault(_normalize_name(node.id), node)

    suggestions: List[Suggestion] = []
    unmatched: List[str] = []
    seen: set[str] = set()
    for rec in reply.recommendations:
        node = by_id.get(rec.target_name.strip()) or by_name.get(_normalize_name(rec.target_name))
        if node is None:
            logger.warning("Advisor recommended unknown research '%s'; dropping it", rec.target_name)
            unmatched.append(rec.target_name)
            continue
        if node.id in seen:
            continue
        seen.add(node.id)
        suggestions.append(
            Suggestion(node_id=node.id, name=node.name, priority=priority_rank(rec.priority), rationale=rec.rationale.strip())
        )

    suggestions.sort(key=lambda s: s.priority)
    return suggestions, unmatched


# ── Advisor ───────────────────────────────────────────────────────────────────


class ResearchAdvisor:
    def __init__(
        self,
        catalog: TechnologyCatalog,
        store: ResearchInstanceStore,
        enterprises: EnterpriseRepository,
        funds: FundsLedger,
        client: Optional[AdvisoryClient] = None,
    ):
        self._catalog = catalog
        self._store = store
        self._enterprises = enterprises
        self._funds = funds
        self._client = client

    def build_prompt(self, enterprise: EnterpriseRecord, world: Optional[WorldContext] = None) -> str:
        nodes = {n.id: n for n in self._catalog.nodes(enterprise.category)}
        instances = self._store.list_for_enterprise(enterprise.id)
        completed = [nodes[i.node_id] for i in instances if i.state == ResearchState.COMPLETED and i.node_id in nodes]
        available = [nodes[i.node_id] for i in instances if i.state == ResearchState.AVAILABLE and i.node_id in nodes]
        balance = self._funds.balance(enterprise.player_id)
        return build_advisory_prompt(enterprise, balance, completed, available, world)

    def recommend(self, enterprise_id: str, world: Optional[WorldContext] = None) -> Optional[AdvisoryResult]:
        """Ranked research suggestions, or None when the enterprise does not exist."""
        enterprise = self._enterprises.get(enterprise_id)
        if enterprise is None:
            return None
        if not advisor_enabled():
            return AdvisoryResult(suggestions=[], summary="Research advisor is disabled", available=False)

        prompt = self.build_prompt(enterprise, world)
        client = self._client or LangChainAdvisoryClient()
        try:
            reply = client.advise(prompt)
        except Exception:
            logger.exception("Research advisor failed for enterprise %s", enterprise_id)
            return AdvisoryResult(suggestions=[], summary="Research advisor is unavailable", available=False)

        suggestions, unmatched = match_recommendations(reply, self._catalog.nodes(enterprise.category))
        return AdvisoryResult(suggestions=suggestions, summary=reply.summary.strip(), unmatched=unmatched)
