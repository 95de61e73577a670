"""
Research service — the enterprise research state machine.

Lifecycle of one node instance:
  locked -> available -> researching -> completed

Completion is settle-on-access: start() stamps completes_at from the game
clock, and the node only completes when try_complete() or settle() runs at or
after that time.  Nothing is scheduled, so a restart between start and
completion loses nothing, and a second completion call is a no-op that
reports already_completed.

All mutations for one enterprise run under that enterprise's lock; different
enterprises proceed in parallel.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Optional, Set

from effects import apply_effects
from enterprise_repository import EnterpriseRecord, EnterpriseRepository
from funds_service import FundsLedger
from progression_graph import (
    build_tree_payload,
    eligible,
    eligible_for_enterprise,
    states_by_node,
    unmet_prerequisites,
)
from research_models import (
    CompleteResult,
    CompletionOutcome,
    InvalidTransition,
    ResearchError,
    ResearchInstance,
    ResearchState,
    StartResult,
)
from research_store import ResearchInstanceStore
from sim_service import GameClock, SimulationClock
from tech_catalog import TechnologyCatalog, TechnologyNode

logger = logging.getLogger(__name__)


# ── Per-enterprise serialization ──────────────────────────────────────────────

_LOCKS_GUARD = threading.Lock()
_ENTERPRISE_LOCKS: Dict[str, threading.RLock] = {}


@contextmanager
def enterprise_lock(enterprise_id: str) -> Iterator[None]:
    with _LOCKS_GUARD:
        lock = _ENTERPRISE_LOCKS.get(enterprise_id)
        if lock is None:
            lock = threading.RLock()
            _ENTERPRISE_LOCKS[enterprise_id] = lock
    with lock:
        yield


def forget_enterprise_lock(enterprise_id: str) -> None:
    with _LOCKS_GUARD:
        _ENTERPRISE_LOCKS.pop(enterprise_id, None)


class _DebitRefused(Exception):
    pass


class ResearchController:
    def __init__(
        self,
        catalog: TechnologyCatalog,
        store: ResearchInstanceStore,
        funds: FundsLedger,
        enterprises: EnterpriseRepository,
        clock: Optional[GameClock] = None,
    ):
        self._catalog = catalog
        self._store = store
        self._funds = funds
        self._enterprises = enterprises
        self._clock = clock or SimulationClock()

    # ── Tracking ──────────────────────────────────────────────────────────────

    def track_enterprise(self, enterprise_id: str) -> List[ResearchInstance]:
        """Create instances for any catalog node the enterprise lacks one for.

        Idempotent. Returns the enterprise's full instance list (empty when the
        enterprise is unknown or its category has no tree).
        """
        with enterprise_lock(enterprise_id):
            enterprise = self._enterprises.get(enterprise_id)
            if enterprise is None:
                return []
            with self._store.transaction():
                self._sync_instances(enterprise)
            return self._store.list_for_enterprise(enterprise_id)

    def _sync_instances(self, enterprise: EnterpriseRecord) -> None:
        nodes = self._catalog.nodes(enterprise.category)
        existing = states_by_node(self._store.list_for_enterprise(enterprise.id))
        missing = [n for n in nodes if n.id not in existing]
        if not missing:
            return

        states = dict(existing)
        for node in missing:
            states[node.id] = ResearchState.LOCKED
        unlocked = eligible(missing, states)
        self._store.create_instances(
            [
                ResearchInstance(
                    enterprise_id=enterprise.id,
                    node_id=node.id,
                    state=ResearchState.AVAILABLE if node.id in unlocked else ResearchState.LOCKED,
                )
                for node in missing
            ]
        )
        logger.info(
            "Tracked %d research nodes for enterprise %s (%s); %d available",
            len(missing), enterprise.id, enterprise.category, len(unlocked),
        )

    def eligible(self, enterprise_id: str) -> Set[str]:
        """Locked nodes of the enterprise whose prerequisites are all completed."""
        enterprise = self._enterprises.get(enterprise_id)
        if enterprise is None:
            return set()
        return eligible_for_enterprise(self._catalog, self._store, enterprise_id, enterprise.category)

    # ── Start ─────────────────────────────────────────────────────────────────

    def start(self, enterprise_id: str, node_id: str, funds_available: Optional[float] = None) -> StartResult:
        with enterprise_lock(enterprise_id):
            enterprise = self._enterprises.get(enterprise_id)
            if enterprise is None:
                return StartResult(False, ResearchError.UNKNOWN_ENTERPRISE, f"Enterprise {enterprise_id} not found")
            node = self._catalog.node(enterprise.category, node_id)
            if node is None:
                return StartResult(
                    False, ResearchError.UNKNOWN_NODE,
                    f"No research '{node_id}' for {enterprise.category}",
                )

            with self._store.transaction():
                self._sync_instances(enterprise)

            instance = self._store.get(enterprise_id, node_id)
            if instance is None or instance.state != ResearchState.AVAILABLE:
                return StartResult(False, ResearchError.NOT_ELIGIBLE, self._not_eligible_message(enterprise, node, instance))

            active = self._store.researching(enterprise_id)
            if active is not None:
                return StartResult(
                    False, ResearchError.ALREADY_RESEARCHING,
                    f"Already researching '{active.node_id}'; wait for it to complete",
                    instance=active,
                )

            available = float(funds_available) if funds_available is not None else self._funds.balance(enterprise.player_id)
            if available < node.cost:
                return StartResult(
                    False, ResearchError.INSUFFICIENT_FUNDS,
                    f"Need ${node.cost:,.0f}, have ${available:,.0f}",
                    cost=node.cost,
                )

            now = self._clock.now()
            try:
                with self._store.transaction():
                    if not self._funds.debit(enterprise.player_id, node.cost):
                        raise _DebitRefused()
                    updated = self._store.transition(
                        enterprise_id,
                        node_id,
                        ResearchState.AVAILABLE,
                        ResearchState.RESEARCHING,
                        started_at=now,
                        completes_at=now + node.duration_s,
                    )
            except _DebitRefused:
                return StartResult(
                    False, ResearchError.INSUFFICIENT_FUNDS,
                    f"Need ${node.cost:,.0f}; debit was refused",
                    cost=node.cost,
                )
            except InvalidTransition as exc:
                logger.warning("Start race for enterprise %s: %s", enterprise_id, exc)
                return StartResult(False, ResearchError.INVALID_TRANSITION, str(exc))

            logger.info(
                "Enterprise %s started research '%s' (cost %.2f, completes at %.0f)",
                enterprise_id, node_id, node.cost, updated.completes_at,
            )
            return StartResult(True, instance=updated, cost=node.cost)

    def _not_eligible_message(
        self,
        enterprise: EnterpriseRecord,
        node: TechnologyNode,
        instance: Optional[ResearchInstance],
    ) -> str:
        if instance is None:
            return f"Research '{node.id}' is not tracked for enterprise {enterprise.id}"
        if instance.state == ResearchState.LOCKED:
            states = states_by_node(self._store.list_for_enterprise(enterprise.id))
            missing = unmet_prerequisites(node, states)
            return f"Prerequisites not met: {', '.join(missing)}"
        return f"Research '{node.id}' is already {instance.state.value}"

    # ── Complete ──────────────────────────────────────────────────────────────

    def try_complete(self, enterprise_id: str, node_id: str, now: Optional[float] = None) -> CompleteResult:
        with enterprise_lock(enterprise_id):
            enterprise = self._enterprises.get(enterprise_id)
            if enterprise is None:
                return CompleteResult(False, ResearchError.UNKNOWN_ENTERPRISE, f"Enterprise {enterprise_id} not found")
            node = self._catalog.node(enterprise.category, node_id)
            if node is None:
                return CompleteResult(
                    False, ResearchError.UNKNOWN_NODE,
                    f"No research '{node_id}' for {enterprise.category}",
                )
            return self._complete_locked(enterprise, node, self._clock.now() if now is None else float(now))

    def _complete_locked(self, enterprise: EnterpriseRecord, node: TechnologyNode, now: float) -> CompleteResult:
        instance = self._store.get(enterprise.id, node.id)
        if instance is not None and instance.state == ResearchState.COMPLETED:
            return CompleteResult(
                False, ResearchError.ALREADY_COMPLETED,
                f"Research '{node.id}' already completed",
                completes_at=instance.completes_at,
            )
        if instance is None or instance.state != ResearchState.RESEARCHING:
            return CompleteResult(False, ResearchError.NOT_RESEARCHING, f"Research '{node.id}' is not in progress")
        if instance.completes_at is None or now < instance.completes_at:
            return CompleteResult(
                False, ResearchError.TOO_EARLY,
                f"Research '{node.id}' completes in {instance.remaining_s(now):.0f}s",
                completes_at=instance.completes_at,
            )

        try:
            with self._store.transaction():
                self._store.transition(
                    enterprise.id, node.id,
                    ResearchState.RESEARCHING, ResearchState.COMPLETED,
                    completed_at=now,
                )
                current = self._enterprises.get(enterprise.id) or enterprise
                attributes = apply_effects(node.effects, current.attributes)
                self._enterprises.update_attributes(enterprise.id, attributes)

                newly_available = sorted(
                    eligible_for_enterprise(self._catalog, self._store, enterprise.id, enterprise.category)
                )
                for next_id in newly_available:
                    self._store.transition(enterprise.id, next_id, ResearchState.LOCKED, ResearchState.AVAILABLE)
        except InvalidTransition as exc:
            logger.warning("Completion race for enterprise %s: %s", enterprise.id, exc)
            return CompleteResult(False, ResearchError.INVALID_TRANSITION, str(exc))

        logger.info(
            "Enterprise %s completed research '%s'; newly available: %s",
            enterprise.id, node.id, ", ".join(newly_available) or "none",
        )
        outcome = CompletionOutcome(
            completed=[node.id],
            newly_available=newly_available,
            completed_at=now,
            attributes=attributes,
            unlocked_items=list(node.unlocks_items),
        )
        return CompleteResult(True, outcome=outcome, completes_at=instance.completes_at)

    def settle(self, enterprise_id: str, now: Optional[float] = None) -> List[CompletionOutcome]:
        """Complete every research whose timer has run out."""
        with enterprise_lock(enterprise_id):
            enterprise = self._enterprises.get(enterprise_id)
            if enterprise is None:
                return []
            at = self._clock.now() if now is None else float(now)
            outcomes: List[CompletionOutcome] = []
            for instance in self._store.due(enterprise_id, at):
                node = self._catalog.node(enterprise.category, instance.node_id)
                if node is None:
                    logger.warning(
                        "Enterprise %s is researching '%s' which is no longer in the %s tree",
                        enterprise_id, instance.node_id, enterprise.category,
                    )
                    continue
                result = self._complete_locked(enterprise, node, at)
                if result.ok and result.outcome is not None:
                    outcomes.append(result.outcome)
            return outcomes

    # ── Read ──────────────────────────────────────────────────────────────────

    def tree(self, enterprise_id: str, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Settle due research, then return the enterprise's tree payload."""
        with enterprise_lock(enterprise_id):
            enterprise = self._enterprises.get(enterprise_id)
            if enterprise is None:
                return None
            at = self._clock.now() if now is None else float(now)
            with self._store.transaction():
                self._sync_instances(enterprise)
            settled = self.settle(enterprise_id, at)
            enterprise = self._enterprises.get(enterprise_id) or enterprise

            tree = self._catalog.tree(enterprise.category)
            payload = build_tree_payload(
                self._catalog.nodes(enterprise.category),
                self._store.list_for_enterprise(enterprise_id),
                at,
                category=enterprise.category,
                display_name=tree.display_name if tree else None,
            )
            payload["enterprise"] = {
                "id": enterprise.id,
                "name": enterprise.name,
                "player_id": enterprise.player_id,
                "attributes": asdict(enterprise.attributes),
            }
            payload["balance"] = self._funds.balance(enterprise.player_id)
            payload["settled"] = [
                {"completed": o.completed, "newly_available": o.newly_available} for o in settled
            ]
            return payload
