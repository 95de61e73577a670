"""Shared research types: instance states, enterprise attributes, results and errors."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class ResearchState(str, Enum):
    LOCKED = "locked"
    AVAILABLE = "available"
    RESEARCHING = "researching"
    COMPLETED = "completed"


# Forward order of the state machine; transitions only move one step right.
STATE_ORDER: Tuple[ResearchState, ...] = (
    ResearchState.LOCKED,
    ResearchState.AVAILABLE,
    ResearchState.RESEARCHING,
    ResearchState.COMPLETED,
)


class ResearchError(str, Enum):
    UNKNOWN_ENTERPRISE = "unknown_enterprise"
    UNKNOWN_NODE = "unknown_node"
    NOT_ELIGIBLE = "not_eligible"
    ALREADY_RESEARCHING = "already_researching"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_RESEARCHING = "not_researching"
    TOO_EARLY = "too_early"
    ALREADY_COMPLETED = "already_completed"
    INVALID_TRANSITION = "invalid_transition"


class CatalogError(Exception):
    """Technology tree definitions are invalid. Raised at load time only."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid technology catalog:\n  " + "\n  ".join(self.errors))


class StorageError(Exception):
    """The backing store failed; the in-flight operation was rolled back."""


class InvalidTransition(Exception):
    """The instance was not in the expected state when the transition was applied."""

    def __init__(self, enterprise_id: str, node_id: str, expected: ResearchState, target: ResearchState):
        self.enterprise_id = enterprise_id
        self.node_id = node_id
        self.expected = expected
        self.target = target
        super().__init__(
            f"Research '{node_id}' for enterprise {enterprise_id} is not {expected.value}; "
            f"cannot move to {target.value}"
        )


@dataclass(frozen=True)
class ResearchInstance:
    enterprise_id: str
    node_id: str
    state: ResearchState
    started_at: Optional[float] = None
    completes_at: Optional[float] = None
    completed_at: Optional[float] = None

    def remaining_s(self, now: float) -> float:
        if self.state != ResearchState.RESEARCHING or self.completes_at is None:
            return 0.0
        return max(0.0, self.completes_at - now)


@dataclass(frozen=True)
class EnterpriseAttributes:
    production_rate: float = 0.0
    storage_capacity: float = 0.0
    security_level: float = 0.0
    heat_level: float = 0.0
    revenue_multiplier: float = 1.0
    passive_income: float = 0.0


@dataclass(frozen=True)
class CompletionOutcome:
    completed: List[str]
    newly_available: List[str]
    completed_at: float
    attributes: EnterpriseAttributes
    unlocked_items: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class StartResult:
    ok: bool
    error: Optional[ResearchError] = None
    message: str = ""
    instance: Optional[ResearchInstance] = None
    cost: float = 0.0


@dataclass(frozen=True)
class CompleteResult:
    ok: bool
    error: Optional[ResearchError] = None
    message: str = ""
    outcome: Optional[CompletionOutcome] = None
    completes_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        """Research is running but not finished yet; not a failure."""
        return self.error == ResearchError.TOO_EARLY
