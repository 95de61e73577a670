"""
Research effect kinds and the pure applicator that folds them into
enterprise attributes.

Every effect name is resolved to an EffectKind when the catalog loads; the
combination rule for each kind is declared once in EFFECT_RULES.
apply_effects is not idempotent (multiplicative effects compound), so callers
must apply a node's bundle exactly once.
"""

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from constants import EFFECT_ALIASES, HEAT_LEVEL_MAX, HEAT_LEVEL_MIN, SECURITY_LEVEL_MIN
from research_models import EnterpriseAttributes


class EffectKind(str, Enum):
    PRODUCTION_RATE = "production_rate"
    STORAGE_CAPACITY = "storage_capacity"
    SECURITY_LEVEL = "security_level"
    HEAT_LEVEL = "heat_level"
    REVENUE_MULTIPLIER = "revenue_multiplier"
    PASSIVE_INCOME = "passive_income"


class CombineRule(str, Enum):
    MULTIPLY_RELATIVE = "mul"
    ADD = "add"


@dataclass(frozen=True)
class EffectRule:
    attribute: str
    combine: CombineRule
    minimum: Optional[float] = None
    maximum: Optional[float] = None


EFFECT_RULES: Dict[EffectKind, EffectRule] = {
    EffectKind.PRODUCTION_RATE: EffectRule("production_rate", CombineRule.MULTIPLY_RELATIVE),
    EffectKind.STORAGE_CAPACITY: EffectRule("storage_capacity", CombineRule.MULTIPLY_RELATIVE),
    EffectKind.REVENUE_MULTIPLIER: EffectRule("revenue_multiplier", CombineRule.MULTIPLY_RELATIVE),
    EffectKind.SECURITY_LEVEL: EffectRule("security_level", CombineRule.ADD, minimum=SECURITY_LEVEL_MIN),
    EffectKind.HEAT_LEVEL: EffectRule("heat_level", CombineRule.ADD, minimum=HEAT_LEVEL_MIN, maximum=HEAT_LEVEL_MAX),
    EffectKind.PASSIVE_INCOME: EffectRule("passive_income", CombineRule.ADD, minimum=0.0),
}


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    value: float


def parse_effect(name: str, value: object) -> Effect:
    """Resolve a raw (name, value) pair from a tree file into a typed Effect.

    Accepts canonical kind names and the legacy aliases in EFFECT_ALIASES.
    Raises ValueError for unknown names or non-finite/non-numeric values.
    """
    key = str(name or "").strip().lower()
    sign = 1.0
    if key in EFFECT_ALIASES:
        key, sign = EFFECT_ALIASES[key]
    try:
        kind = EffectKind(key)
    except ValueError:
        raise ValueError(f"unknown effect '{name}'") from None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"effect '{name}' must have a numeric value")
    amount = float(value) * sign
    if not math.isfinite(amount):
        raise ValueError(f"effect '{name}' must be finite")
    return Effect(kind=kind, value=amount)


def _clamp(value: float, rule: EffectRule) -> float:
    if rule.minimum is not None:
        value = max(rule.minimum, value)
    if rule.maximum is not None:
        value = min(rule.maximum, value)
    return value


def apply_effects(effects: Iterable[Effect], attributes: EnterpriseAttributes) -> EnterpriseAttributes:
    updates: Dict[str, float] = {}
    for effect in effects:
        rule = EFFECT_RULES[effect.kind]
        current = updates.get(rule.attribute, float(getattr(attributes, rule.attribute)))
        if rule.combine == CombineRule.MULTIPLY_RELATIVE:
            current = current * (1.0 + effect.value)
        else:
            current = current + effect.value
        updates[rule.attribute] = _clamp(current, rule)
    if not updates:
        return attributes
    return replace(attributes, **updates)


def describe_effect(effect: Effect) -> str:
    label = effect.kind.value.replace("_", " ")
    rule = EFFECT_RULES[effect.kind]
    if rule.combine == CombineRule.MULTIPLY_RELATIVE:
        return f"{effect.value * 100.0:+.0f}% {label}"
    return f"{effect.value:+g} {label}"


def effects_to_dict(effects: Tuple[Effect, ...]) -> Dict[str, float]:
    return {e.kind.value: e.value for e in effects}
