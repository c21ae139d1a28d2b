"""Skip rules for sequence steps, evaluated against current account state."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from .models import AccountState


@dataclass(slots=True, frozen=True)
class SkipIfSubscribedTo:
    """Skip the step when the account already holds one of these tiers."""

    tiers: FrozenSet[str]

    type_name = "skip_if_subscribed_to"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "tiers": sorted(self.tiers)}


SkipRule = Union[SkipIfSubscribedTo]


def _tiers(values: Any) -> FrozenSet[str]:
    if isinstance(values, str):
        values = values.split(",")
    return frozenset(str(v).strip().lower() for v in values or [] if str(v).strip())


def parse_rule(data: Optional[Mapping[str, Any]]) -> Optional[SkipRule]:
    """Build a rule from its stored form; ``None`` when the step has none."""
    if not data:
        return None
    rule_type = data.get("type")
    if rule_type == SkipIfSubscribedTo.type_name:
        return SkipIfSubscribedTo(tiers=_tiers(data.get("tiers")))
    if rule_type is None and "not_subscribed_to" in data:
        return SkipIfSubscribedTo(tiers=_tiers(data["not_subscribed_to"]))
    raise ValueError(f"Unknown skip rule: {dict(data)!r}")


def should_skip(rule: Optional[SkipRule], account: AccountState) -> bool:
    if rule is None:
        return False
    if isinstance(rule, SkipIfSubscribedTo):
        return bool(account.plan_tier) and account.plan_tier.lower() in rule.tiers
    raise TypeError(f"Unsupported skip rule {rule!r}")
