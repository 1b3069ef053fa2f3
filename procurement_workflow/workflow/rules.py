from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterable, Mapping


logger = logging.getLogger("procurement_workflow.rules")


class RuleKind(IntEnum):
    SINGLE_APPROVAL_CEILING = 1
    QUOTE_BAND_MULTIPLIER = 2
    DUAL_APPROVAL_FLOOR = 3
    QUOTES_REQUIRED = 4
    APPROVERS_REQUIRED = 5
    PRICE_VARIANCE_UPWARD = 6
    PRICE_VARIANCE_DOWNWARD = 7


RULE_DESCRIPTIONS: Dict[RuleKind, str] = {
    RuleKind.SINGLE_APPROVAL_CEILING: "Single-approver ceiling and proforma/payment evidence threshold",
    RuleKind.QUOTE_BAND_MULTIPLIER: "Multiplier of the single-approver ceiling that opens the multi-quote band",
    RuleKind.DUAL_APPROVAL_FLOOR: "Amount above which two approvers and a PO document are required",
    RuleKind.QUOTES_REQUIRED: "Number of quotes required in the multi-quote band",
    RuleKind.APPROVERS_REQUIRED: "Number of distinct approvers required for dual approval",
    RuleKind.PRICE_VARIANCE_UPWARD: "Allowed final price increase over the approved amount (percent)",
    RuleKind.PRICE_VARIANCE_DOWNWARD: "Allowed final price decrease under the approved amount (percent)",
}

DEFAULT_QUOTES_REQUIRED = 3
DEFAULT_APPROVERS_REQUIRED = 2
DEFAULT_VARIANCE_UPWARD_PCT = 5.0
DEFAULT_VARIANCE_DOWNWARD_PCT = 20.0


@dataclass(frozen=True)
class Rule:
    number: int
    threshold: float
    currency: str | None = None
    description: str = ""

    @property
    def kind(self) -> RuleKind | None:
        try:
            return RuleKind(int(self.number))
        except ValueError:
            return None


def _coerce_rule(raw: Any) -> Rule | None:
    if isinstance(raw, Rule):
        return raw
    if isinstance(raw, Mapping):
        try:
            number = int(str(raw.get("number")).strip())
            threshold = float(raw.get("threshold"))
        except (TypeError, ValueError):
            return None
        currency = str(raw.get("currency") or "").strip().upper() or None
        return Rule(number=number, threshold=threshold, currency=currency, description=str(raw.get("description") or ""))
    return None


@dataclass(frozen=True)
class RuleSet:
    """An organization's rules resolved by kind.

    Rule identifiers arrive loosely typed from storage; they are resolved here once so
    that the gate never compares a number to a string.
    """

    organization_id: str
    rules: Mapping[RuleKind, Rule] = field(default_factory=dict)

    @classmethod
    def resolve(cls, organization_id: str, raw_rules: Iterable[Any]) -> "RuleSet":
        resolved: Dict[RuleKind, Rule] = {}
        for raw in raw_rules or ():
            rule = _coerce_rule(raw)
            if rule is None or rule.kind is None:
                logger.warning(
                    "rule_ignored",
                    extra={"organization_id": organization_id, "rule": repr(raw)},
                )
                continue
            if rule.kind in resolved:
                logger.warning(
                    "rule_duplicate_ignored",
                    extra={"organization_id": organization_id, "rule_number": int(rule.kind)},
                )
                continue
            resolved[rule.kind] = rule
        return cls(organization_id=organization_id, rules=resolved)

    def get(self, kind: RuleKind) -> Rule | None:
        return self.rules.get(kind)

    def _count(self, kind: RuleKind, default: int) -> int:
        rule = self.get(kind)
        if rule is None:
            return default
        return max(1, int(rule.threshold))

    def _percent(self, kind: RuleKind, default: float) -> float:
        rule = self.get(kind)
        if rule is None:
            return default
        return max(0.0, float(rule.threshold))

    @property
    def single_approval_ceiling(self) -> Rule | None:
        return self.get(RuleKind.SINGLE_APPROVAL_CEILING)

    @property
    def dual_approval_floor(self) -> Rule | None:
        return self.get(RuleKind.DUAL_APPROVAL_FLOOR)

    @property
    def quote_band_multiplier(self) -> float | None:
        rule = self.get(RuleKind.QUOTE_BAND_MULTIPLIER)
        if rule is None or rule.threshold <= 0:
            return None
        return float(rule.threshold)

    @property
    def quotes_required(self) -> int:
        return self._count(RuleKind.QUOTES_REQUIRED, DEFAULT_QUOTES_REQUIRED)

    @property
    def approvers_required(self) -> int:
        return self._count(RuleKind.APPROVERS_REQUIRED, DEFAULT_APPROVERS_REQUIRED)

    @property
    def variance_upward_pct(self) -> float:
        return self._percent(RuleKind.PRICE_VARIANCE_UPWARD, DEFAULT_VARIANCE_UPWARD_PCT)

    @property
    def variance_downward_pct(self) -> float:
        return self._percent(RuleKind.PRICE_VARIANCE_DOWNWARD, DEFAULT_VARIANCE_DOWNWARD_PCT)

    def describe(self, kind: RuleKind) -> str:
        rule = self.get(kind)
        if rule is not None and rule.description:
            return rule.description
        return RULE_DESCRIPTIONS[kind]
