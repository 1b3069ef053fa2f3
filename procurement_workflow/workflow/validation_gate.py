from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Tuple

from procurement_workflow.workflow.capabilities import can_approve
from procurement_workflow.workflow.model import EvidenceKind, Override, OverrideKind, Request
from procurement_workflow.workflow.rules import Rule, RuleKind, RuleSet


logger = logging.getLogger("procurement_workflow.validation")

Converter = Callable[[float, str, str], float]


class GateMode(str, Enum):
    CARDINALITY = "cardinality"
    ORDERING = "ordering"
    COMPLETION = "completion"
    PRICE_VARIANCE = "price_variance"


class ApprovalCardinality(str, Enum):
    SINGLE = "SINGLE"
    DUAL = "DUAL"


# Override kinds that satisfy a failure tagged with the key kind.
ACCEPTED_OVERRIDES: Dict[OverrideKind, FrozenSet[OverrideKind]] = {
    OverrideKind.QUOTE_REQUIREMENT: frozenset({OverrideKind.QUOTE_REQUIREMENT, OverrideKind.RULE_VALIDATION}),
    OverrideKind.RULE_VALIDATION: frozenset({OverrideKind.RULE_VALIDATION}),
}


@dataclass(frozen=True)
class GateFailure:
    code: str
    description: str
    override_kind: OverrideKind | None = None

    @property
    def overridable(self) -> bool:
        return self.override_kind is not None

    def satisfied_by(self, overrides: Mapping[OverrideKind, Override], now: datetime) -> bool:
        if self.override_kind is None:
            return False
        accepted = ACCEPTED_OVERRIDES.get(self.override_kind, frozenset({self.override_kind}))
        for kind in accepted:
            record = overrides.get(kind)
            if record is not None and record.is_active(now):
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "description": self.description,
            "override_kind": self.override_kind.value if self.override_kind else None,
            "overridable": self.overridable,
        }


@dataclass(frozen=True)
class GateContext:
    """Facts gathered from collaborators before the gate runs.

    Keeping these outside the gate makes evaluation a pure function of its inputs.
    """

    evidence: FrozenSet[EvidenceKind] = frozenset()
    approver_tiers: Mapping[str, int | None] = field(default_factory=dict)
    preferred_vendor_approved: bool = False


@dataclass(frozen=True)
class GateResult:
    mode: GateMode
    failures: Tuple[GateFailure, ...] = ()
    cardinality: ApprovalCardinality | None = None
    required_quotes: int | None = None
    variance_pct: float | None = None

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def requires_dual(self) -> bool:
        return self.cardinality == ApprovalCardinality.DUAL

    @property
    def failing_rule_descriptions(self) -> list[str]:
        return [failure.description for failure in self.failures]

    def unresolved(self, overrides: Mapping[OverrideKind, Override], now: datetime) -> Tuple[GateFailure, ...]:
        return tuple(failure for failure in self.failures if not failure.satisfied_by(overrides, now))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "ok": self.ok,
            "failing_rules": [failure.to_dict() for failure in self.failures],
            "cardinality": self.cardinality.value if self.cardinality else None,
            "required_quotes": self.required_quotes,
            "variance_pct": self.variance_pct,
        }


def _same_currency(converter: Converter) -> Converter:
    def convert(amount: float, from_currency: str, to_currency: str) -> float:
        if not to_currency or str(from_currency).upper() == str(to_currency).upper():
            return float(amount)
        return float(converter(amount, from_currency, to_currency))

    return convert


def _missing_converter(amount: float, from_currency: str, to_currency: str) -> float:
    raise LookupError(f"no converter for {from_currency}->{to_currency}")


def lowest_quote_id(request: Request, converter: Converter | None = None) -> str | None:
    """The cheapest quote in the request currency; the first submitted wins ties."""
    convert = _same_currency(converter or _missing_converter)
    lowest_id: str | None = None
    lowest_amount: float | None = None
    for quote in request.quotes:
        amount = convert(quote.amount, quote.currency, request.currency)
        if lowest_amount is None or amount < lowest_amount:
            lowest_id = quote.id
            lowest_amount = amount
    return lowest_id


def variance_percent(approved_amount: float, final_price: float) -> float:
    if approved_amount <= 0:
        return 0.0
    return (float(final_price) - float(approved_amount)) / float(approved_amount) * 100.0


class ValidationGate:
    """Evaluates an organization's rules against a request for one transition.

    Evaluation is monotone in the amount: raising the amount never removes a failure.
    """

    def __init__(self, converter: Converter | None = None) -> None:
        self._convert = _same_currency(converter or _missing_converter)

    def amount_in(self, request: Request, rule: Rule | None) -> float:
        if rule is None or not rule.currency:
            return float(request.amount)
        return self._convert(request.amount, request.currency, rule.currency)

    def cardinality(self, request: Request, rules: RuleSet) -> ApprovalCardinality:
        floor = rules.dual_approval_floor
        if floor is None:
            logger.warning(
                "rule_configuration_gap",
                extra={"organization_id": rules.organization_id, "rule_number": int(RuleKind.DUAL_APPROVAL_FLOOR)},
            )
            return ApprovalCardinality.SINGLE
        if self.amount_in(request, floor) > floor.threshold:
            return ApprovalCardinality.DUAL
        return ApprovalCardinality.SINGLE

    def required_quotes(self, request: Request, rules: RuleSet, *, dual: bool, vendor_approved: bool) -> int | None:
        ceiling = rules.single_approval_ceiling
        if ceiling is None:
            return None
        amount = self.amount_in(request, ceiling)
        quotes_required = rules.quotes_required
        required = 0
        if amount > ceiling.threshold:
            required = 0 if vendor_approved else 1
        multiplier = rules.quote_band_multiplier
        if multiplier is not None and amount > ceiling.threshold * multiplier:
            required = 1 if vendor_approved else quotes_required
        if dual:
            required = max(required, quotes_required - 1 if vendor_approved else quotes_required)
        return required

    def evaluate(
        self,
        request: Request,
        rules: RuleSet,
        mode: GateMode,
        context: GateContext | None = None,
    ) -> GateResult:
        context = context or GateContext()
        if mode == GateMode.CARDINALITY:
            return self._evaluate_cardinality(request, rules, context)
        if mode == GateMode.ORDERING:
            return self._evaluate_ordering(request, rules, context)
        if mode == GateMode.COMPLETION:
            return self._evaluate_completion(context)
        if mode == GateMode.PRICE_VARIANCE:
            failures, variance = self._variance_failures(request, rules)
            return GateResult(mode=mode, failures=failures, variance_pct=variance)
        raise ValueError(f"unknown gate mode: {mode!r}")

    def _evaluate_cardinality(self, request: Request, rules: RuleSet, context: GateContext) -> GateResult:
        failures: list[GateFailure] = []
        cardinality = self.cardinality(request, rules)
        dual = cardinality == ApprovalCardinality.DUAL

        failures.extend(self._approver_failures(request, rules, context, dual=dual))

        required = self.required_quotes(request, rules, dual=dual, vendor_approved=context.preferred_vendor_approved)
        if required is None:
            failures.append(
                GateFailure(
                    code="rules_not_configured",
                    description=(
                        f"Rule {int(RuleKind.SINGLE_APPROVAL_CEILING)} is not configured for this organization; "
                        "quote requirements cannot be evaluated"
                    ),
                    override_kind=OverrideKind.RULE_VALIDATION,
                )
            )
        elif len(request.quotes) < required:
            failures.append(
                GateFailure(
                    code="quote_requirement",
                    description=(
                        f"{required} quote(s) required for this amount, {len(request.quotes)} provided "
                        f"({rules.describe(RuleKind.QUOTES_REQUIRED)})"
                    ),
                    override_kind=OverrideKind.QUOTE_REQUIREMENT,
                )
            )

        return GateResult(
            mode=GateMode.CARDINALITY,
            failures=tuple(failures),
            cardinality=cardinality,
            required_quotes=required,
        )

    def _approver_failures(
        self,
        request: Request,
        rules: RuleSet,
        context: GateContext,
        *,
        dual: bool,
    ) -> Iterable[GateFailure]:
        # Approver problems are never overridable: the fix is to reassign.
        assigned = [request.approver_primary_id]
        if not request.approver_primary_id:
            yield GateFailure(code="approver_missing", description="A primary approver must be assigned")
        if dual:
            secondary = request.approver_secondary_id
            if not secondary:
                yield GateFailure(
                    code="second_approver_required",
                    description=(
                        f"{rules.approvers_required} distinct approvers are required above the dual-approval floor"
                    ),
                )
            elif secondary == request.approver_primary_id:
                yield GateFailure(
                    code="approvers_not_distinct",
                    description="The primary and secondary approvers must be different people",
                )
            else:
                assigned.append(secondary)

        ceiling = rules.single_approval_ceiling
        amount = self.amount_in(request, ceiling)
        for approver_id in assigned:
            if not approver_id:
                continue
            if approver_id not in context.approver_tiers or context.approver_tiers.get(approver_id) is None:
                yield GateFailure(
                    code="approver_unknown",
                    description=f"Approver {approver_id} is not a recognized approver for this organization",
                )
                continue
            tier = context.approver_tiers[approver_id]
            if not can_approve(tier, amount, ceiling.threshold if ceiling else None):
                yield GateFailure(
                    code="approver_ineligible",
                    description=(
                        f"Approver {approver_id} is not permitted to approve {request.amount:g} {request.currency}; "
                        "reassign an eligible approver"
                    ),
                )

    def _evaluate_ordering(self, request: Request, rules: RuleSet, context: GateContext) -> GateResult:
        failures: list[GateFailure] = []
        ceiling = rules.single_approval_ceiling
        # Without a ceiling the payment evidence is required.
        above_ceiling = ceiling is None or self.amount_in(request, ceiling) > ceiling.threshold
        if above_ceiling:
            if EvidenceKind.PROFORMA not in context.evidence:
                failures.append(
                    GateFailure(
                        code="proforma_missing",
                        description="A proforma invoice is required above the single-approval ceiling",
                        override_kind=OverrideKind.PROFORMA,
                    )
                )
            if EvidenceKind.PROOF_OF_PAYMENT not in context.evidence:
                failures.append(
                    GateFailure(
                        code="proof_of_payment_missing",
                        description="Proof of payment is required above the single-approval ceiling",
                        override_kind=OverrideKind.PROOF_OF_PAYMENT,
                    )
                )

        floor = rules.dual_approval_floor
        if floor is not None and self.amount_in(request, floor) > floor.threshold:
            if EvidenceKind.PO_DOCUMENT not in context.evidence:
                failures.append(
                    GateFailure(
                        code="po_document_missing",
                        description="A purchase order document is required above the dual-approval floor",
                        override_kind=OverrideKind.PO_DOCUMENT,
                    )
                )

        if EvidenceKind.ESTIMATED_DELIVERY_DATE not in context.evidence:
            failures.append(
                GateFailure(
                    code="estimated_delivery_date_missing",
                    description="An estimated delivery date must be recorded before ordering",
                )
            )

        variance_failures, variance = self._variance_failures(request, rules)
        failures.extend(variance_failures)
        return GateResult(mode=GateMode.ORDERING, failures=tuple(failures), variance_pct=variance)

    def _evaluate_completion(self, context: GateContext) -> GateResult:
        failures: Tuple[GateFailure, ...] = ()
        if EvidenceKind.DELIVERY_DOCUMENTATION not in context.evidence:
            failures = (
                GateFailure(
                    code="delivery_documentation_missing",
                    description="Delivery documentation is required to complete the order",
                    override_kind=OverrideKind.DELIVERY_DOCUMENTATION,
                ),
            )
        return GateResult(mode=GateMode.COMPLETION, failures=failures)

    def _variance_failures(self, request: Request, rules: RuleSet) -> tuple[Tuple[GateFailure, ...], float | None]:
        if request.final_price is None:
            return (), None
        variance = variance_percent(request.amount, request.final_price)
        upward = rules.variance_upward_pct
        downward = rules.variance_downward_pct
        if variance > upward or variance < -downward:
            failure = GateFailure(
                code="final_price_variance",
                description=(
                    f"Final price {request.final_price:g} differs from the approved amount {request.amount:g} "
                    f"by {variance:+.2f}% (allowed +{upward:g}% / -{downward:g}%)"
                ),
                override_kind=OverrideKind.FINAL_PRICE_VARIANCE,
            )
            return (failure,), variance
        return (), variance
