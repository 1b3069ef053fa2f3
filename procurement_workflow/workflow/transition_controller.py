from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Tuple

from procurement_workflow.errors import (
    InvalidTransitionError,
    UnauthorizedError,
    ValidationFailedError,
    VarianceFailedError,
)
from procurement_workflow.observability import observe_workflow_approval, observe_workflow_override
from procurement_workflow.workflow.approval_coordinator import (
    ApprovalCoordinator,
    ApprovalOutcome,
    initial_approval_state,
)
from procurement_workflow.workflow.collaborators import (
    ApproverDirectory,
    Authorization,
    CurrencyConverter,
    EvidenceStore,
    RuleRegistry,
    VendorDirectory,
)
from procurement_workflow.workflow.flow_policy import (
    NOTES_REQUIRED_TARGETS,
    RESURRECTION_SOURCES,
    edge_action,
    resurrection_target,
)
from procurement_workflow.workflow.model import (
    EvidenceKind,
    Override,
    OverrideKind,
    Request,
    RequestStatus,
    StatusHistoryEntry,
    format_timestamp,
    utc_now,
)
from procurement_workflow.workflow.overrides import OverrideLedger
from procurement_workflow.workflow.retry import BoundedReader
from procurement_workflow.workflow.rules import RuleSet
from procurement_workflow.workflow.validation_gate import (
    GateContext,
    GateFailure,
    GateMode,
    GateResult,
    ValidationGate,
    lowest_quote_id,
)
from procurement_workflow.workflow.vendor_approval import (
    ApprovalDurations,
    CompletionOutcome,
    CompletionVendorApprovalCalculator,
    VendorApprovalDecision,
)


logger = logging.getLogger("procurement_workflow.transitions")

ORDERING_EVIDENCE = (
    EvidenceKind.PROFORMA,
    EvidenceKind.PROOF_OF_PAYMENT,
    EvidenceKind.PO_DOCUMENT,
    EvidenceKind.ESTIMATED_DELIVERY_DATE,
)
COMPLETION_EVIDENCE = (EvidenceKind.DELIVERY_DOCUMENTATION,)


def order_number(number: str) -> str:
    """PR-202401-007 becomes PO-202401-007 once the request enters approval."""
    value = str(number or "").strip()
    if value.startswith("PO-"):
        return value
    if value.startswith("PR-"):
        return "PO-" + value[3:]
    return f"PO-{value}"


@dataclass(frozen=True)
class TransitionResult:
    request: Request
    previous_status: RequestStatus
    history_entry: StatusHistoryEntry | None = None
    changed: bool = True
    replayed: bool = False
    approval: ApprovalOutcome | None = None
    gate: GateResult | None = None
    created_overrides: Tuple[Override, ...] = ()
    vendor_decision: VendorApprovalDecision | None = None
    warnings: Tuple[str, ...] = ()

    @property
    def status(self) -> RequestStatus:
        return self.request.status

    @property
    def status_changed(self) -> bool:
        return self.history_entry is not None and not self.replayed and self.previous_status != self.request.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request.id,
            "number": self.request.number,
            "status": self.request.status.value,
            "previous_status": self.previous_status.value,
            "replayed": self.replayed,
            "history_entry": self.history_entry.to_dict() if self.history_entry else None,
            "approval": self.approval.to_dict() if self.approval else None,
            "overrides_created": [record.to_dict() for record in self.created_overrides],
            "vendor_approval": self.vendor_decision.to_dict() if self.vendor_decision else None,
            "warnings": list(self.warnings),
        }


class TransitionController:
    """The request state machine.

    Every operation takes a loaded ``Request`` and returns the next one without
    persisting anything; callers commit the result atomically. Collaborator reads go
    through a ``BoundedReader`` so a slow registry fails the operation closed.
    """

    def __init__(
        self,
        *,
        rules: RuleRegistry,
        authorization: Authorization,
        evidence: EvidenceStore,
        approvers: ApproverDirectory,
        vendors: VendorDirectory,
        converter: CurrencyConverter,
        reader: BoundedReader | None = None,
        durations: ApprovalDurations | None = None,
        coordinator: ApprovalCoordinator | None = None,
        ledger: OverrideLedger | None = None,
        vendor_calculator: CompletionVendorApprovalCalculator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._rules = rules
        self._authorization = authorization
        self._evidence = evidence
        self._approvers = approvers
        self._vendors = vendors
        self._converter = converter
        self._reader = reader or BoundedReader()
        self._durations = durations or ApprovalDurations()
        self._clock = clock
        self._coordinator = coordinator or ApprovalCoordinator(clock=clock)
        self._ledger = ledger or OverrideLedger(clock=clock)
        self._vendor_calculator = vendor_calculator or CompletionVendorApprovalCalculator(self._durations)
        self.gate = ValidationGate(converter=self._convert)

    # -- collaborator access -------------------------------------------------

    def _convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        return self._reader.read("currency_converter", self._converter.convert, amount, from_currency, to_currency)

    def authorize(self, actor_id: str, action: str, request: Request) -> None:
        allowed = self._reader.read("authorization", self._authorization.can_perform, actor_id, action, request)
        if not allowed:
            raise UnauthorizedError(
                details=f"{actor_id or 'anonymous'} may not perform {action} on {request.id}",
                payload={"action": action},
            )

    def load_rules(self, organization_id: str) -> RuleSet:
        raw_rules = self._reader.read("rule_registry", self._rules.get_rules, organization_id)
        return RuleSet.resolve(organization_id, raw_rules)

    def gather_context(
        self,
        request: Request,
        *,
        evidence_kinds: Iterable[EvidenceKind] = (),
        include_approvers: bool = False,
        include_vendor: bool = False,
    ) -> GateContext:
        evidence = frozenset(
            kind
            for kind in evidence_kinds
            if self._reader.read("evidence_store", self._evidence.has_evidence, request.id, kind)
        )
        approver_tiers: Dict[str, int | None] = {}
        if include_approvers:
            for approver_id in (request.approver_primary_id, request.approver_secondary_id):
                if not approver_id or approver_id in approver_tiers:
                    continue
                approver = self._reader.read("approver_directory", self._approvers.get_approver, approver_id)
                approver_tiers[approver_id] = approver.permission_tier if approver and approver.active else None
        vendor_approved = False
        if include_vendor:
            preferred = request.preferred_quote
            if preferred is not None:
                vendor = self._reader.read("vendor_directory", self._vendors.get_vendor, preferred.vendor_id)
                vendor_approved = bool(vendor and vendor.approval_active(self._clock()))
        return GateContext(
            evidence=evidence,
            approver_tiers=approver_tiers,
            preferred_vendor_approved=vendor_approved,
        )

    # -- transitions ---------------------------------------------------------

    def request_transition(
        self,
        request: Request,
        target: Any,
        actor_id: str,
        payload: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        data = dict(payload or {})
        target_status = RequestStatus.parse(target)
        if target_status is None:
            raise InvalidTransitionError(request.status.value, str(target))

        if target_status == request.status:
            return self._replay(request)

        action = edge_action(request.status, target_status)
        if action is None:
            raise InvalidTransitionError(request.status.value, target_status.value)
        if request.status in RESURRECTION_SOURCES:
            expected = resurrection_target(request.status, request.status_history)
            if target_status != expected:
                raise InvalidTransitionError(
                    request.status.value,
                    target_status.value,
                    payload={"expected_target": expected.value if expected else None},
                )

        if target_status == RequestStatus.APPROVED:
            return self.record_approval(request, actor_id, data.get("quote_id"), data.get("justification"))

        self.authorize(actor_id, action, request)
        notes = str(data.get("notes") or "").strip()
        if target_status in NOTES_REQUIRED_TARGETS and not notes:
            raise ValidationFailedError(
                [GateFailure(code="notes_required", description=f"A note is required to move to {target_status.value}")],
                overridable=False,
                code="justification_required",
                message_key="justification_required",
            )

        now = self._clock()
        if target_status == RequestStatus.PENDING_APPROVAL:
            return self._enter_approval(request, actor_id, data, notes, now)
        if target_status == RequestStatus.ORDERED:
            return self._place_order(request, actor_id, data, notes, now)
        if target_status == RequestStatus.COMPLETED:
            return self._complete_order(request, actor_id, data, notes, now)

        updated = request
        if request.status == RequestStatus.PENDING_APPROVAL and target_status in NOTES_REQUIRED_TARGETS:
            # Either approver declining ends the round; the state stays as a record.
            updated = replace(updated, approval_state=self._coordinator.record_decline(request, actor_id, notes))
        return self._commit(updated, target_status, actor_id, notes, now)

    def _replay(self, request: Request) -> TransitionResult:
        logger.info(
            "transition_replayed",
            extra={"request_id": request.id, "status": request.status.value},
        )
        return TransitionResult(
            request=request,
            previous_status=request.status,
            history_entry=request.last_history_entry,
            changed=False,
            replayed=True,
        )

    def _commit(
        self,
        request: Request,
        target: RequestStatus,
        actor_id: str,
        notes: str,
        now: datetime,
        **extra: Any,
    ) -> TransitionResult:
        entry = StatusHistoryEntry(
            from_status=request.status,
            to_status=target,
            actor_id=actor_id,
            timestamp=now,
            notes=notes,
        )
        updated = replace(request, status=target, status_history=request.status_history + (entry,))
        logger.info(
            "transition_planned",
            extra={
                "request_id": request.id,
                "from_status": request.status.value,
                "to_status": target.value,
                "actor_id": actor_id,
            },
        )
        return TransitionResult(request=updated, previous_status=request.status, history_entry=entry, **extra)

    def _resolve_failures(
        self,
        request: Request,
        result: GateResult,
        actor_id: str,
        payload: Mapping[str, Any],
        now: datetime,
    ) -> Tuple[Request, Tuple[Override, ...]]:
        unresolved = result.unresolved(request.overrides, now)
        if not unresolved:
            return request, ()

        variance = any(failure.override_kind == OverrideKind.FINAL_PRICE_VARIANCE for failure in unresolved)
        error_cls = VarianceFailedError if variance else ValidationFailedError
        justification = str(payload.get("override_justification") or "").strip()
        if not justification or any(not failure.overridable for failure in unresolved):
            raise error_cls(unresolved)

        for kind in {failure.override_kind for failure in unresolved}:
            self.authorize(actor_id, f"override:{kind.value}", request)
        updated, created = self._ledger.create_for_failures(request, unresolved, justification, actor_id)
        for record in created:
            observe_workflow_override(record.kind.value)
        return updated, created

    def _enter_approval(
        self,
        request: Request,
        actor_id: str,
        payload: Mapping[str, Any],
        notes: str,
        now: datetime,
    ) -> TransitionResult:
        rules = self.load_rules(request.organization_id)
        context = self.gather_context(request, include_approvers=True, include_vendor=True)
        result = self.gate.evaluate(request, rules, GateMode.CARDINALITY, context)
        updated, created = self._resolve_failures(request, result, actor_id, payload, now)
        updated = replace(
            updated,
            number=order_number(updated.number),
            approval_state=initial_approval_state(result.requires_dual, request.approval_state),
            # A single-approver round has no secondary approver.
            approver_secondary_id=updated.approver_secondary_id if result.requires_dual else None,
        )
        return self._commit(
            updated,
            RequestStatus.PENDING_APPROVAL,
            actor_id,
            notes,
            now,
            gate=result,
            created_overrides=created,
        )

    def _place_order(
        self,
        request: Request,
        actor_id: str,
        payload: Mapping[str, Any],
        notes: str,
        now: datetime,
    ) -> TransitionResult:
        rules = self.load_rules(request.organization_id)
        context = self.gather_context(request, evidence_kinds=ORDERING_EVIDENCE)
        result = self.gate.evaluate(request, rules, GateMode.ORDERING, context)
        updated, created = self._resolve_failures(request, result, actor_id, payload, now)
        return self._commit(updated, RequestStatus.ORDERED, actor_id, notes, now, gate=result, created_overrides=created)

    def _completion_vendor_id(self, request: Request) -> str | None:
        for quote_id in (request.selected_quote_id, request.preferred_quote_id):
            quote = request.quote(quote_id)
            if quote is not None:
                return quote.vendor_id
        if len(request.quotes) == 1:
            return request.quotes[0].vendor_id
        return None

    def _complete_order(
        self,
        request: Request,
        actor_id: str,
        payload: Mapping[str, Any],
        notes: str,
        now: datetime,
    ) -> TransitionResult:
        context = self.gather_context(request, evidence_kinds=COMPLETION_EVIDENCE)
        result = self.gate.evaluate(request, RuleSet(organization_id=request.organization_id), GateMode.COMPLETION, context)
        updated, created = self._resolve_failures(request, result, actor_id, payload, now)
        outcome = CompletionOutcome.from_payload(payload)

        warnings: list[str] = []
        decision: VendorApprovalDecision | None = None
        vendor_id = self._completion_vendor_id(request)
        if vendor_id is None:
            logger.warning("completion_vendor_unknown", extra={"request_id": request.id})
        else:
            vendor = self._reader.read("vendor_directory", self._vendors.get_vendor, vendor_id)
            decision = self._vendor_calculator.calculate(
                outcome,
                vendor_id,
                len(request.quotes),
                now,
                request_number=request.number,
                high_value=bool(vendor and vendor.is_high_value),
                durations=self._durations,
            )
            if decision is not None:
                warning = self._vendor_calculator.apply(decision, self._vendors)
                if warning:
                    warnings.append(warning)
                    decision = None

        if not outcome.satisfactory:
            issue = outcome.issue_note or "Order completed with issues"
            notes = f"{notes}\n{issue}".strip() if notes else issue
        return self._commit(
            replace(updated, completed_at=now),
            RequestStatus.COMPLETED,
            actor_id,
            notes,
            now,
            gate=result,
            created_overrides=created,
            vendor_decision=decision,
            warnings=tuple(warnings),
        )

    # -- approval ------------------------------------------------------------

    def record_approval(
        self,
        request: Request,
        approver_id: str,
        quote_id: str | None,
        justification: str | None,
    ) -> TransitionResult:
        if request.status != RequestStatus.PENDING_APPROVAL or request.approval_state is None:
            raise InvalidTransitionError(
                request.status.value,
                RequestStatus.APPROVED.value,
                code="approval_not_open",
                message_key="approval_not_open",
            )
        self.authorize(approver_id, "approve_request", request)
        lowest = lowest_quote_id(request, self._convert) if request.quotes else None
        outcome = self._coordinator.record_approval(
            request,
            approver_id,
            quote_id,
            justification,
            lowest_quote_id=lowest,
        )
        observe_workflow_approval(outcome.kind.value)
        updated = replace(request, approval_state=outcome.approval_state)
        if outcome.resolved:
            updated = replace(updated, selected_quote_id=outcome.selected_quote_id)
            return self._commit(
                updated,
                RequestStatus.APPROVED,
                approver_id,
                str(justification or "").strip(),
                self._clock(),
                approval=outcome,
            )
        return TransitionResult(request=updated, previous_status=request.status, approval=outcome)

    def reset_approval_state(self, request: Request, actor_id: str, reason: str | None) -> TransitionResult:
        if request.status != RequestStatus.PENDING_APPROVAL:
            raise InvalidTransitionError(
                request.status.value,
                RequestStatus.PENDING_APPROVAL.value,
                code="approval_reset_not_allowed",
                message_key="approval_reset_not_allowed",
            )
        self.authorize(actor_id, "reset_approval", request)
        text = str(reason or "").strip()
        if not text:
            raise ValidationFailedError(
                [GateFailure(code="reason_required", description="Resetting an approval round requires a reason")],
                overridable=False,
                code="justification_required",
                message_key="justification_required",
            )
        previous = request.approval_state
        now = self._clock()
        entry = StatusHistoryEntry(
            from_status=RequestStatus.PENDING_APPROVAL,
            to_status=RequestStatus.PENDING_APPROVAL,
            actor_id=actor_id,
            timestamp=now,
            notes=f"Approval state reset: {text}",
        )
        updated = replace(
            request,
            approval_state=initial_approval_state(bool(previous and previous.requires_dual), previous),
            selected_quote_id=None,
            status_history=request.status_history + (entry,),
        )
        logger.warning("approval_state_reset", extra={"request_id": request.id, "actor_id": actor_id})
        return TransitionResult(request=updated, previous_status=request.status, history_entry=entry)

    # -- overrides, evidence, final price -----------------------------------

    def create_override(
        self,
        request: Request,
        kind: Any,
        justification: str | None,
        actor_id: str,
        *,
        expires_at: datetime | None = None,
    ) -> Tuple[Request, Override]:
        resolved_kind = OverrideKind.parse(kind)
        if resolved_kind is not None:
            self.authorize(actor_id, f"override:{resolved_kind.value}", request)
        updated, record = self._ledger.create(request, kind, justification, actor_id, expires_at=expires_at)
        observe_workflow_override(record.kind.value)
        return updated, record

    def register_evidence(
        self,
        request: Request,
        kind: Any,
        actor_id: str,
        *,
        reference: str | None = None,
    ) -> Tuple[Request, EvidenceKind]:
        evidence_kind = EvidenceKind.parse(kind)
        if evidence_kind is None:
            raise ValidationFailedError(
                [GateFailure(code="evidence_kind_invalid", description=f"'{kind}' is not a known evidence kind")],
                overridable=False,
                code="evidence_kind_invalid",
                message_key="evidence_kind_invalid",
            )
        self.authorize(actor_id, "register_evidence", request)
        self._evidence.record_evidence(request.id, evidence_kind, actor_id=actor_id, reference=reference)
        return self._ledger.clear_for_evidence(request, evidence_kind), evidence_kind

    def record_final_price(self, request: Request, final_price: Any, actor_id: str) -> Tuple[Request, GateResult]:
        if request.status != RequestStatus.APPROVED:
            raise InvalidTransitionError(
                request.status.value,
                RequestStatus.ORDERED.value,
                details="The final price can only be recorded after approval and before ordering",
            )
        try:
            price = float(final_price)
        except (TypeError, ValueError):
            price = 0.0
        if price <= 0:
            raise ValidationFailedError(
                [GateFailure(code="final_price_invalid", description="The final price must be a positive number")],
                overridable=False,
                code="final_price_invalid",
                message_key="final_price_invalid",
            )
        self.authorize(actor_id, "record_final_price", request)
        updated = replace(request, final_price=price)
        rules = self.load_rules(request.organization_id)
        result = self.gate.evaluate(updated, rules, GateMode.PRICE_VARIANCE)
        logger.info(
            "final_price_recorded",
            extra={
                "request_id": request.id,
                "final_price": price,
                "variance_pct": result.variance_pct,
                "within_tolerance": result.ok,
                "recorded_at": format_timestamp(self._clock()),
            },
        )
        return updated, result
