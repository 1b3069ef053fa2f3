from __future__ import annotations

import contextlib
import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Mapping, Tuple

from procurement_workflow.core.event_bus import (
    ApprovalRecorded,
    EventBus,
    OverrideCreated,
    QuoteConflictDetected,
    VendorApprovalChanged,
    get_event_bus,
)
from procurement_workflow.errors import (
    AppError,
    ConcurrentModificationError,
    NotFoundError,
    ValidationFailedError,
)
from procurement_workflow.observability import (
    observe_vendor_approval,
    observe_workflow_concurrent_update,
    observe_workflow_transition,
)
from procurement_workflow.workflow.approval_coordinator import ApprovalOutcomeKind
from procurement_workflow.workflow.collaborators import Notifier, VendorDirectory
from procurement_workflow.workflow.model import (
    ApprovalState,
    Override,
    Quote,
    Request,
    RequestStatus,
    StatusHistoryEntry,
    Vendor,
    parse_timestamp,
    utc_now,
)
from procurement_workflow.workflow.store import RequestStore
from procurement_workflow.workflow.transition_controller import TransitionController, TransitionResult
from procurement_workflow.workflow.validation_gate import GateFailure, GateResult
from procurement_workflow.workflow.vendor_approval import expire_vendor_approvals


logger = logging.getLogger("procurement_workflow.service")

INITIAL_STATUSES = (RequestStatus.DRAFT, RequestStatus.SUBMITTED)


class RequestLockRegistry:
    """One lock per request id, dropped when nobody holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_REQUEST_LOCKS = RequestLockRegistry()


def _invalid(code: str, description: str) -> GateFailure:
    return GateFailure(code=code, description=description)


class WorkflowService:
    """Runs engine operations against stored requests.

    Every mutation loads the request, lets the controller compute the next state and
    commits it in one transaction guarded by the request's version. Notifications and
    domain events go out only after the commit, and their failures never undo it.
    """

    def __init__(
        self,
        *,
        organization_id: str,
        store: RequestStore,
        controller: TransitionController,
        notifier: Notifier,
        vendors: VendorDirectory,
        event_bus: EventBus | None = None,
        locks: RequestLockRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.organization_id = organization_id
        self.store = store
        self.controller = controller
        self.notifier = notifier
        self.vendors = vendors
        self.event_bus = event_bus or get_event_bus()
        self.locks = locks or _REQUEST_LOCKS
        self._clock = clock

    # -- reads ---------------------------------------------------------------

    def get_request(self, request_id: str) -> Request:
        request = self.store.load(request_id)
        if request is None:
            raise NotFoundError(details=f"request {request_id} not found", payload={"request_id": request_id})
        return request

    def get_status_history(self, request_id: str) -> List[StatusHistoryEntry]:
        return list(self.get_request(request_id).status_history)

    def get_approval_state(self, request_id: str) -> ApprovalState | None:
        return self.get_request(request_id).approval_state

    # -- creation ------------------------------------------------------------

    def create_request(self, payload: Mapping[str, Any], actor_id: str) -> Request:
        data = dict(payload or {})
        failures: List[GateFailure] = []

        try:
            amount = float(data.get("amount"))
        except (TypeError, ValueError):
            amount = 0.0
        if amount <= 0:
            failures.append(_invalid("amount_invalid", "The request amount must be a positive number"))
        currency = str(data.get("currency") or "").strip().upper()
        if not currency:
            failures.append(_invalid("currency_required", "A currency code is required"))

        status = RequestStatus.parse(data.get("status") or RequestStatus.DRAFT.value)
        if status not in INITIAL_STATUSES:
            failures.append(_invalid("status_invalid", "New requests start in DRAFT or SUBMITTED"))

        quotes: List[Quote] = []
        for index, raw in enumerate(data.get("quotes") or [], start=1):
            if not isinstance(raw, Mapping):
                failures.append(_invalid("quote_invalid", f"Quote {index} must be an object"))
                continue
            vendor_id = str(raw.get("vendor_id") or "").strip()
            try:
                quote_amount = float(raw.get("amount"))
            except (TypeError, ValueError):
                quote_amount = 0.0
            if not vendor_id or quote_amount <= 0:
                failures.append(_invalid("quote_invalid", f"Quote {index} needs a vendor and a positive amount"))
                continue
            quotes.append(
                Quote(
                    id=str(raw.get("id") or f"q{index}"),
                    vendor_id=vendor_id,
                    amount=quote_amount,
                    currency=str(raw.get("currency") or currency).strip().upper(),
                )
            )
        if len({quote.id for quote in quotes}) != len(quotes):
            failures.append(_invalid("quote_duplicate", "Quote ids must be unique within a request"))

        preferred = str(data.get("preferred_quote_id") or "").strip() or None
        if preferred and preferred not in {quote.id for quote in quotes}:
            failures.append(_invalid("preferred_quote_unknown", f"Preferred quote {preferred} is not among the quotes"))

        if failures:
            raise ValidationFailedError(failures, overridable=False, code="request_invalid", message_key="request_invalid")

        now = self._clock()
        with self.store.transaction():
            request = Request(
                id=uuid.uuid4().hex,
                number=self.store.next_number(now),
                organization_id=self.organization_id,
                amount=amount,
                currency=currency,
                status=status,
                requestor_id=str(data.get("requestor_id") or actor_id or "").strip() or None,
                approver_primary_id=str(data.get("approver_primary_id") or "").strip() or None,
                approver_secondary_id=str(data.get("approver_secondary_id") or "").strip() or None,
                quotes=tuple(quotes),
                preferred_quote_id=preferred,
                status_history=(
                    StatusHistoryEntry(
                        from_status=None,
                        to_status=status,
                        actor_id=actor_id,
                        timestamp=now,
                        notes=str(data.get("notes") or "").strip(),
                    ),
                ),
            )
            created = self.store.create(request)

        logger.info(
            "request_created",
            extra={"request_id": created.id, "number": created.number, "status": created.status.value},
        )
        self._notify(created, None, created.status, actor_id, "")
        return created

    # -- mutations -----------------------------------------------------------

    def _mutate(self, request_id: str, operation: Callable[[Request], Tuple[Request, Any]]) -> Tuple[Request, Any]:
        with self.locks.hold(request_id):
            try:
                with self.store.transaction():
                    previous = self.get_request(request_id)
                    updated, outcome = operation(previous)
                    if updated is previous:
                        return previous, outcome
                    saved = self.store.save(previous, updated)
            except ConcurrentModificationError:
                observe_workflow_concurrent_update()
                raise
        return saved, outcome

    def request_transition(
        self,
        request_id: str,
        target: Any,
        actor_id: str,
        payload: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        def operation(request: Request) -> Tuple[Request, TransitionResult]:
            result = self.controller.request_transition(request, target, actor_id, payload)
            return (result.request if result.changed else request), result

        return self._run_transition(request_id, str(target), operation)

    def record_approval(
        self,
        request_id: str,
        approver_id: str,
        quote_id: str | None = None,
        justification: str | None = None,
    ) -> TransitionResult:
        def operation(request: Request) -> Tuple[Request, TransitionResult]:
            result = self.controller.record_approval(request, approver_id, quote_id, justification)
            return result.request, result

        return self._run_transition(request_id, RequestStatus.APPROVED.value, operation)

    def reset_approval_state(self, request_id: str, actor_id: str, reason: str | None) -> TransitionResult:
        def operation(request: Request) -> Tuple[Request, TransitionResult]:
            result = self.controller.reset_approval_state(request, actor_id, reason)
            return result.request, result

        return self._run_transition(request_id, RequestStatus.PENDING_APPROVAL.value, operation)

    def _run_transition(
        self,
        request_id: str,
        target_label: str,
        operation: Callable[[Request], Tuple[Request, TransitionResult]],
    ) -> TransitionResult:
        current_status = "unknown"

        def tracked(request: Request) -> Tuple[Request, TransitionResult]:
            nonlocal current_status
            current_status = request.status.value
            return operation(request)

        try:
            saved, result = self._mutate(request_id, tracked)
        except AppError as exc:
            observe_workflow_transition(current_status, target_label, exc.code)
            logger.warning(
                "transition_refused",
                extra={
                    "request_id": request_id,
                    "from_status": current_status,
                    "to_status": target_label,
                    "error_code": exc.code,
                },
            )
            raise

        result = replace(result, request=saved)
        if result.replayed:
            observe_workflow_transition(result.previous_status.value, saved.status.value, "replayed")
            return result
        observe_workflow_transition(result.previous_status.value, saved.status.value, "committed")
        self._after_commit(result)
        return result

    def _after_commit(self, result: TransitionResult) -> None:
        request = result.request
        entry = result.history_entry
        if entry is not None:
            logger.info(
                "transition_committed",
                extra={
                    "request_id": request.id,
                    "number": request.number,
                    "from_status": result.previous_status.value,
                    "to_status": request.status.value,
                    "actor_id": entry.actor_id,
                    "version": request.version,
                },
            )
        for record in result.created_overrides:
            self._publish(
                OverrideCreated(
                    tenant_id=self.organization_id,
                    request_id=request.id,
                    kind=record.kind.value,
                    actor_id=record.by_actor_id,
                )
            )

        approval = result.approval
        if approval is not None:
            latest = approval.approval_state.history[-1] if approval.approval_state.history else None
            self._publish(
                ApprovalRecorded(
                    tenant_id=self.organization_id,
                    request_id=request.id,
                    approver_id=latest.approver_id if latest else "",
                    outcome=approval.kind.value,
                    quote_id=latest.quote_id if latest else None,
                )
            )
            if approval.kind == ApprovalOutcomeKind.CONFLICT:
                self._publish_conflict(request, reminder=False)

        decision = result.vendor_decision
        if decision is not None:
            observe_vendor_approval(decision.reason.value)
            self._publish(
                VendorApprovalChanged(
                    tenant_id=self.organization_id,
                    vendor_id=decision.vendor_id,
                    approved=True,
                    reason=decision.reason.value,
                    expires_at=decision.expires_at,
                )
            )

        if result.status_changed and entry is not None:
            self._notify(request, result.previous_status, request.status, entry.actor_id, entry.notes)

    def create_override(
        self,
        request_id: str,
        kind: Any,
        justification: str | None,
        actor_id: str,
        *,
        expires_at: Any = None,
    ) -> Tuple[Request, Override]:
        expiry = parse_timestamp(expires_at) if expires_at else None
        if expires_at and expiry is None:
            raise ValidationFailedError(
                [_invalid("expires_at_invalid", "expires_at must be an ISO-8601 timestamp")],
                overridable=False,
            )

        def operation(request: Request) -> Tuple[Request, Override]:
            return self.controller.create_override(request, kind, justification, actor_id, expires_at=expiry)

        saved, record = self._mutate(request_id, operation)
        self._publish(
            OverrideCreated(tenant_id=self.organization_id, request_id=saved.id, kind=record.kind.value, actor_id=actor_id)
        )
        return saved, record

    def register_evidence(
        self,
        request_id: str,
        kind: Any,
        actor_id: str,
        *,
        reference: str | None = None,
    ) -> Request:
        def operation(request: Request):
            return self.controller.register_evidence(request, kind, actor_id, reference=reference)

        saved, evidence_kind = self._mutate(request_id, operation)
        logger.info(
            "evidence_registered",
            extra={"request_id": saved.id, "evidence_kind": evidence_kind.value, "actor_id": actor_id},
        )
        return saved

    def record_final_price(self, request_id: str, final_price: Any, actor_id: str) -> Tuple[Request, GateResult]:
        def operation(request: Request):
            return self.controller.record_final_price(request, final_price, actor_id)

        return self._mutate(request_id, operation)

    # -- housekeeping --------------------------------------------------------

    def send_quote_conflict_reminders(self) -> int:
        sent = 0
        for request in self.store.list_by_status(RequestStatus.PENDING_APPROVAL):
            if request.approval_state is None or not request.approval_state.conflict:
                continue
            self._publish_conflict(request, reminder=True)
            sent += 1
        if sent:
            logger.info("quote_conflict_reminders_sent", extra={"organization_id": self.organization_id, "count": sent})
        return sent

    def expire_vendor_approvals(self) -> List[Vendor]:
        with self.store.transaction():
            revoked = expire_vendor_approvals(self.vendors, self._clock())
        for vendor in revoked:
            self._publish(
                VendorApprovalChanged(tenant_id=self.organization_id, vendor_id=vendor.id, approved=False)
            )
        return revoked

    # -- side effects --------------------------------------------------------

    def _publish(self, event) -> None:
        self.event_bus.publish(event)

    def _publish_conflict(self, request: Request, *, reminder: bool) -> None:
        state = request.approval_state
        self._publish(
            QuoteConflictDetected(
                tenant_id=self.organization_id,
                request_id=request.id,
                first_approver_id=request.approver_primary_id,
                first_quote_id=state.first_selected_quote_id if state else None,
                second_approver_id=request.approver_secondary_id,
                second_quote_id=state.second_selected_quote_id if state else None,
                reminder=reminder,
            )
        )

    def _notify(
        self,
        request: Request,
        from_status: RequestStatus | None,
        to_status: RequestStatus,
        actor_id: str | None,
        note: str,
    ) -> None:
        try:
            self.notifier.notify(request.id, from_status, to_status, actor_id, note)
        except Exception:  # noqa: BLE001
            logger.exception(
                "notification_failed",
                extra={"request_id": request.id, "to_status": to_status.value},
            )
