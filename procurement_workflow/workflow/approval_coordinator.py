from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Sequence

from procurement_workflow.errors import InvalidTransitionError, UnauthorizedError, ValidationFailedError
from procurement_workflow.workflow.model import (
    ApprovalHistoryEntry,
    ApprovalState,
    Request,
    RequestStatus,
    utc_now,
)
from procurement_workflow.workflow.validation_gate import GateFailure


logger = logging.getLogger("procurement_workflow.approvals")


class ApprovalOutcomeKind(str, Enum):
    RESOLVED = "resolved"
    PENDING = "pending"
    CONFLICT = "conflict"


class ApproverSlot(str, Enum):
    FIRST = "first"
    SECOND = "second"


NOTES_ADJUDICATION = "adjudication"
NOTES_NON_LOWEST = "non_lowest_quote"


@dataclass(frozen=True)
class ApprovalOutcome:
    kind: ApprovalOutcomeKind
    approval_state: ApprovalState
    selected_quote_id: str | None = None
    conflict_detail: Dict[str, Any] | None = None

    @property
    def resolved(self) -> bool:
        return self.kind == ApprovalOutcomeKind.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.kind.value,
            "selected_quote_id": self.selected_quote_id,
            "conflict_detail": self.conflict_detail,
            "approval_state": self.approval_state.to_dict(),
        }


def initial_approval_state(requires_dual: bool, previous: ApprovalState | None = None) -> ApprovalState:
    """A fresh approval round; earlier history entries are carried over for audit."""
    history = previous.history if previous is not None else ()
    return ApprovalState(requires_dual=bool(requires_dual), history=history)


def required_notes(requires_dual: bool, quote_id: str | None, lowest_quote_id: str | None) -> List[str]:
    reasons: List[str] = []
    if requires_dual:
        reasons.append(NOTES_ADJUDICATION)
    if quote_id is not None and lowest_quote_id is not None and quote_id != lowest_quote_id:
        reasons.append(NOTES_NON_LOWEST)
    return reasons


_NOTES_DESCRIPTIONS = {
    NOTES_ADJUDICATION: "Adjudication notes are required when two approvers must sign off",
    NOTES_NON_LOWEST: "A justification is required when the selected quote is not the lowest",
}


class ApprovalCoordinator:
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    @staticmethod
    def slot_for(request: Request, approver_id: str) -> ApproverSlot:
        if approver_id and approver_id == request.approver_primary_id:
            return ApproverSlot.FIRST
        state = request.approval_state
        if state is not None and state.requires_dual and approver_id and approver_id == request.approver_secondary_id:
            return ApproverSlot.SECOND
        raise UnauthorizedError(
            code="approver_not_assigned",
            message_key="approver_not_assigned",
            details=f"{approver_id} is not an assigned approver of request {request.id}",
        )

    @staticmethod
    def _open_state(request: Request) -> ApprovalState:
        if request.status != RequestStatus.PENDING_APPROVAL or request.approval_state is None:
            raise InvalidTransitionError(
                request.status.value,
                RequestStatus.APPROVED.value,
                code="approval_not_open",
                message_key="approval_not_open",
            )
        return request.approval_state

    @staticmethod
    def _resolve_quote(request: Request, quote_id: str | None) -> str | None:
        if quote_id:
            if request.quote(quote_id) is None:
                raise ValidationFailedError(
                    [GateFailure(code="quote_not_found", description=f"Quote {quote_id} does not belong to this request")],
                    overridable=False,
                    code="quote_not_found",
                    message_key="quote_not_found",
                )
            return quote_id
        if request.preferred_quote_id and request.quote(request.preferred_quote_id) is not None:
            return request.preferred_quote_id
        if len(request.quotes) == 1:
            return request.quotes[0].id
        return None

    def record_approval(
        self,
        request: Request,
        approver_id: str,
        quote_id: str | None,
        justification: str | None,
        *,
        lowest_quote_id: str | None,
    ) -> ApprovalOutcome:
        state = self._open_state(request)
        slot = self.slot_for(request, approver_id)
        selected = self._resolve_quote(request, quote_id)
        notes = str(justification or "").strip()

        reasons = required_notes(state.requires_dual, selected, lowest_quote_id)
        if reasons and not notes:
            raise ValidationFailedError(
                [GateFailure(code=f"justification_required_{reason}", description=_NOTES_DESCRIPTIONS[reason]) for reason in reasons],
                overridable=False,
                code="justification_required",
                message_key="justification_required",
                payload={"notes_required_for": reasons},
            )

        entry = ApprovalHistoryEntry(
            approver_id=approver_id,
            approved=True,
            quote_id=selected,
            timestamp=self._clock(),
            notes=notes,
        )
        if slot == ApproverSlot.FIRST:
            changes = {"first_complete": True, "first_selected_quote_id": selected, "first_justification": notes or None}
        else:
            changes = {"second_complete": True, "second_selected_quote_id": selected, "second_justification": notes or None}
        updated = state.with_entry(entry, **changes)

        if not updated.requires_dual:
            outcome = ApprovalOutcome(ApprovalOutcomeKind.RESOLVED, updated, selected_quote_id=selected)
        elif not (updated.first_complete and updated.second_complete):
            outcome = ApprovalOutcome(ApprovalOutcomeKind.PENDING, updated)
        elif updated.first_selected_quote_id == updated.second_selected_quote_id:
            updated = replace(updated, conflict=False)
            outcome = ApprovalOutcome(
                ApprovalOutcomeKind.RESOLVED,
                updated,
                selected_quote_id=updated.first_selected_quote_id,
            )
        else:
            updated = replace(updated, conflict=True)
            outcome = ApprovalOutcome(
                ApprovalOutcomeKind.CONFLICT,
                updated,
                conflict_detail={
                    "first_approver_id": request.approver_primary_id,
                    "first_quote_id": updated.first_selected_quote_id,
                    "second_approver_id": request.approver_secondary_id,
                    "second_quote_id": updated.second_selected_quote_id,
                },
            )

        logger.info(
            "approval_recorded",
            extra={
                "request_id": request.id,
                "approver_id": approver_id,
                "approver_slot": slot.value,
                "quote_id": selected,
                "outcome": outcome.kind.value,
            },
        )
        return outcome

    def record_decline(self, request: Request, approver_id: str, notes: str) -> ApprovalState | None:
        """Append a decline to the history of an open approval round, if the actor is an approver."""
        state = request.approval_state
        if state is None or request.status != RequestStatus.PENDING_APPROVAL:
            return state
        try:
            self.slot_for(request, approver_id)
        except UnauthorizedError:
            return state
        entry = ApprovalHistoryEntry(
            approver_id=approver_id,
            approved=False,
            quote_id=None,
            timestamp=self._clock(),
            notes=str(notes or "").strip(),
        )
        return state.with_entry(entry)


def conflicted_approver_ids(request: Request) -> Sequence[str]:
    state = request.approval_state
    if state is None or not state.conflict:
        return ()
    return tuple(item for item in (request.approver_primary_id, request.approver_secondary_id) if item)
