from __future__ import annotations

from typing import Dict, List, Sequence

from procurement_workflow.workflow.model import RequestStatus, StatusHistoryEntry


S = RequestStatus


PROCESS_STAGES: List[Dict[str, str]] = [
    {"key": "request", "label": "Request"},
    {"key": "queue", "label": "Procurement queue"},
    {"key": "approval", "label": "Approval"},
    {"key": "order", "label": "Order"},
    {"key": "completion", "label": "Completion"},
]


ACTION_LABELS: Dict[str, str] = {
    "submit_request": "Submit request",
    "queue_request": "Move to procurement queue",
    "push_to_approval": "Send for approval",
    "return_to_queue": "Return to procurement queue",
    "approve_request": "Approve",
    "reject_request": "Reject",
    "request_revision": "Request revision",
    "resubmit_request": "Resubmit",
    "cancel_request": "Cancel",
    "place_order": "Place order",
    "complete_order": "Complete order",
    "resurrect_request": "Reopen request",
}


# Every permitted edge and the action an actor must be authorized for to take it.
TRANSITIONS: Dict[RequestStatus, Dict[RequestStatus, str]] = {
    S.DRAFT: {
        S.SUBMITTED: "submit_request",
        S.IN_QUEUE: "queue_request",
        S.REJECTED: "reject_request",
        S.REVISION_REQUIRED: "request_revision",
        S.CANCELED: "cancel_request",
    },
    S.SUBMITTED: {
        S.IN_QUEUE: "queue_request",
        S.REJECTED: "reject_request",
        S.REVISION_REQUIRED: "request_revision",
        S.CANCELED: "cancel_request",
    },
    S.RESUBMITTED: {
        S.IN_QUEUE: "queue_request",
        S.REJECTED: "reject_request",
        S.REVISION_REQUIRED: "request_revision",
        S.CANCELED: "cancel_request",
    },
    S.IN_QUEUE: {
        S.PENDING_APPROVAL: "push_to_approval",
        S.REJECTED: "reject_request",
        S.REVISION_REQUIRED: "request_revision",
    },
    S.PENDING_APPROVAL: {
        S.APPROVED: "approve_request",
        S.REJECTED: "reject_request",
        S.REVISION_REQUIRED: "request_revision",
        S.IN_QUEUE: "return_to_queue",
    },
    S.APPROVED: {
        S.ORDERED: "place_order",
        S.CANCELED: "cancel_request",
    },
    S.ORDERED: {
        S.COMPLETED: "complete_order",
    },
    S.REVISION_REQUIRED: {
        S.RESUBMITTED: "resubmit_request",
        S.REJECTED: "reject_request",
        S.CANCELED: "cancel_request",
    },
    S.REJECTED: {
        S.SUBMITTED: "resurrect_request",
        S.IN_QUEUE: "resurrect_request",
        S.PENDING_APPROVAL: "resurrect_request",
    },
    S.CANCELED: {
        S.SUBMITTED: "resurrect_request",
    },
    S.COMPLETED: {},
}

# Transitions into these states must carry a written note.
NOTES_REQUIRED_TARGETS = frozenset({S.REJECTED, S.REVISION_REQUIRED})

RESURRECTION_SOURCES = frozenset({S.REJECTED, S.CANCELED})
_REJECTION_RESURRECTION_CANDIDATES = (S.SUBMITTED, S.IN_QUEUE, S.PENDING_APPROVAL)


def allowed_targets(status: RequestStatus | None) -> List[RequestStatus]:
    if status is None:
        return []
    return list(TRANSITIONS.get(status, {}).keys())


def edge_action(from_status: RequestStatus, to_status: RequestStatus) -> str | None:
    return TRANSITIONS.get(from_status, {}).get(to_status)


def is_terminal(status: RequestStatus) -> bool:
    return not TRANSITIONS.get(status)


def resurrection_target(status: RequestStatus, history: Sequence[StatusHistoryEntry]) -> RequestStatus | None:
    """The only state a rejected or canceled request may be reopened into.

    A rejected request returns to the most recent of SUBMITTED, IN_QUEUE or
    PENDING_APPROVAL it passed through (SUBMITTED when none is found); a canceled
    request always restarts at SUBMITTED.
    """
    if status == S.CANCELED:
        return S.SUBMITTED
    if status != S.REJECTED:
        return None
    for entry in reversed(history):
        if entry.to_status in _REJECTION_RESURRECTION_CANDIDATES:
            return entry.to_status
    return S.SUBMITTED


def action_label(action: str, fallback: str | None = None) -> str:
    label = ACTION_LABELS.get(action)
    if label:
        return label
    if fallback is not None:
        return fallback
    return action


def stage_for_status(status: RequestStatus | None) -> str:
    mapping = {
        S.DRAFT: "request",
        S.SUBMITTED: "request",
        S.RESUBMITTED: "request",
        S.REVISION_REQUIRED: "request",
        S.CANCELED: "request",
        S.IN_QUEUE: "queue",
        S.REJECTED: "approval",
        S.PENDING_APPROVAL: "approval",
        S.APPROVED: "order",
        S.ORDERED: "order",
        S.COMPLETED: "completion",
    }
    return mapping.get(status, "request")


def _stage_index(stage: str) -> int:
    for idx, item in enumerate(PROCESS_STAGES):
        if item["key"] == stage:
            return idx
    return 0


def build_process_steps(current_stage: str) -> List[Dict[str, object]]:
    current_idx = _stage_index(current_stage)
    steps: List[Dict[str, object]] = []
    for idx, stage in enumerate(PROCESS_STAGES):
        state = "future"
        if idx < current_idx:
            state = "completed"
        elif idx == current_idx:
            state = "current"
        steps.append(
            {
                "key": stage["key"],
                "label": stage["label"],
                "state": state,
            }
        )
    return steps


def flow_meta(status: RequestStatus | None, history: Sequence[StatusHistoryEntry] = ()) -> Dict[str, object]:
    targets = allowed_targets(status)
    if status in RESURRECTION_SOURCES:
        target = resurrection_target(status, history)
        targets = [target] if target is not None else []
    stage = stage_for_status(status)
    transitions = []
    for target in targets:
        action = edge_action(status, target) or ""
        transitions.append({"to_status": target.value, "action": action, "label": action_label(action)})
    return {
        "stage": stage,
        "status": status.value if status else None,
        "allowed_transitions": transitions,
        "process_steps": build_process_steps(stage),
    }
