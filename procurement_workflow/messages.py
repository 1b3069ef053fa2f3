from __future__ import annotations

from typing import Dict


STATUS_LABELS: Dict[str, str] = {
    "DRAFT": "Draft",
    "SUBMITTED": "Submitted",
    "RESUBMITTED": "Resubmitted",
    "IN_QUEUE": "In procurement queue",
    "PENDING_APPROVAL": "Pending approval",
    "APPROVED": "Approved",
    "ORDERED": "Ordered",
    "COMPLETED": "Completed",
    "REVISION_REQUIRED": "Revision required",
    "REJECTED": "Rejected",
    "CANCELED": "Canceled",
}


OVERRIDE_HINTS: Dict[bool, str] = {
    True: "These checks may be overridden by an authorized user with a recorded justification.",
    False: "These checks cannot be overridden; correct the request and try again.",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "error": {
        "action_invalid": "Invalid action for this operation.",
        "actor_required": "An acting user must be identified for this operation.",
        "approval_not_open": "Approvals can only be recorded while the request is pending approval.",
        "approval_reset_not_allowed": "The approval state can only be reset while the request is pending approval.",
        "approver_not_assigned": "Only the approvers assigned to this request may record an approval.",
        "concurrent_modification": "The request was changed by someone else. Reload it and try again.",
        "evidence_kind_invalid": "Unknown evidence kind.",
        "external_dependency_unavailable": "A required service is temporarily unavailable. Please try again shortly.",
        "final_price_invalid": "The final price must be a positive number.",
        "invalid_transition": "This status change is not allowed from the current status.",
        "justification_required": "A written justification is required for this action.",
        "override_kind_invalid": "This check cannot be overridden.",
        "permission_denied": "You do not have permission to perform this action.",
        "quote_not_found": "The selected quote does not belong to this request.",
        "request_invalid": "The purchase request payload is invalid.",
        "request_not_found": "Purchase request not found.",
        "unexpected_error": "The operation could not be completed.",
        "validation_failed": "The request does not satisfy the required business rules.",
        "variance_failed": "The final price differs from the approved amount beyond the allowed tolerance.",
    },
    "success": {
        "approval_pending": "Approval recorded. Waiting for the second approver.",
        "approval_conflict": "Approvers selected different quotes. Each approver must revisit the decision.",
        "approval_resolved": "Approval complete.",
        "approval_reset": "Approval state reset.",
        "evidence_registered": "Evidence registered.",
        "final_price_recorded": "Final price recorded.",
        "override_created": "Override recorded.",
        "request_created": "Purchase request created.",
        "transition_committed": "Status updated.",
        "transition_replayed": "Status already applied.",
    },
}


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def override_hint(overridable: bool) -> str:
    return OVERRIDE_HINTS[bool(overridable)]


def status_label(status: str | None) -> str:
    key = str(status or "").strip()
    return STATUS_LABELS.get(key, key)
