from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping

from procurement_workflow.errors import ValidationFailedError
from procurement_workflow.workflow.collaborators import VendorDirectory
from procurement_workflow.workflow.model import Vendor, format_timestamp, to_utc
from procurement_workflow.workflow.validation_gate import GateFailure


logger = logging.getLogger("procurement_workflow.vendors")

THREE_QUOTE_MINIMUM = 3


class VendorApprovalReason(str, Enum):
    AUTO_3QUOTE = "auto_3quote"
    AUTO_COMPLETED = "auto_completed"
    MANUAL = "manual"


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    total = moment.month - 1 + int(months)
    year = moment.year + total // 12
    month = total % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class ApprovalDurations:
    three_quote_months: int = 12
    completed_months: int = 6
    manual_months: int = 12
    high_value_max_months: int = 24

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None, fallback: "ApprovalDurations | None" = None) -> "ApprovalDurations":
        base = fallback or cls()
        source = dict(values or {})

        def pick(key: str, default: int) -> int:
            raw = source.get(key)
            try:
                parsed = int(raw)
            except (TypeError, ValueError):
                return default
            return parsed if parsed > 0 else default

        return cls(
            three_quote_months=pick("vendor_approval_3quote_months", base.three_quote_months),
            completed_months=pick("vendor_approval_completed_months", base.completed_months),
            manual_months=pick("vendor_approval_manual_months", base.manual_months),
            high_value_max_months=pick("high_value_vendor_max_months", base.high_value_max_months),
        )


@dataclass(frozen=True)
class CompletionOutcome:
    satisfactory: bool
    override_despite_issues: bool = False
    justification: str | None = None
    issue_note: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "CompletionOutcome":
        data = dict(payload or {})
        failures: List[GateFailure] = []
        raw_satisfactory = data.get("satisfactory")
        if not isinstance(raw_satisfactory, bool):
            failures.append(
                GateFailure(code="outcome_required", description="State whether the order outcome was satisfactory")
            )
        satisfactory = bool(raw_satisfactory)
        override = bool(data.get("override_despite_issues", False))
        justification = str(data.get("justification") or "").strip() or None
        issue_note = str(data.get("issue_note") or data.get("notes") or "").strip() or None

        if not satisfactory and override and not justification:
            failures.append(
                GateFailure(
                    code="justification_required",
                    description="Approving a vendor despite issues requires a justification",
                )
            )
        if failures:
            raise ValidationFailedError(failures, overridable=False)
        return cls(
            satisfactory=satisfactory,
            override_despite_issues=override and not satisfactory,
            justification=justification,
            issue_note=issue_note,
        )


@dataclass(frozen=True)
class VendorApprovalDecision:
    vendor_id: str
    expires_at: datetime
    reason: VendorApprovalReason
    justification: str | None = None
    note: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "expires_at": format_timestamp(self.expires_at),
            "reason": self.reason.value,
            "justification": self.justification,
            "note": self.note,
        }


class CompletionVendorApprovalCalculator:
    """Decides the vendor trust update that follows a completed order."""

    def __init__(self, durations: ApprovalDurations | None = None) -> None:
        self.durations = durations or ApprovalDurations()

    def calculate(
        self,
        outcome: CompletionOutcome,
        vendor_id: str | None,
        quote_count: int,
        now: datetime,
        *,
        request_number: str = "",
        high_value: bool = False,
        durations: ApprovalDurations | None = None,
    ) -> VendorApprovalDecision | None:
        durations = durations or self.durations
        if not vendor_id:
            return None

        def expiry(months: int) -> datetime:
            if high_value:
                months = min(months, durations.high_value_max_months)
            return add_months(to_utc(now), months)

        if outcome.satisfactory:
            if quote_count >= THREE_QUOTE_MINIMUM:
                months, reason = durations.three_quote_months, VendorApprovalReason.AUTO_3QUOTE
            else:
                months, reason = durations.completed_months, VendorApprovalReason.AUTO_COMPLETED
            return VendorApprovalDecision(
                vendor_id=vendor_id,
                expires_at=expiry(months),
                reason=reason,
                note=f"Auto-approved after satisfactory completion of {request_number}".strip(),
            )
        if outcome.override_despite_issues:
            return VendorApprovalDecision(
                vendor_id=vendor_id,
                expires_at=expiry(durations.manual_months),
                reason=VendorApprovalReason.MANUAL,
                justification=outcome.justification,
                note=outcome.issue_note,
            )
        return None

    @staticmethod
    def apply(decision: VendorApprovalDecision, directory: VendorDirectory) -> str | None:
        """Write the decision; a failure is returned as a warning, never raised."""
        try:
            directory.set_approval(
                decision.vendor_id,
                approved=True,
                expires_at=decision.expires_at,
                reason=decision.reason.value,
                justification=decision.justification,
                note=decision.note,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "vendor_approval_update_failed",
                extra={"vendor_id": decision.vendor_id, "reason": decision.reason.value, "error": str(exc)},
            )
            return f"Vendor {decision.vendor_id} approval could not be updated: {exc}"
        logger.info(
            "vendor_approval_updated",
            extra={
                "vendor_id": decision.vendor_id,
                "reason": decision.reason.value,
                "expires_at": format_timestamp(decision.expires_at),
            },
        )
        return None


def expire_vendor_approvals(directory: VendorDirectory, now: datetime) -> List[Vendor]:
    """Revoke approvals whose expiry has passed; returns the vendors that were revoked."""
    revoked: List[Vendor] = []
    for vendor in directory.list_expired_approvals(now):
        directory.set_approval(
            vendor.id,
            approved=False,
            expires_at=None,
            reason=None,
            note=f"Approval expired on {format_timestamp(vendor.approval_expiry)}",
        )
        revoked.append(vendor)
    if revoked:
        logger.info("vendor_approvals_expired", extra={"count": len(revoked)})
    return revoked
