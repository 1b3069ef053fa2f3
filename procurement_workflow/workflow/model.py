from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    resolved = to_utc(value)
    if resolved is None:
        return None
    return resolved.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    raw = str(value).strip()
    if not raw:
        return None
    normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        return to_utc(datetime.fromisoformat(normalized))
    except ValueError:
        return None


class RequestStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    RESUBMITTED = "RESUBMITTED"
    IN_QUEUE = "IN_QUEUE"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    ORDERED = "ORDERED"
    COMPLETED = "COMPLETED"
    REVISION_REQUIRED = "REVISION_REQUIRED"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"

    @classmethod
    def parse(cls, value: Any) -> "RequestStatus | None":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError:
            return None


class OverrideKind(str, Enum):
    QUOTE_REQUIREMENT = "quoteRequirement"
    PROFORMA = "proforma"
    PROOF_OF_PAYMENT = "proofOfPayment"
    PO_DOCUMENT = "poDocument"
    RULE_VALIDATION = "ruleValidation"
    FINAL_PRICE_VARIANCE = "finalPriceVariance"
    DELIVERY_DOCUMENTATION = "deliveryDocumentation"

    @classmethod
    def parse(cls, value: Any) -> "OverrideKind | None":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip()
        for kind in cls:
            if kind.value.lower() == normalized.lower():
                return kind
        return None


class EvidenceKind(str, Enum):
    PROFORMA = "proforma"
    PROOF_OF_PAYMENT = "proofOfPayment"
    PO_DOCUMENT = "poDocument"
    DELIVERY_DOCUMENTATION = "deliveryDocumentation"
    ESTIMATED_DELIVERY_DATE = "estimatedDeliveryDate"

    @classmethod
    def parse(cls, value: Any) -> "EvidenceKind | None":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip()
        for kind in cls:
            if kind.value.lower() == normalized.lower():
                return kind
        return None


# Uploading evidence supersedes the override that was standing in for it.
EVIDENCE_OVERRIDE_KIND: Dict[EvidenceKind, OverrideKind] = {
    EvidenceKind.PROFORMA: OverrideKind.PROFORMA,
    EvidenceKind.PROOF_OF_PAYMENT: OverrideKind.PROOF_OF_PAYMENT,
    EvidenceKind.PO_DOCUMENT: OverrideKind.PO_DOCUMENT,
    EvidenceKind.DELIVERY_DOCUMENTATION: OverrideKind.DELIVERY_DOCUMENTATION,
}


@dataclass(frozen=True)
class Quote:
    id: str
    vendor_id: str
    amount: float
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "vendor_id": self.vendor_id, "amount": self.amount, "currency": self.currency}


@dataclass(frozen=True)
class Override:
    kind: OverrideKind
    justification: str
    by_actor_id: str
    at_timestamp: datetime
    expires_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or to_utc(now) < to_utc(self.expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "justification": self.justification,
            "by_actor_id": self.by_actor_id,
            "at_timestamp": format_timestamp(self.at_timestamp),
            "expires_at": format_timestamp(self.expires_at),
        }


@dataclass(frozen=True)
class StatusHistoryEntry:
    from_status: RequestStatus | None
    to_status: RequestStatus
    actor_id: str | None
    timestamp: datetime
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "actor_id": self.actor_id,
            "timestamp": format_timestamp(self.timestamp),
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ApprovalHistoryEntry:
    approver_id: str
    approved: bool
    quote_id: str | None
    timestamp: datetime
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approver_id": self.approver_id,
            "approved": self.approved,
            "quote_id": self.quote_id,
            "timestamp": format_timestamp(self.timestamp),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApprovalHistoryEntry":
        return cls(
            approver_id=str(data.get("approver_id") or ""),
            approved=bool(data.get("approved")),
            quote_id=data.get("quote_id"),
            timestamp=parse_timestamp(data.get("timestamp")) or utc_now(),
            notes=str(data.get("notes") or ""),
        )


@dataclass(frozen=True)
class ApprovalState:
    """Progress of the approval step.

    Instances are never mutated; every change produces a new state so a half-applied
    update can never be observed.
    """

    requires_dual: bool = False
    first_complete: bool = False
    second_complete: bool = False
    first_selected_quote_id: str | None = None
    second_selected_quote_id: str | None = None
    first_justification: str | None = None
    second_justification: str | None = None
    conflict: bool = False
    history: Tuple[ApprovalHistoryEntry, ...] = ()

    @property
    def complete(self) -> bool:
        if self.requires_dual:
            return self.first_complete and self.second_complete and not self.conflict
        return self.first_complete

    def with_entry(self, entry: ApprovalHistoryEntry, **changes: Any) -> "ApprovalState":
        return replace(self, history=self.history + (entry,), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_dual": self.requires_dual,
            "first_complete": self.first_complete,
            "second_complete": self.second_complete,
            "first_selected_quote_id": self.first_selected_quote_id,
            "second_selected_quote_id": self.second_selected_quote_id,
            "first_justification": self.first_justification,
            "second_justification": self.second_justification,
            "conflict": self.conflict,
            "history": [entry.to_dict() for entry in self.history],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ApprovalState | None":
        if not data:
            return None
        return cls(
            requires_dual=bool(data.get("requires_dual")),
            first_complete=bool(data.get("first_complete")),
            second_complete=bool(data.get("second_complete")),
            first_selected_quote_id=data.get("first_selected_quote_id"),
            second_selected_quote_id=data.get("second_selected_quote_id"),
            first_justification=data.get("first_justification"),
            second_justification=data.get("second_justification"),
            conflict=bool(data.get("conflict")),
            history=tuple(ApprovalHistoryEntry.from_dict(item) for item in data.get("history") or ()),
        )


@dataclass(frozen=True)
class Vendor:
    id: str
    name: str = ""
    is_approved: bool = False
    approval_date: datetime | None = None
    approval_expiry: datetime | None = None
    approval_reason: str | None = None
    is_high_value: bool = False

    def approval_active(self, now: datetime) -> bool:
        if not self.is_approved:
            return False
        if self.approval_expiry is None:
            return True
        return to_utc(now) < to_utc(self.approval_expiry)


@dataclass(frozen=True)
class Approver:
    id: str
    permission_tier: int | None
    display_name: str = ""
    active: bool = True


@dataclass(frozen=True)
class Request:
    id: str
    number: str
    organization_id: str
    amount: float
    currency: str
    status: RequestStatus
    requestor_id: str | None = None
    approver_primary_id: str | None = None
    approver_secondary_id: str | None = None
    quotes: Tuple[Quote, ...] = ()
    preferred_quote_id: str | None = None
    selected_quote_id: str | None = None
    approval_state: ApprovalState | None = None
    overrides: Mapping[OverrideKind, Override] = field(default_factory=dict)
    status_history: Tuple[StatusHistoryEntry, ...] = ()
    final_price: float | None = None
    completed_at: datetime | None = None
    version: int = 0

    def quote(self, quote_id: str | None) -> Quote | None:
        if not quote_id:
            return None
        for quote in self.quotes:
            if quote.id == quote_id:
                return quote
        return None

    @property
    def preferred_quote(self) -> Quote | None:
        return self.quote(self.preferred_quote_id)

    @property
    def last_history_entry(self) -> StatusHistoryEntry | None:
        return self.status_history[-1] if self.status_history else None

    def active_overrides(self, now: datetime) -> Dict[OverrideKind, Override]:
        return {kind: record for kind, record in self.overrides.items() if record.is_active(now)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "organization_id": self.organization_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "requestor_id": self.requestor_id,
            "approver_primary_id": self.approver_primary_id,
            "approver_secondary_id": self.approver_secondary_id,
            "quotes": [quote.to_dict() for quote in self.quotes],
            "preferred_quote_id": self.preferred_quote_id,
            "selected_quote_id": self.selected_quote_id,
            "approval_state": self.approval_state.to_dict() if self.approval_state else None,
            "overrides": [record.to_dict() for record in self.overrides.values()],
            "final_price": self.final_price,
            "completed_at": format_timestamp(self.completed_at),
            "version": self.version,
        }
