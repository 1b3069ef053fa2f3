from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping

from procurement_workflow.core.event_bus import EventBus, RequestStatusChanged
from procurement_workflow.errors import ExternalDependencyUnavailableError
from procurement_workflow.infrastructure.repositories import (
    EvidenceRepository,
    RuleRepository,
    UserRepository,
    VendorRepository,
)
from procurement_workflow.infrastructure.request_store import db_timestamp
from procurement_workflow.workflow.capabilities import PermissionTier, can_override, can_reset_approval, normalize_tier
from procurement_workflow.workflow.collaborators import (
    ApproverDirectory,
    Authorization,
    CurrencyConverter,
    EvidenceStore,
    Notifier,
    RuleRegistry,
    VendorDirectory,
)
from procurement_workflow.workflow.model import (
    Approver,
    EvidenceKind,
    Request,
    RequestStatus,
    Vendor,
    parse_timestamp,
    utc_now,
)
from procurement_workflow.workflow.rules import Rule


class SqlRuleRegistry(RuleRegistry):
    def __init__(self, db, tenant_id: str) -> None:
        self.db = db
        self.repository = RuleRepository(tenant_id=tenant_id)

    def get_rules(self, organization_id: str) -> List[Rule]:
        if organization_id != self.repository.tenant_id:
            return []
        return [
            Rule(
                number=int(row["number"]),
                threshold=float(row["threshold"]),
                currency=(row.get("currency") or None),
                description=row.get("description") or "",
            )
            for row in self.repository.list_active(self.db)
        ]


class SqlEvidenceStore(EvidenceStore):
    def __init__(self, db, tenant_id: str) -> None:
        self.db = db
        self.repository = EvidenceRepository(tenant_id=tenant_id)

    def has_evidence(self, request_id: str, kind: EvidenceKind) -> bool:
        return self.repository.exists(self.db, request_id, EvidenceKind(kind).value)

    def record_evidence(
        self,
        request_id: str,
        kind: EvidenceKind,
        *,
        actor_id: str,
        reference: str | None = None,
    ) -> None:
        self.repository.add(
            self.db,
            request_id=request_id,
            kind=EvidenceKind(kind).value,
            reference=reference,
            recorded_by=actor_id,
            recorded_at=db_timestamp(utc_now()),
        )

    def list_evidence(self, request_id: str) -> List[dict]:
        return self.repository.list_for_request(self.db, request_id)


def _vendor_from_row(row: Mapping[str, Any]) -> Vendor:
    return Vendor(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        is_approved=bool(row.get("is_approved")),
        approval_date=parse_timestamp(row.get("approval_date")),
        approval_expiry=parse_timestamp(row.get("approval_expiry")),
        approval_reason=row.get("approval_reason"),
        is_high_value=bool(row.get("is_high_value")),
    )


class SqlVendorDirectory(VendorDirectory):
    def __init__(self, db, tenant_id: str) -> None:
        self.db = db
        self.repository = VendorRepository(tenant_id=tenant_id)

    def get_vendor(self, vendor_id: str) -> Vendor | None:
        row = self.repository.get_by_id(self.db, vendor_id)
        return _vendor_from_row(row) if row else None

    def set_approval(
        self,
        vendor_id: str,
        *,
        approved: bool,
        expires_at: datetime | None,
        reason: str | None,
        justification: str | None = None,
        note: str | None = None,
    ) -> None:
        now = utc_now()
        # Runs in a savepoint when called inside a request commit.
        with self.db.transaction():
            updated = self.repository.update_approval(
                self.db,
                vendor_id,
                is_approved=approved,
                approval_date=db_timestamp(now) if approved else None,
                approval_expiry=db_timestamp(expires_at),
                approval_reason=reason,
                approval_justification=justification,
                approval_note=note,
            )
            if not updated:
                raise LookupError(f"vendor {vendor_id} not found")

    def list_expired_approvals(self, now: datetime) -> List[Vendor]:
        return [_vendor_from_row(row) for row in self.repository.list_expired(self.db, db_timestamp(now))]


class SqlApproverDirectory(ApproverDirectory):
    def __init__(self, db, tenant_id: str) -> None:
        self.db = db
        self.repository = UserRepository(tenant_id=tenant_id)

    def get_approver(self, approver_id: str) -> Approver | None:
        if not approver_id:
            return None
        row = self.repository.get_by_id(self.db, approver_id)
        if row is None:
            return None
        return Approver(
            id=str(row["id"]),
            permission_tier=int(row["permission_tier"]) if row.get("permission_tier") is not None else None,
            display_name=row.get("display_name") or "",
            active=bool(row.get("active", 1)),
        )


_OPERATIONS = frozenset({PermissionTier.ADMIN, PermissionTier.PROCUREMENT})
_DECISION_MAKERS = frozenset(
    {
        PermissionTier.ADMIN,
        PermissionTier.PROCUREMENT,
        PermissionTier.SENIOR_APPROVER,
        PermissionTier.FINANCE_APPROVER,
    }
)
_FINANCE = frozenset({PermissionTier.ADMIN, PermissionTier.PROCUREMENT, PermissionTier.FINANCE_ADMIN})

# Tiers allowed to perform each action regardless of their role on the request.
ACTION_TIERS: Dict[str, FrozenSet[PermissionTier]] = {
    "submit_request": _OPERATIONS,
    "resubmit_request": _OPERATIONS,
    "cancel_request": _OPERATIONS,
    "queue_request": _OPERATIONS,
    "push_to_approval": _OPERATIONS,
    "return_to_queue": _OPERATIONS,
    "place_order": _OPERATIONS,
    "complete_order": _OPERATIONS,
    "reject_request": _DECISION_MAKERS,
    "request_revision": _DECISION_MAKERS,
    "resurrect_request": frozenset({PermissionTier.ADMIN}),
    "approve_request": frozenset(),
    "register_evidence": _FINANCE,
    "record_final_price": _FINANCE,
}
REQUESTOR_ACTIONS = frozenset({"submit_request", "resubmit_request", "cancel_request", "register_evidence"})
ASSIGNED_APPROVER_ACTIONS = frozenset({"approve_request", "reject_request", "request_revision"})


class TierAuthorization(Authorization):
    """Permission-tier authorization backed by the approver directory."""

    def __init__(self, directory: ApproverDirectory) -> None:
        self.directory = directory

    def can_perform(self, actor_id: str, action: str, request: Request) -> bool:
        if not actor_id:
            return False
        actor = self.directory.get_approver(actor_id)
        if actor is None or not actor.active:
            return False
        tier = normalize_tier(actor.permission_tier)

        if action.startswith("override:"):
            return can_override(tier, action.split(":", 1)[1])
        if action == "reset_approval":
            return can_reset_approval(tier)
        if action in ASSIGNED_APPROVER_ACTIONS and actor_id in (
            request.approver_primary_id,
            request.approver_secondary_id,
        ):
            return True
        if action in REQUESTOR_ACTIONS and actor_id == request.requestor_id:
            return True
        return tier in ACTION_TIERS.get(action, frozenset())


class StaticRateConverter(CurrencyConverter):
    """Converts through configured rates against one reference unit."""

    def __init__(self, rates: Mapping[str, float]) -> None:
        self.rates = {str(code).upper(): float(rate) for code, rate in dict(rates or {}).items()}

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        source = str(from_currency or "").upper()
        target = str(to_currency or "").upper()
        if source == target:
            return float(amount)
        if source not in self.rates or target not in self.rates:
            raise ExternalDependencyUnavailableError(
                dependency="currency_converter",
                details=f"no rate configured for {source}->{target}",
            )
        return float(amount) * self.rates[source] / self.rates[target]


class EventBusNotifier(Notifier):
    def __init__(self, event_bus: EventBus, tenant_id: str) -> None:
        self.event_bus = event_bus
        self.tenant_id = tenant_id

    def notify(
        self,
        request_id: str,
        from_status: RequestStatus | None,
        to_status: RequestStatus,
        actor_id: str | None,
        note: str = "",
    ) -> None:
        self.event_bus.publish(
            RequestStatusChanged(
                tenant_id=self.tenant_id,
                request_id=request_id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                actor_id=actor_id,
                note=note,
            )
        )
