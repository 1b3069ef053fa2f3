from __future__ import annotations

from typing import Any, Callable, Mapping

from procurement_workflow.application.workflow_service import WorkflowService
from procurement_workflow.config import parse_currency_rates
from procurement_workflow.core.event_bus import EventBus, get_event_bus
from procurement_workflow.infrastructure.collaborators import (
    EventBusNotifier,
    SqlApproverDirectory,
    SqlEvidenceStore,
    SqlRuleRegistry,
    SqlVendorDirectory,
    StaticRateConverter,
    TierAuthorization,
)
from procurement_workflow.infrastructure.repositories import OrganizationRepository
from procurement_workflow.infrastructure.request_store import SqlRequestStore
from procurement_workflow.workflow.model import utc_now
from procurement_workflow.workflow.retry import BoundedReader, RetryPolicy
from procurement_workflow.workflow.transition_controller import TransitionController
from procurement_workflow.workflow.vendor_approval import ApprovalDurations


def durations_from_config(config: Mapping[str, Any]) -> ApprovalDurations:
    return ApprovalDurations(
        three_quote_months=int(config.get("VENDOR_APPROVAL_3QUOTE_MONTHS", 12)),
        completed_months=int(config.get("VENDOR_APPROVAL_COMPLETED_MONTHS", 6)),
        manual_months=int(config.get("VENDOR_APPROVAL_MANUAL_MONTHS", 12)),
        high_value_max_months=int(config.get("HIGH_VALUE_VENDOR_MAX_MONTHS", 24)),
    )


def build_workflow_service(
    db,
    tenant_id: str,
    config: Mapping[str, Any],
    *,
    event_bus: EventBus | None = None,
    reader: BoundedReader | None = None,
    clock: Callable = utc_now,
) -> WorkflowService:
    """Wire the SQL-backed collaborators for one organization."""
    bus = event_bus or get_event_bus()
    organization = OrganizationRepository(tenant_id=tenant_id).get(db)
    durations = ApprovalDurations.from_mapping(organization, fallback=durations_from_config(config))

    approvers = SqlApproverDirectory(db, tenant_id)
    vendors = SqlVendorDirectory(db, tenant_id)
    controller = TransitionController(
        rules=SqlRuleRegistry(db, tenant_id),
        authorization=TierAuthorization(approvers),
        evidence=SqlEvidenceStore(db, tenant_id),
        approvers=approvers,
        vendors=vendors,
        converter=StaticRateConverter(parse_currency_rates(config.get("CURRENCY_RATES"))),
        reader=reader
        or BoundedReader(
            RetryPolicy.from_config(config),
            timeout_seconds=float(config.get("EXTERNAL_TIMEOUT_SECONDS", 5.0)),
        ),
        durations=durations,
        clock=clock,
    )
    return WorkflowService(
        organization_id=tenant_id,
        store=SqlRequestStore(db, tenant_id),
        controller=controller,
        notifier=EventBusNotifier(bus, tenant_id),
        vendors=vendors,
        event_bus=bus,
        clock=clock,
    )
