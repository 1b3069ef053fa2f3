from __future__ import annotations

from procurement_workflow.infrastructure.repositories import (
    OrganizationRepository,
    RuleRepository,
    UserRepository,
    VendorRepository,
)
from tests.fakes import default_approvers, standard_rules


SEED_VENDORS = (("v1", "Acme Supplies"), ("v2", "Beta Tools"), ("v3", "Gamma Parts"))


def seed_organization(db, tenant_id: str, *, rules=None, durations=None) -> None:
    """Organization, rules, users and vendors the workflow tests rely on."""
    with db.transaction():
        OrganizationRepository(tenant_id=tenant_id).upsert(db, name=f"Org {tenant_id}", durations=durations)
        rule_repo = RuleRepository(tenant_id=tenant_id)
        for rule in standard_rules() if rules is None else rules:
            rule_repo.upsert(db, number=rule.number, threshold=rule.threshold, currency=rule.currency)
        user_repo = UserRepository(tenant_id=tenant_id)
        for approver in default_approvers():
            user_repo.upsert(
                db,
                user_id=approver.id,
                permission_tier=approver.permission_tier,
                display_name=approver.id.title(),
                active=approver.active,
            )
        vendor_repo = VendorRepository(tenant_id=tenant_id)
        for vendor_id, name in SEED_VENDORS:
            vendor_repo.upsert(db, vendor_id=vendor_id, name=name)
