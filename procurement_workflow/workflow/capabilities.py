from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, FrozenSet

from procurement_workflow.workflow.model import OverrideKind


class PermissionTier(IntEnum):
    ADMIN = 1
    SENIOR_APPROVER = 2
    PROCUREMENT = 3
    FINANCE_ADMIN = 4
    REQUESTER = 5
    FINANCE_APPROVER = 6
    SITE_MANAGER = 7
    USER_ADMIN = 8


UNLIMITED_APPROVAL_TIERS: FrozenSet[PermissionTier] = frozenset({PermissionTier.ADMIN, PermissionTier.SENIOR_APPROVER})
CEILING_APPROVAL_TIERS: FrozenSet[PermissionTier] = frozenset(
    {PermissionTier.FINANCE_ADMIN, PermissionTier.FINANCE_APPROVER}
)

OVERRIDE_TIERS: Dict[OverrideKind, FrozenSet[PermissionTier]] = {
    OverrideKind.QUOTE_REQUIREMENT: frozenset({PermissionTier.ADMIN, PermissionTier.PROCUREMENT}),
    OverrideKind.RULE_VALIDATION: frozenset({PermissionTier.ADMIN, PermissionTier.PROCUREMENT}),
    OverrideKind.PO_DOCUMENT: frozenset({PermissionTier.ADMIN, PermissionTier.PROCUREMENT}),
    OverrideKind.DELIVERY_DOCUMENTATION: frozenset({PermissionTier.ADMIN, PermissionTier.PROCUREMENT}),
    OverrideKind.PROFORMA: frozenset(
        {PermissionTier.ADMIN, PermissionTier.PROCUREMENT, PermissionTier.FINANCE_ADMIN}
    ),
    OverrideKind.PROOF_OF_PAYMENT: frozenset(
        {PermissionTier.ADMIN, PermissionTier.PROCUREMENT, PermissionTier.FINANCE_ADMIN}
    ),
    OverrideKind.FINAL_PRICE_VARIANCE: frozenset(
        {PermissionTier.ADMIN, PermissionTier.PROCUREMENT, PermissionTier.FINANCE_ADMIN}
    ),
}


def normalize_tier(value: Any) -> PermissionTier | None:
    if isinstance(value, PermissionTier):
        return value
    try:
        return PermissionTier(int(str(value).strip()))
    except (TypeError, ValueError):
        return None


def can_approve(tier: Any, amount: float, ceiling: float | None) -> bool:
    """Whether ``tier`` may approve ``amount`` (already in the ceiling's currency).

    Ceiling-bound tiers fail closed when no ceiling is configured.
    """
    resolved = normalize_tier(tier)
    if resolved in UNLIMITED_APPROVAL_TIERS:
        return True
    if resolved in CEILING_APPROVAL_TIERS:
        if ceiling is None:
            return False
        return float(amount) <= float(ceiling)
    return False


def can_override(tier: Any, kind: Any) -> bool:
    resolved = normalize_tier(tier)
    resolved_kind = OverrideKind.parse(kind)
    if resolved is None or resolved_kind is None:
        return False
    return resolved in OVERRIDE_TIERS.get(resolved_kind, frozenset())


def can_reset_approval(tier: Any) -> bool:
    return normalize_tier(tier) == PermissionTier.ADMIN
