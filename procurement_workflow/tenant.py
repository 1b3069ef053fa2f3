from __future__ import annotations

from flask import g, request

from procurement_workflow.db import DEFAULT_TENANT_ID


def normalize_tenant_id(value: str | None) -> str | None:
    tenant_id = str(value or "").strip()
    return tenant_id or None


def current_tenant_id() -> str:
    return normalize_tenant_id(getattr(g, "tenant_id", None)) or DEFAULT_TENANT_ID


def current_actor_id() -> str | None:
    return str(request.headers.get("X-Actor-Id") or "").strip() or None


def load_request_scope() -> None:
    """Bind the organization named by ``X-Tenant-Id`` to the current request."""
    g.tenant_id = normalize_tenant_id(request.headers.get("X-Tenant-Id")) or DEFAULT_TENANT_ID
