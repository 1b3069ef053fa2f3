"""Workflow engine schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from procurement_workflow.db import _schema_statements


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _resolve_backend(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def upgrade() -> None:
    backend = _resolve_backend(op.get_bind())
    for statement in _schema_statements(backend):
        op.execute(statement)


def downgrade() -> None:
    tables = [
        "request_evidence",
        "request_overrides",
        "status_history",
        "request_quotes",
        "purchase_requests",
        "vendors",
        "users",
        "rules",
        "organizations",
    ]
    for table in tables:
        op.execute(f"DROP TABLE IF EXISTS {table}")
