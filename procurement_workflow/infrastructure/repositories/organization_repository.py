from __future__ import annotations

from typing import Any, Dict

from procurement_workflow.infrastructure.repositories.base import BaseRepository


DURATION_COLUMNS = (
    "vendor_approval_3quote_months",
    "vendor_approval_completed_months",
    "vendor_approval_manual_months",
    "high_value_vendor_max_months",
)


class OrganizationRepository(BaseRepository):
    """The organization row is keyed by the tenant id itself."""

    def get(self, db) -> dict | None:
        row = db.execute(
            "SELECT * FROM organizations WHERE id = ? LIMIT 1",
            (self.tenant_id,),
        ).fetchone()
        return dict(row) if row else None

    def upsert(self, db, *, name: str, durations: Dict[str, Any] | None = None) -> None:
        values = dict(durations or {})
        db.execute(
            f"""
            INSERT INTO organizations (id, name, {", ".join(DURATION_COLUMNS)})
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                {", ".join(f"{column} = excluded.{column}" for column in DURATION_COLUMNS)}
            """,
            (self.tenant_id, name, *(values.get(column) for column in DURATION_COLUMNS)),
        )

    @staticmethod
    def list_ids(db) -> list[str]:
        rows = db.execute("SELECT id FROM organizations ORDER BY id").fetchall()
        return [str(row["id"] if isinstance(row, dict) else row[0]) for row in rows]
