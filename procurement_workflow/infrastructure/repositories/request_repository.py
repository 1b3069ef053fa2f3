from __future__ import annotations

from typing import Any

from procurement_workflow.infrastructure.repositories.base import BaseRepository


class PurchaseRequestRepository(BaseRepository):
    def create(self, db, *, request_id: str, number: str, fields: dict[str, Any]) -> None:
        columns = ["id", "number", "tenant_id", *fields.keys()]
        placeholders = ", ".join("?" for _ in columns)
        db.execute(
            f"""
            INSERT INTO purchase_requests ({", ".join(columns)})
            VALUES ({placeholders})
            """,
            (request_id, number, self.tenant_id, *fields.values()),
        )

    def get_by_id(self, db, request_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM purchase_requests
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (request_id, self.tenant_id),
        ).fetchone()
        return dict(row) if row else None

    def update_if_version(self, db, request_id: str, expected_version: int, fields: dict[str, Any]) -> bool:
        """Write ``fields`` and bump the version only if nobody else has written since."""
        updates = [f"{key} = ?" for key in fields.keys()]
        params = list(fields.values())
        params.extend([request_id, self.tenant_id, int(expected_version)])
        cursor = db.execute(
            f"""
            UPDATE purchase_requests
            SET {", ".join(updates)}, version = version + 1, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ? AND version = ?
            """,
            tuple(params),
        )
        return int(cursor.rowcount or 0) == 1

    def list_ids_by_status(self, db, status: str, *, limit: int = 500) -> list[str]:
        rows = db.execute(
            """
            SELECT id
            FROM purchase_requests
            WHERE status = ? AND tenant_id = ?
            ORDER BY created_at, id
            LIMIT ?
            """,
            (status, self.tenant_id, int(limit)),
        ).fetchall()
        return [str(self.row_value(row, "id")) for row in rows]

    def list_numbers_for_period(self, db, period: str) -> list[str]:
        # PR- and PO- numbers share one sequence per period.
        rows = db.execute(
            """
            SELECT number
            FROM purchase_requests
            WHERE (number LIKE ? OR number LIKE ?) AND tenant_id = ?
            """,
            (f"PR-{period}-%", f"PO-{period}-%", self.tenant_id),
        ).fetchall()
        return [str(self.row_value(row, "number")) for row in rows]
