from __future__ import annotations

from procurement_workflow.infrastructure.repositories.base import BaseRepository


class VendorRepository(BaseRepository):
    def get_by_id(self, db, vendor_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM vendors
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (vendor_id, self.tenant_id),
        ).fetchone()
        return dict(row) if row else None

    def upsert(self, db, *, vendor_id: str, name: str, is_high_value: bool = False) -> None:
        db.execute(
            """
            INSERT INTO vendors (id, tenant_id, name, is_high_value)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (tenant_id, id) DO UPDATE SET
                name = excluded.name,
                is_high_value = excluded.is_high_value,
                updated_at = CURRENT_TIMESTAMP
            """,
            (vendor_id, self.tenant_id, name, 1 if is_high_value else 0),
        )

    def update_approval(
        self,
        db,
        vendor_id: str,
        *,
        is_approved: bool,
        approval_date: str | None,
        approval_expiry: str | None,
        approval_reason: str | None,
        approval_justification: str | None,
        approval_note: str | None,
    ) -> bool:
        cursor = db.execute(
            """
            UPDATE vendors
            SET is_approved = ?,
                approval_date = ?,
                approval_expiry = ?,
                approval_reason = ?,
                approval_justification = ?,
                approval_note = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (
                1 if is_approved else 0,
                approval_date,
                approval_expiry,
                approval_reason,
                approval_justification,
                approval_note,
                vendor_id,
                self.tenant_id,
            ),
        )
        return int(cursor.rowcount or 0) == 1

    def list_expired(self, db, now: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM vendors
            WHERE is_approved = 1
              AND approval_expiry IS NOT NULL
              AND approval_expiry <= ?
              AND tenant_id = ?
            ORDER BY approval_expiry, id
            """,
            (now, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)
