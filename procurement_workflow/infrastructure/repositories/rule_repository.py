from __future__ import annotations

from procurement_workflow.infrastructure.repositories.base import BaseRepository


class RuleRepository(BaseRepository):
    def list_active(self, db) -> list[dict]:
        rows = db.execute(
            """
            SELECT number, threshold, currency, description
            FROM rules
            WHERE active = 1 AND tenant_id = ?
            ORDER BY number
            """,
            (self.tenant_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def upsert(
        self,
        db,
        *,
        number: int,
        threshold: float,
        currency: str | None = None,
        description: str | None = None,
        active: bool = True,
    ) -> None:
        db.execute(
            """
            INSERT INTO rules (tenant_id, number, threshold, currency, description, active)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, number) DO UPDATE SET
                threshold = excluded.threshold,
                currency = excluded.currency,
                description = excluded.description,
                active = excluded.active
            """,
            (self.tenant_id, int(number), float(threshold), currency, description, 1 if active else 0),
        )
