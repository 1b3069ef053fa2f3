from __future__ import annotations

from typing import Iterable

from procurement_workflow.infrastructure.repositories.base import BaseRepository


class QuoteRepository(BaseRepository):
    def add_many(self, db, request_id: str, quotes: Iterable[dict]) -> None:
        for position, quote in enumerate(quotes, start=1):
            db.execute(
                """
                INSERT INTO request_quotes (id, request_id, tenant_id, position, vendor_id, amount, currency)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    quote["id"],
                    request_id,
                    self.tenant_id,
                    position,
                    quote["vendor_id"],
                    float(quote["amount"]),
                    quote["currency"],
                ),
            )

    def list_for_request(self, db, request_id: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, vendor_id, amount, currency, position
            FROM request_quotes
            WHERE request_id = ? AND tenant_id = ?
            ORDER BY position
            """,
            (request_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)
