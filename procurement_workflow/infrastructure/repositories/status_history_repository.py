from __future__ import annotations

from procurement_workflow.infrastructure.repositories.base import BaseRepository


class StatusHistoryRepository(BaseRepository):
    """Append-only; rows are never updated or deleted."""

    def append(
        self,
        db,
        *,
        request_id: str,
        seq: int,
        from_status: str | None,
        to_status: str,
        actor_id: str | None,
        occurred_at: str,
        notes: str | None,
    ) -> None:
        db.execute(
            """
            INSERT INTO status_history (request_id, tenant_id, seq, from_status, to_status, actor_id, occurred_at, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (request_id, self.tenant_id, int(seq), from_status, to_status, actor_id, occurred_at, notes),
        )

    def list_for_request(self, db, request_id: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT seq, from_status, to_status, actor_id, occurred_at, notes
            FROM status_history
            WHERE request_id = ? AND tenant_id = ?
            ORDER BY seq
            """,
            (request_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)
