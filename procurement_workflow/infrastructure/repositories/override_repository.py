from __future__ import annotations

from procurement_workflow.infrastructure.repositories.base import BaseRepository


class OverrideRepository(BaseRepository):
    def add(
        self,
        db,
        *,
        request_id: str,
        kind: str,
        justification: str,
        by_actor_id: str,
        at_timestamp: str,
        expires_at: str | None,
    ) -> None:
        db.execute(
            """
            INSERT INTO request_overrides (
                request_id, tenant_id, kind, justification, by_actor_id, at_timestamp, expires_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (request_id, self.tenant_id, kind, justification, by_actor_id, at_timestamp, expires_at),
        )

    def supersede(self, db, *, request_id: str, kind: str, superseded_at: str, reason: str) -> None:
        db.execute(
            """
            UPDATE request_overrides
            SET superseded_at = ?, superseded_reason = ?
            WHERE request_id = ? AND kind = ? AND superseded_at IS NULL AND tenant_id = ?
            """,
            (superseded_at, reason, request_id, kind, self.tenant_id),
        )

    def list_active(self, db, request_id: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT kind, justification, by_actor_id, at_timestamp, expires_at
            FROM request_overrides
            WHERE request_id = ? AND superseded_at IS NULL AND tenant_id = ?
            ORDER BY id
            """,
            (request_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def list_all(self, db, request_id: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT kind, justification, by_actor_id, at_timestamp, expires_at, superseded_at, superseded_reason
            FROM request_overrides
            WHERE request_id = ? AND tenant_id = ?
            ORDER BY id
            """,
            (request_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)
