from __future__ import annotations

from procurement_workflow.infrastructure.repositories.base import BaseRepository


class EvidenceRepository(BaseRepository):
    def add(
        self,
        db,
        *,
        request_id: str,
        kind: str,
        reference: str | None,
        recorded_by: str | None,
        recorded_at: str,
    ) -> None:
        db.execute(
            """
            INSERT INTO request_evidence (request_id, tenant_id, kind, reference, recorded_by, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (request_id, self.tenant_id, kind, reference, recorded_by, recorded_at),
        )

    def exists(self, db, request_id: str, kind: str) -> bool:
        row = db.execute(
            """
            SELECT 1 AS present
            FROM request_evidence
            WHERE request_id = ? AND kind = ? AND tenant_id = ?
            LIMIT 1
            """,
            (request_id, kind, self.tenant_id),
        ).fetchone()
        return row is not None

    def list_for_request(self, db, request_id: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT kind, reference, recorded_by, recorded_at
            FROM request_evidence
            WHERE request_id = ? AND tenant_id = ?
            ORDER BY id
            """,
            (request_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)
