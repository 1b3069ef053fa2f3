from __future__ import annotations

from procurement_workflow.infrastructure.repositories.base import BaseRepository


class UserRepository(BaseRepository):
    def get_by_id(self, db, user_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT id, display_name, permission_tier, active
            FROM users
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (user_id, self.tenant_id),
        ).fetchone()
        return dict(row) if row else None

    def upsert(self, db, *, user_id: str, permission_tier: int, display_name: str | None = None, active: bool = True) -> None:
        db.execute(
            """
            INSERT INTO users (id, tenant_id, display_name, permission_tier, active)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, id) DO UPDATE SET
                display_name = excluded.display_name,
                permission_tier = excluded.permission_tier,
                active = excluded.active
            """,
            (user_id, self.tenant_id, display_name, int(permission_tier), 1 if active else 0),
        )
