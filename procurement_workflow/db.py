import contextlib
import sqlite3
import threading
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


DEFAULT_TENANT_ID = "org-demo"


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._tx_lock = threading.RLock()
        self._tx_depth = 0

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    @contextlib.contextmanager
    def transaction(self):
        """Group writes into one atomic unit.

        Nested calls run inside a savepoint, so a failed inner block can be
        rolled back without aborting the outer transaction.
        """
        with self._tx_lock:
            outermost = self._tx_depth == 0
            savepoint = f"sp_{self._tx_depth}"
            if outermost:
                self.execute("BEGIN IMMEDIATE" if self.backend == "sqlite" else "BEGIN")
            else:
                self.execute(f"SAVEPOINT {savepoint}")
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if outermost:
                    self.execute("ROLLBACK")
                else:
                    self.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            self._tx_depth -= 1
            if outermost:
                self.execute("COMMIT")
            else:
                self.execute(f"RELEASE SAVEPOINT {savepoint}")

    def commit(self):
        self._conn.commit()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    # Transactions are opened explicitly through Database.transaction().
    conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


_STATUS_VALUES = (
    "'DRAFT','SUBMITTED','RESUBMITTED','IN_QUEUE','PENDING_APPROVAL','APPROVED',"
    "'ORDERED','COMPLETED','REVISION_REQUIRED','REJECTED','CANCELED'"
)


def _schema_statements(backend: str) -> List[str]:
    serial_pk = "BIGSERIAL PRIMARY KEY" if backend == "postgres" else "INTEGER PRIMARY KEY AUTOINCREMENT"
    real = "DOUBLE PRECISION" if backend == "postgres" else "REAL"
    return [
        """
        CREATE TABLE IF NOT EXISTS organizations (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            vendor_approval_3quote_months INTEGER,
            vendor_approval_completed_months INTEGER,
            vendor_approval_manual_months INTEGER,
            high_value_vendor_max_months INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS rules (
            id {serial_pk},
            tenant_id TEXT NOT NULL,
            number INTEGER NOT NULL,
            threshold {real} NOT NULL,
            currency TEXT,
            description TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            UNIQUE (tenant_id, number)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            display_name TEXT,
            permission_tier INTEGER NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (tenant_id, id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS vendors (
            id TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            name TEXT NOT NULL,
            is_approved INTEGER NOT NULL DEFAULT 0,
            approval_date TEXT,
            approval_expiry TEXT,
            approval_reason TEXT CHECK (
                approval_reason IS NULL OR approval_reason IN ('auto_3quote','auto_completed','manual')
            ),
            approval_justification TEXT,
            approval_note TEXT,
            is_high_value INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (tenant_id, id)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS purchase_requests (
            id TEXT PRIMARY KEY,
            number TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            amount {real} NOT NULL,
            currency TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ({_STATUS_VALUES})),
            requestor_id TEXT,
            approver_primary_id TEXT,
            approver_secondary_id TEXT,
            preferred_quote_id TEXT,
            selected_quote_id TEXT,
            final_price {real},
            approval_state_json TEXT,
            completed_at TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (tenant_id, number)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS request_quotes (
            id TEXT NOT NULL,
            request_id TEXT NOT NULL REFERENCES purchase_requests (id),
            tenant_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            vendor_id TEXT NOT NULL,
            amount {real} NOT NULL,
            currency TEXT NOT NULL,
            PRIMARY KEY (request_id, id)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS status_history (
            id {serial_pk},
            request_id TEXT NOT NULL REFERENCES purchase_requests (id),
            tenant_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            from_status TEXT,
            to_status TEXT NOT NULL,
            actor_id TEXT,
            occurred_at TEXT NOT NULL,
            notes TEXT,
            UNIQUE (request_id, seq)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS request_overrides (
            id {serial_pk},
            request_id TEXT NOT NULL REFERENCES purchase_requests (id),
            tenant_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            justification TEXT NOT NULL,
            by_actor_id TEXT NOT NULL,
            at_timestamp TEXT NOT NULL,
            expires_at TEXT,
            superseded_at TEXT,
            superseded_reason TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS request_evidence (
            id {serial_pk},
            request_id TEXT NOT NULL REFERENCES purchase_requests (id),
            tenant_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            reference TEXT,
            recorded_by TEXT,
            recorded_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_purchase_requests_tenant_status ON purchase_requests (tenant_id, status)",
        "CREATE INDEX IF NOT EXISTS ix_status_history_request ON status_history (request_id, seq)",
        "CREATE INDEX IF NOT EXISTS ix_request_overrides_active ON request_overrides (request_id, kind, superseded_at)",
        "CREATE INDEX IF NOT EXISTS ix_request_evidence_request_kind ON request_evidence (request_id, kind)",
        "CREATE INDEX IF NOT EXISTS ix_vendors_approval_expiry ON vendors (tenant_id, is_approved, approval_expiry)",
    ]


def init_db(db: Database | None = None) -> None:
    db = db or get_db()
    with db.transaction():
        for statement in _schema_statements(db.backend):
            db.execute(statement)
