import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None


DATABASE_ERRORS: tuple = (sqlite3.Error,)
if psycopg2 is not None:
    DATABASE_ERRORS = DATABASE_ERRORS + (psycopg2.Error,)


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

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

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

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

    # The store serializes access with its own lock, so the connection may
    # be shared between the scheduler thread and request threads.
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def row_to_dict(row) -> dict:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    keys = getattr(row, "keys", None)
    if callable(keys):
        return {key: row[key] for key in row.keys()}
    return dict(row)


def init_db(db: Database) -> None:
    if db.backend == "postgres":
        _init_db_postgres(db)
    else:
        _init_db_sqlite(db)
    db.commit()


def _init_db_sqlite(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS erp_outbox_events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            tenant_id TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            payload_json TEXT NOT NULL DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'PENDING' CHECK (
                status IN ('PENDING','SENT','FAILED')
            ),
            attempts INTEGER NOT NULL DEFAULT 0,
            next_retry_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            last_error TEXT,
            last_attempt_at TEXT,
            dead_letter INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_erp_outbox_events_tenant_entity
        ON erp_outbox_events (tenant_id, entity_id)
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_erp_outbox_events_status_due
        ON erp_outbox_events (status, next_retry_at)
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS erp_delivery_audit_log (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id TEXT NOT NULL,
            operation TEXT NOT NULL,
            external_ref TEXT NOT NULL,
            document_json TEXT NOT NULL,
            delivered_at TEXT NOT NULL
        )
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_erp_delivery_audit_log_tenant
        ON erp_delivery_audit_log (tenant_id, seq)
        """
    )


def _init_db_postgres(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS erp_outbox_events (
            seq BIGSERIAL PRIMARY KEY,
            id TEXT NOT NULL UNIQUE,
            tenant_id TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            payload_json TEXT NOT NULL DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'PENDING' CHECK (
                status IN ('PENDING','SENT','FAILED')
            ),
            attempts INTEGER NOT NULL DEFAULT 0,
            next_retry_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            last_error TEXT,
            last_attempt_at TEXT,
            dead_letter INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_erp_outbox_events_tenant_entity
        ON erp_outbox_events (tenant_id, entity_id)
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_erp_outbox_events_status_due
        ON erp_outbox_events (status, next_retry_at)
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS erp_delivery_audit_log (
            seq BIGSERIAL PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            operation TEXT NOT NULL,
            external_ref TEXT NOT NULL,
            document_json TEXT NOT NULL,
            delivered_at TEXT NOT NULL
        )
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_erp_delivery_audit_log_tenant
        ON erp_delivery_audit_log (tenant_id, seq)
        """
    )
