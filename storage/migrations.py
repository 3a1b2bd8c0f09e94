"""Ad-hoc database migrations for Flowsync."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_sync_queue_columns(conn) -> None:
    columns = {
        "meta_json": "TEXT NOT NULL DEFAULT '{}'",
        "last_error": "TEXT",
        "result": "TEXT",
        "next_attempt_at": "TEXT",
        "claimed_at": "TEXT",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "sync_queue", name):
            conn.execute(text(f"ALTER TABLE sync_queue ADD COLUMN {name} {ddl_type}"))

    conn.execute(
        text(
            """
            UPDATE sync_queue
            SET next_attempt_at = COALESCE(next_attempt_at, created_at)
            WHERE next_attempt_at IS NULL
            """
        )
    )


def normalize_legacy_values(conn) -> None:
    # the first sync_queue schema declared operation as enum(create, update, delete)
    # and status as enum(pending, in_progress, completed, failed)
    conn.execute(text("UPDATE sync_queue SET status = 'processing' WHERE status = 'in_progress'"))
    conn.execute(
        text(
            """
            UPDATE sync_queue
            SET operation = upper(operation)
            WHERE operation IN ('create', 'update', 'delete')
            """
        )
    )


def ensure_sync_queue_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_status_next_attempt
            ON sync_queue (status, next_attempt_at)
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_user_status
            ON sync_queue (user_id, status)
            """
        )
    )


def ensure_sync_log_table(conn) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS sync_log (
                idempotency_key TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                request_payload TEXT,
                response_payload TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
    )
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_sync_log_user ON sync_log(user_id)"))


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_sync_queue_columns(conn)
        normalize_legacy_values(conn)
        ensure_sync_queue_indexes(conn)
        # SQLModel creates sync_log, but keep legacy databases usable
        ensure_sync_log_table(conn)


__all__ = ["run_all"]
