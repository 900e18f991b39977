"""Ad-hoc database migrations for the offline mirror."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_mirror_columns(conn) -> None:
    columns = {
        "synced_version": "INTEGER NOT NULL DEFAULT 0",
        "deleted": "BOOLEAN NOT NULL DEFAULT 0",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "mirrorrecord", name):
            conn.execute(text(f"ALTER TABLE mirrorrecord ADD COLUMN {name} {ddl_type}"))


def ensure_pending_ops_indexes(conn) -> None:
    if not _column_exists(conn, "pendingop", "base_updated_at"):
        conn.execute(text("ALTER TABLE pendingop ADD COLUMN base_updated_at TEXT"))
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_pendingop_record
            ON pendingop (record_type, record_id, id)
            """
        )
    )


def reset_in_flight(conn) -> None:
    # An op still marked in flight was interrupted by a restart; send it again.
    conn.execute(text("UPDATE pendingop SET state = 'queued' WHERE state = 'in_flight'"))


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_mirror_columns(conn)
        ensure_pending_ops_indexes(conn)
        reset_in_flight(conn)


__all__ = ["run_all"]
