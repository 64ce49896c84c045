"""Constants and helpers shared by test modules."""

from sqlalchemy import text

PASSWORD = "correct-horse"


def tamper_with_history(engine, sql: str, params: dict | None = None) -> None:
    """Run a raw write on history_log with the append-only triggers lifted (SQLite only)."""
    with engine.begin() as conn:
        conn.execute(text("DROP TRIGGER IF EXISTS history_no_update"))
        conn.execute(text("DROP TRIGGER IF EXISTS history_no_delete"))
        conn.execute(text(sql), params or {})
