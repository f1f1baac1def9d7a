"""SQLite storage for shell sessions and command history."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from termo.storage.models import CommandRecord, Session

logger = logging.getLogger(__name__)

_db: aiosqlite.Connection | None = None


async def init_db(db_path: str) -> None:
    """Open the SQLite file and create the sessions and commands tables."""
    global _db
    resolved = Path(db_path).expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)

    _db = await aiosqlite.connect(str(resolved))
    _db.row_factory = aiosqlite.Row
    await _db.execute("PRAGMA journal_mode = WAL")

    await _db.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            owner_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            cwd TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (owner_id, name)
        )
    """)
    await _db.execute("""
        CREATE TABLE IF NOT EXISTS commands (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            session_name TEXT NOT NULL,
            command TEXT NOT NULL,
            cwd TEXT DEFAULT '',
            exit_code INTEGER,
            duration_ms INTEGER DEFAULT 0,
            source TEXT DEFAULT 'shell'
                CHECK(source IN ('shell', 'assistant')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    await _db.execute("CREATE INDEX IF NOT EXISTS idx_commands_user ON commands(user_id, id)")
    await _db.commit()
    logger.info("Using database %s", resolved)


async def get_db() -> aiosqlite.Connection:
    """Return the open connection. Raises RuntimeError before init_db()."""
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _db


async def close_db() -> None:
    """Close the connection if one is open."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed")


# --- Sessions ---


async def save_session(session: Session) -> None:
    """Insert or update a session's working directory."""
    try:
        db = await get_db()
        await db.execute(
            """INSERT INTO sessions (owner_id, name, cwd) VALUES (?, ?, ?)
               ON CONFLICT(owner_id, name)
               DO UPDATE SET cwd = excluded.cwd, updated_at = CURRENT_TIMESTAMP""",
            (session.owner_id, session.name, session.working_directory),
        )
        await db.commit()
    except Exception:
        logger.exception("Failed to save session %s", session.key)


async def load_session(owner_id: int, name: str) -> Session | None:
    """Load a stored session, or None if it was never saved."""
    db = await get_db()
    cursor = await db.execute(
        "SELECT owner_id, name, cwd FROM sessions WHERE owner_id = ? AND name = ?",
        (owner_id, name),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    return Session(name=row["name"], owner_id=row["owner_id"], working_directory=row["cwd"])


async def list_sessions(owner_id: int) -> list[Session]:
    db = await get_db()
    cursor = await db.execute(
        "SELECT owner_id, name, cwd FROM sessions WHERE owner_id = ? ORDER BY name",
        (owner_id,),
    )
    rows = await cursor.fetchall()
    return [Session(name=r["name"], owner_id=r["owner_id"], working_directory=r["cwd"]) for r in rows]


async def delete_session(owner_id: int, name: str) -> bool:
    db = await get_db()
    cursor = await db.execute(
        "DELETE FROM sessions WHERE owner_id = ? AND name = ?",
        (owner_id, name),
    )
    await db.commit()
    return cursor.rowcount > 0


# --- History ---


async def save_command(
    user_id: int,
    session_name: str,
    command: str,
    cwd: str = "",
    exit_code: int | None = None,
    duration_ms: int = 0,
    source: str = "shell",
) -> None:
    """Record a shell command or a relayed assistant message. Never raises."""
    try:
        db = await get_db()
        await db.execute(
            """INSERT INTO commands (user_id, session_name, command, cwd, exit_code, duration_ms, source)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (user_id, session_name, command, cwd, exit_code, duration_ms, source),
        )
        await db.commit()
    except Exception:
        logger.exception("Could not record command for user %s", user_id)


async def get_recent_commands(user_id: int, limit: int = 10) -> list[CommandRecord]:
    """Get a user's recent command history, newest first."""
    db = await get_db()
    cursor = await db.execute(
        """SELECT id, user_id, session_name, command, cwd, exit_code, duration_ms, source, created_at
           FROM commands WHERE user_id = ? ORDER BY id DESC LIMIT ?""",
        (user_id, limit),
    )
    rows = await cursor.fetchall()
    return [CommandRecord(**dict(row)) for row in rows]
