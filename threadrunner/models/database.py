"""SQLite-based subagent session persistence using aiosqlite.

This module provides the SessionStore class, the durable home of subagent
session bookkeeping. The schema is versioned: ordered migrations are applied
transactionally on every startup and skipped once recorded, so ``init()`` is
safe to call repeatedly.

Reads and writes after ``init()`` are designed to fail gracefully -- a
database error is logged and never breaks a running turn. The deterministic
naming scheme, not the store, is the source of session identity.

Tables:
    schema_migrations: Applied migration versions.
    subagent_sessions: One row per conversation (unique conversation_key).

Usage:
    >>> from threadrunner.models.database import SessionStore
    >>> store = SessionStore("./data/threadrunner.db")
    >>> await store.init()
    >>> await store.upsert(session)
    >>> await store.get_by_key("C123:1700000000.000100")
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from threadrunner.models.schemas import SessionStatus
from threadrunner.models.session import SubagentSession

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    """One ordered schema change."""

    version: int
    description: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="Create subagent sessions table",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS subagent_sessions (
                id TEXT PRIMARY KEY,
                conversation_key TEXT NOT NULL UNIQUE,
                sandbox_name TEXT NOT NULL,
                agent_session_file TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('idle', 'running', 'error')),
                running_job_id TEXT,
                last_job_id TEXT,
                last_error TEXT,
                turns INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_subagent_sessions_updated_at
            ON subagent_sessions(updated_at DESC)
            """,
        ),
    ),
    Migration(
        version=2,
        description="Index sessions by status for startup reconciliation",
        statements=(
            """
            CREATE INDEX IF NOT EXISTS idx_subagent_sessions_status
            ON subagent_sessions(status)
            """,
        ),
    ),
)


def _row_to_session(row: aiosqlite.Row) -> SubagentSession:
    return SubagentSession(
        id=row["id"],
        conversation_key=row["conversation_key"],
        sandbox_name=row["sandbox_name"],
        agent_session_file=row["agent_session_file"],
        status=SessionStatus(row["status"]),
        running_job_id=row["running_job_id"],
        last_job_id=row["last_job_id"],
        last_error=row["last_error"],
        turns=int(row["turns"]),
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
    )


class SessionStore:
    """Async SQLite store for subagent sessions.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str, migrations: tuple[Migration, ...] = MIGRATIONS) -> None:
        """Initialize the session store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
            migrations: Ordered schema migrations to apply.
        """
        self.db_path = db_path
        self.migrations = migrations

    async def init(self) -> None:
        """Enable WAL journaling and apply pending migrations.

        Raises:
            aiosqlite.Error: If a migration fails. The failing migration is
                rolled back and not recorded.
        """
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute("PRAGMA synchronous = NORMAL")
            await self._apply_migrations(db)
        logger.info("session_store_initialized", db_path=self.db_path)

    async def _apply_migrations(self, db: aiosqlite.Connection) -> None:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                description TEXT NOT NULL,
                applied_at REAL NOT NULL
            )
        """)
        await db.commit()

        cursor = await db.execute("SELECT version FROM schema_migrations")
        applied = {row[0] for row in await cursor.fetchall()}

        for migration in sorted(self.migrations, key=lambda m: m.version):
            if migration.version in applied:
                continue

            await db.execute("BEGIN")
            try:
                for statement in migration.statements:
                    await db.execute(statement)
                await db.execute(
                    "INSERT INTO schema_migrations (version, description, applied_at) "
                    "VALUES (?, ?, ?)",
                    (migration.version, migration.description, time.time()),
                )
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(
                    "session_store_migration_failed",
                    version=migration.version,
                    error=str(e),
                )
                raise
            logger.info(
                "session_store_migration_applied",
                version=migration.version,
                description=migration.description,
            )

    async def schema_version(self) -> int:
        """Return the highest applied migration version (0 if none)."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT MAX(version) FROM schema_migrations")
            row = await cursor.fetchone()
            return int(row[0]) if row and row[0] is not None else 0

    # -----------------------------------------------------------------
    # Session CRUD
    # -----------------------------------------------------------------

    async def upsert(self, session: SubagentSession) -> bool:
        """Insert or update a session row.

        Args:
            session: The session to persist.

        Returns:
            True if the row was written, False if the write failed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO subagent_sessions (
                        id, conversation_key, sandbox_name, agent_session_file,
                        status, running_job_id, last_job_id, last_error,
                        turns, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        conversation_key = excluded.conversation_key,
                        sandbox_name = excluded.sandbox_name,
                        agent_session_file = excluded.agent_session_file,
                        status = excluded.status,
                        running_job_id = excluded.running_job_id,
                        last_job_id = excluded.last_job_id,
                        last_error = excluded.last_error,
                        turns = excluded.turns,
                        updated_at = excluded.updated_at
                    """,
                    (
                        session.id,
                        session.conversation_key,
                        session.sandbox_name,
                        session.agent_session_file,
                        str(session.status),
                        session.running_job_id,
                        session.last_job_id,
                        session.last_error,
                        session.turns,
                        session.created_at,
                        session.updated_at,
                    ),
                )
                await db.commit()
            logger.debug("session_saved", session_id=session.id, status=str(session.status))
            return True
        except Exception as e:
            logger.error("session_save_failed", session_id=session.id, error=str(e))
            return False

    async def _fetch_one(self, query: str, params: tuple[Any, ...]) -> SubagentSession | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return _row_to_session(row) if row is not None else None

    async def get_by_id(self, session_id: str) -> SubagentSession | None:
        """Retrieve a session by its id, or None if missing or unreadable."""
        try:
            return await self._fetch_one(
                "SELECT * FROM subagent_sessions WHERE id = ?", (session_id,)
            )
        except Exception as e:
            logger.error("session_get_failed", session_id=session_id, error=str(e))
            return None

    async def get_by_key(self, conversation_key: str) -> SubagentSession | None:
        """Retrieve a session by its conversation key, or None if missing or unreadable."""
        try:
            return await self._fetch_one(
                "SELECT * FROM subagent_sessions WHERE conversation_key = ?",
                (conversation_key,),
            )
        except Exception as e:
            logger.error(
                "session_get_failed",
                conversation_key=conversation_key,
                error=str(e),
            )
            return None

    async def list_sessions(
        self,
        limit: int = 50,
        offset: int = 0,
        status: SessionStatus | None = None,
    ) -> list[SubagentSession]:
        """List sessions ordered by last update (newest first).

        Args:
            limit: Maximum number of sessions to return.
            offset: Number of sessions to skip.
            status: Optional status filter.

        Returns:
            List of sessions.
        """
        query = "SELECT * FROM subagent_sessions"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(str(status))
        query += " ORDER BY updated_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, tuple(params))
                rows = await cursor.fetchall()
                return [_row_to_session(row) for row in rows]
        except Exception as e:
            logger.error("session_list_failed", error=str(e))
            return []

    async def delete(self, session_id: str) -> bool:
        """Delete one session row. Returns True if a row was removed."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "DELETE FROM subagent_sessions WHERE id = ?", (session_id,)
                )
                await db.commit()
                return cursor.rowcount > 0
        except Exception as e:
            logger.error("session_delete_failed", session_id=session_id, error=str(e))
            return False

    async def clear_all(self) -> int:
        """Delete all persisted sessions.

        Returns:
            Number of rows removed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT COUNT(*) FROM subagent_sessions")
                count_row = await cursor.fetchone()
                deleted_count = int(count_row[0]) if count_row else 0

                await db.execute("DELETE FROM subagent_sessions")
                await db.commit()

            logger.info("session_store_cleared", deleted_count=deleted_count)
            return deleted_count
        except Exception as e:
            logger.error("session_store_clear_failed", error=str(e))
            return 0
