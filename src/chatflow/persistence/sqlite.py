"""SQLite session store on aiosqlite."""

import asyncio
import logging
from pathlib import Path

import aiosqlite

from chatflow.core.errors import (
    SessionNotFoundError,
    StaleSessionError,
    StorageError,
)
from chatflow.core.state import SessionState
from chatflow.persistence.base import SessionStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    flow_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    status TEXT NOT NULL,
    state_data TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class SqliteSessionStore(SessionStore):
    """One row per session; the state is kept as a JSON document.

    The optimistic check is a conditional UPDATE on the version column, so
    two turns racing on the same session cannot both commit.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._connection: aiosqlite.Connection | None = None
        self._init_lock = asyncio.Lock()

    async def _db(self) -> aiosqlite.Connection:
        if self._connection is not None:
            return self._connection
        async with self._init_lock:
            if self._connection is None:
                try:
                    connection = await aiosqlite.connect(self.path)
                    await connection.execute(_SCHEMA)
                    await connection.commit()
                except (aiosqlite.Error, OSError) as e:
                    raise StorageError(f"Cannot open session database {self.path}: {e}") from e
                self._connection = connection
                logger.info(f"Opened session database {self.path}")
        return self._connection

    async def create(self, state: SessionState) -> SessionState:
        stored = state.model_copy(update={"version": 0})
        db = await self._db()
        try:
            await db.execute(
                """
                INSERT INTO sessions (session_id, flow_id, version, status, state_data, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.session_id,
                    stored.flow_id,
                    stored.version,
                    stored.status.value,
                    stored.model_dump_json(),
                    stored.updated_at.isoformat(),
                ),
            )
            await db.commit()
        except aiosqlite.IntegrityError as e:
            raise StorageError(f"Session '{state.session_id}' already exists") from e
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to create session '{state.session_id}': {e}") from e
        return stored

    async def load(self, session_id: str) -> SessionState:
        db = await self._db()
        try:
            cursor = await db.execute(
                "SELECT state_data FROM sessions WHERE session_id = ?", (session_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to load session '{session_id}': {e}") from e
        if row is None:
            raise SessionNotFoundError(
                f"Session '{session_id}' not found", context={"session_id": session_id}
            )
        return SessionState.model_validate_json(row[0])

    async def save(self, state: SessionState, expected_version: int) -> SessionState:
        stored = state.model_copy(update={"version": expected_version + 1})
        db = await self._db()
        try:
            cursor = await db.execute(
                """
                UPDATE sessions
                SET version = ?, status = ?, state_data = ?, updated_at = ?
                WHERE session_id = ? AND version = ?
                """,
                (
                    stored.version,
                    stored.status.value,
                    stored.model_dump_json(),
                    stored.updated_at.isoformat(),
                    stored.session_id,
                    expected_version,
                ),
            )
            updated = cursor.rowcount
            await cursor.close()
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to save session '{state.session_id}': {e}") from e

        if updated == 0:
            # Distinguish a missing row from a lost race
            await self.load(state.session_id)
            raise StaleSessionError(
                f"Session '{state.session_id}' changed since version {expected_version}",
                context={"session_id": state.session_id},
            )
        return stored

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
