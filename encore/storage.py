"""
Local storage layer for recorded mocks using SQLite.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Protocol

import structlog
from pydantic import ValidationError

from encore.config import get_config
from encore.errors import StorageError
from encore.mocker import Mocker, MockStrategy

logger = structlog.get_logger(__name__)


class MockStore(Protocol):
    """What the call extractor needs from a mock backend."""

    def record_mocker(self, mocker: Mocker) -> None: ...

    def replay_mocker(self, query: Mocker, strategy: MockStrategy) -> Mocker | None: ...

    def check_response_mocker(self, mocker: Mocker | None) -> bool: ...


class SqliteMockStore:
    """SQLite-based storage for mockers."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or get_config().get_db_path()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Create database schema if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect("schema") as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS mockers (
                    id TEXT PRIMARY KEY,
                    category TEXT NOT NULL,
                    record_id TEXT,
                    replay_id TEXT,
                    operation_name TEXT NOT NULL,
                    request_body TEXT,
                    response_type TEXT,
                    creation_time INTEGER NOT NULL,
                    data TEXT NOT NULL  -- JSON blob of full mocker
                );

                CREATE INDEX IF NOT EXISTS idx_mockers_operation
                    ON mockers(operation_name, record_id);
                CREATE INDEX IF NOT EXISTS idx_mockers_record_id
                    ON mockers(record_id);
                CREATE INDEX IF NOT EXISTS idx_mockers_creation_time
                    ON mockers(creation_time);
            """
            )

    @contextmanager
    def _connect(self, operation: str) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections."""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(operation, str(exc)) from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(operation, str(exc)) from exc
        finally:
            conn.close()

    def record_mocker(self, mocker: Mocker) -> None:
        """Save or replace a mocker."""
        with self._connect("record") as conn:
            conn.execute(
                """
                INSERT INTO mockers (
                    id, category, record_id, replay_id, operation_name,
                    request_body, response_type, creation_time, data
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    request_body = excluded.request_body,
                    response_type = excluded.response_type,
                    data = excluded.data
                """,
                (
                    mocker.id,
                    mocker.category.value,
                    mocker.record_id,
                    mocker.replay_id,
                    mocker.operation_name,
                    mocker.target_request.body,
                    mocker.target_response.type,
                    mocker.creation_time,
                    json.dumps(mocker.to_dict()),
                ),
            )

    def replay_mocker(self, query: Mocker, strategy: MockStrategy = MockStrategy.FIND_LAST) -> Mocker | None:
        """Find the newest mocker matching ``query``."""
        sql = "SELECT data FROM mockers WHERE operation_name = ?"
        params: list[Any] = [query.operation_name]

        if query.record_id is not None:
            sql += " AND record_id = ?"
            params.append(query.record_id)

        if strategy == MockStrategy.FIND_LAST:
            sql += " AND request_body IS ?"
            params.append(query.target_request.body)

        sql += " ORDER BY creation_time DESC, rowid DESC LIMIT 1"

        with self._connect("replay") as conn:
            row = conn.execute(sql, params).fetchone()

        if row is None:
            return None
        return Mocker.model_validate(json.loads(row["data"]))

    def check_response_mocker(self, mocker: Mocker | None) -> bool:
        """True when a replayed mocker carries a response body."""
        if mocker is None:
            logger.info("storage.replay", reason="mock not found")
            return False
        if not mocker.target_response.body:
            logger.info("storage.replay", reason="mock response is empty", operation=mocker.operation_name)
            return False
        return True

    def list_mockers(
        self,
        limit: int = 50,
        operation: str | None = None,
        record_id: str | None = None,
    ) -> list[Mocker]:
        """List mockers with optional filtering, newest first."""
        with self._connect("list") as conn:
            query = "SELECT data FROM mockers"
            params: list[Any] = []
            conditions = []

            if operation:
                conditions.append("operation_name = ?")
                params.append(operation)

            if record_id:
                conditions.append("record_id = ?")
                params.append(record_id)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY creation_time DESC, rowid DESC LIMIT ?"
            params.append(limit)

            rows = conn.execute(query, params).fetchall()

        return [Mocker.model_validate(json.loads(row["data"])) for row in rows]

    def get_mocker(self, mocker_id: str) -> Mocker | None:
        """Load a single mocker by ID."""
        with self._connect("get") as conn:
            row = conn.execute("SELECT data FROM mockers WHERE id = ?", (mocker_id,)).fetchone()

        if row is None:
            return None
        return Mocker.model_validate(json.loads(row["data"]))

    def delete_record(self, record_id: str) -> int:
        """Delete every mocker of a recording; returns the number removed."""
        with self._connect("delete") as conn:
            result = conn.execute("DELETE FROM mockers WHERE record_id = ?", (record_id,))
            return result.rowcount

    def export_record(self, record_id: str, output_path: Path) -> int:
        """Export a recording's mockers to a JSON file; returns the count."""
        mockers = self.list_mockers(limit=-1, record_id=record_id)
        if not mockers:
            return 0

        output_path.write_text(json.dumps([mocker.to_dict() for mocker in mockers], indent=2))
        return len(mockers)

    def import_record(self, input_path: Path) -> list[Mocker] | None:
        """Import mockers from a JSON file written by ``export_record``."""
        try:
            data = json.loads(input_path.read_text())
            mockers = [Mocker.from_dict(item) for item in data]
        except (json.JSONDecodeError, ValidationError, TypeError):
            return None

        for mocker in mockers:
            self.record_mocker(mocker)
        return mockers


# Singleton storage instance
_storage: MockStore | None = None


def get_storage() -> MockStore:
    """Get the global storage instance."""
    global _storage
    if _storage is None:
        _storage = SqliteMockStore()
    return _storage


def set_storage(storage: MockStore | None) -> None:
    """Set the global storage instance (None resets it)."""
    global _storage
    _storage = storage
