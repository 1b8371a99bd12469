"""
Shared connection handling for the SQLite-backed stores.

Per project patterns:
- Use async context manager for connection lifecycle
- Ensure schema on every connection (CREATE IF NOT EXISTS is idempotent)
- Rows come back as aiosqlite.Row for name-based access
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from change_governor.db.schema import ALL_SCHEMAS

# Seconds a writer waits on a locked database before failing.
BUSY_TIMEOUT_SECONDS = 30.0


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as a sortable UTC ISO8601 string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp; naive values are treated as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dump_json(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def load_json(value: str | None) -> Any:
    return json.loads(value) if value else None


class SQLiteStore:
    """
    Base async context manager owning one aiosqlite connection.

    Example:
        async with ActionDB(Path("governor.db")) as db:
            action = await db.get_action(1)
    """

    def __init__(self, db_path: Path) -> None:
        """
        Initialize the database connection manager.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def __aenter__(self):
        """Open database connection and ensure schema exists."""
        self._conn = await aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT_SECONDS)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._ensure_schema()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _ensure_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        for script in ALL_SCHEMAS:
            await self._conn.executescript(script)
        await self._conn.commit()
