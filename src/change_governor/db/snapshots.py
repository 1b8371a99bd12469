"""
Append-only snapshot persistence.

Snapshots capture an entity's state before an action changes it. A
snapshot is committed before the external call is attempted, so rollback
stays well-defined even if the call partially succeeds and the process
then dies. Rows are never updated or deleted (enforced by triggers).
"""

import aiosqlite

from change_governor.actions.types import Snapshot
from change_governor.db.base import SQLiteStore, dump_json, from_iso, load_json, to_iso


class SnapshotStore(SQLiteStore):
    """
    Async context manager for snapshot operations.

    Example:
        async with SnapshotStore(db_path) as store:
            snap = await store.capture(Snapshot(entity_id="p1", action_id=7,
                                                captured_state={...}))
            latest = await store.latest_for_action(7)
    """

    async def __aenter__(self) -> "SnapshotStore":
        return await super().__aenter__()

    def _row_to_snapshot(self, row: aiosqlite.Row) -> Snapshot:
        return Snapshot(
            id=row["id"],
            entity_id=row["entity_id"],
            action_id=row["action_id"],
            captured_state=load_json(row["captured_state"]) or {},
            reason=row["reason"] or "",
            created_at=from_iso(row["created_at"]),
        )

    async def capture(self, snapshot: Snapshot) -> Snapshot:
        """
        Durably append a snapshot.

        The insert is committed before this returns.

        Returns:
            The stored Snapshot with ID populated
        """
        cursor = await self._conn.execute(
            """
            INSERT INTO snapshots (entity_id, action_id, captured_state, reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                snapshot.entity_id,
                snapshot.action_id,
                dump_json(snapshot.captured_state),
                snapshot.reason,
                to_iso(snapshot.created_at),
            ),
        )
        await self._conn.commit()
        return snapshot.model_copy(update={"id": cursor.lastrowid})

    async def latest_for_action(self, action_id: int) -> Snapshot | None:
        """
        Most recent snapshot taken for an action.

        Returns:
            The Snapshot if one exists, None otherwise
        """
        async with self._conn.execute(
            """
            SELECT * FROM snapshots WHERE action_id = ?
            ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (action_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_snapshot(row) if row else None

    async def list_for_entity(self, entity_id: str) -> list[Snapshot]:
        """All snapshots for an entity, newest first."""
        async with self._conn.execute(
            """
            SELECT * FROM snapshots WHERE entity_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (entity_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_snapshot(row) for row in rows]
