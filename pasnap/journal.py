# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pasnap Journal - local history of snapshot, restore and delete runs.

One row per operation plus one row per component outcome, in order.
The journal is advisory: the Journal wrapper logs its own failures and
never lets them change the outcome of a run.
"""

from datetime import datetime, UTC
from pathlib import Path
from typing import List, TypedDict

import aiosqlite
import structlog
from ulid import ULID

from pasnap.core import StepOutcome
from pasnap.exceptions import JournalError

logger = structlog.get_logger()


class OperationRecord(TypedDict):
    """Record of one pasnap run."""

    id: str  # ULID
    kind: str  # snapshot, restore, delete
    started_at: str  # ISO 8601
    finished_at: str | None
    status: str
    snapshot_id: str | None
    bundle_size: int | None
    error: str | None


class ComponentRecord(TypedDict):
    operation_id: str
    position: int
    category: str
    component: str
    status: str
    reason: str
    size: int


def _now() -> str:
    return datetime.now(UTC).isoformat()


async def init_journal_db(db_path: Path) -> None:
    """
    Initialize the journal schema. Idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS operations (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    status TEXT NOT NULL,
                    snapshot_id TEXT,
                    bundle_size INTEGER,
                    error TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS components (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    operation_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    category TEXT NOT NULL,
                    component TEXT NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT NOT NULL DEFAULT '',
                    size INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (operation_id) REFERENCES operations(id)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_started_at
                ON operations(started_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_components_operation_id
                ON components(operation_id)
            """)

            await db.commit()
    except (aiosqlite.Error, OSError) as e:
        raise JournalError(
            f"Failed to initialize journal: {e}",
            details={"db_path": str(db_path)},
        )


async def start_operation(db_path: Path, kind: str, snapshot_id: str | None = None) -> str:
    """Insert a running operation and return its ULID."""
    operation_id = str(ULID())
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                """
                INSERT INTO operations (id, kind, started_at, status, snapshot_id)
                VALUES (?, ?, ?, 'running', ?)
                """,
                (operation_id, kind, _now(), snapshot_id),
            )
            await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(f"Failed to record operation start: {e}", details={"kind": kind})
    return operation_id


async def record_component(
    db_path: Path, operation_id: str, position: int, outcome: StepOutcome
) -> None:
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                """
                INSERT INTO components
                    (operation_id, position, category, component, status, reason, size)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation_id,
                    position,
                    outcome.category,
                    outcome.component,
                    outcome.status.value,
                    outcome.reason,
                    outcome.size,
                ),
            )
            await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(
            f"Failed to record component: {e}",
            details={"operation_id": operation_id, "component": outcome.component},
        )


async def finish_operation(
    db_path: Path,
    operation_id: str,
    status: str,
    *,
    snapshot_id: str | None = None,
    bundle_size: int | None = None,
    error: str | None = None,
) -> None:
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                """
                UPDATE operations
                SET finished_at = ?, status = ?,
                    snapshot_id = COALESCE(?, snapshot_id),
                    bundle_size = COALESCE(?, bundle_size),
                    error = ?
                WHERE id = ?
                """,
                (_now(), status, snapshot_id, bundle_size, error, operation_id),
            )
            await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(
            f"Failed to record operation end: {e}",
            details={"operation_id": operation_id},
        )


async def list_operations(db_path: Path, limit: int = 20) -> List[OperationRecord]:
    """Most recent operations first."""
    try:
        async with aiosqlite.connect(db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, kind, started_at, finished_at, status, snapshot_id, bundle_size, error
                FROM operations
                ORDER BY started_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        raise JournalError(f"Failed to read journal: {e}", details={"db_path": str(db_path)})

    return [OperationRecord(**dict(row)) for row in rows]


async def list_components(db_path: Path, operation_id: str) -> List[ComponentRecord]:
    try:
        async with aiosqlite.connect(db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT operation_id, position, category, component, status, reason, size
                FROM components WHERE operation_id = ? ORDER BY position
                """,
                (operation_id,),
            ) as cursor:
                rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        raise JournalError(f"Failed to read journal: {e}", details={"operation_id": operation_id})

    return [ComponentRecord(**dict(row)) for row in rows]


async def last_bundle_size(db_path: Path) -> int:
    """Bundle size of the most recent successful snapshot (0 if none)."""
    try:
        async with aiosqlite.connect(db_path) as db:
            async with db.execute(
                """
                SELECT bundle_size FROM operations
                WHERE kind = 'snapshot' AND status IN ('completed', 'completed_with_errors')
                  AND bundle_size IS NOT NULL
                ORDER BY started_at DESC LIMIT 1
                """
            ) as cursor:
                row = await cursor.fetchone()
    except aiosqlite.Error as e:
        raise JournalError(f"Failed to read journal: {e}", details={"db_path": str(db_path)})
    return int(row[0]) if row else 0


class Journal:
    """
    Failure-tolerant facade over the journal functions.

    Every method logs a JournalError and carries on; pass db_path=None to
    disable journaling entirely.
    """

    def __init__(self, db_path: Path | None):
        self.db_path = db_path
        self._ready = False
        self._positions: dict[str, int] = {}

    async def _ensure(self) -> bool:
        if self.db_path is None:
            return False
        if not self._ready:
            try:
                await init_journal_db(self.db_path)
            except JournalError as e:
                logger.warning("journal_unavailable", error=str(e))
                return False
            self._ready = True
        return True

    async def start(self, kind: str, snapshot_id: str | None = None) -> str:
        if await self._ensure():
            try:
                return await start_operation(self.db_path, kind, snapshot_id)
            except JournalError as e:
                logger.warning("journal_write_failed", error=str(e))
        return str(ULID())

    async def component(self, operation_id: str, outcome: StepOutcome) -> None:
        position = self._positions.get(operation_id, 0)
        self._positions[operation_id] = position + 1
        if await self._ensure():
            try:
                await record_component(self.db_path, operation_id, position, outcome)
            except JournalError as e:
                logger.warning("journal_write_failed", error=str(e))

    async def finish(self, operation_id: str, status: str, **fields) -> None:
        if await self._ensure():
            try:
                await finish_operation(self.db_path, operation_id, status, **fields)
            except JournalError as e:
                logger.warning("journal_write_failed", error=str(e))

    async def last_bundle_size(self) -> int:
        if await self._ensure():
            try:
                return await last_bundle_size(self.db_path)
            except JournalError as e:
                logger.warning("journal_read_failed", error=str(e))
        return 0

    async def recent(self, limit: int = 20) -> List[OperationRecord]:
        if await self._ensure():
            try:
                return await list_operations(self.db_path, limit)
            except JournalError as e:
                logger.warning("journal_read_failed", error=str(e))
        return []
