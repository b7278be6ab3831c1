"""
Transfer History

Design Decision: Why SQLite?
============================

Options Considered:
1. SQLite - Embedded, no server, ACID compliant
2. JSON file - Simple, but rewritten on every append
3. In-memory only - Lost on restart

Decision: SQLite with aiosqlite
- Zero configuration, single file
- Async support via aiosqlite
- Cap enforcement is one DELETE

History is append-only and keeps the newest `limit` entries (50 by
default), keyed by transfer id.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import aiosqlite

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


@dataclass
class HistoryEntry:
    """One completed transfer."""
    transfer_id: str
    name: str
    size: int
    mime_type: str
    direction: str
    completed_at: float = field(default_factory=time.time)
    insight: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'transfer_id': self.transfer_id,
            'name': self.name,
            'size': self.size,
            'mime_type': self.mime_type,
            'direction': self.direction,
            'completed_at': self.completed_at,
            'insight': self.insight,
        }


class HistoryStore:
    """
    SQLite-backed transfer history.

    Usage:
        history = HistoryStore(path)
        await history.connect()
        await history.append(entry)
    """

    def __init__(self, db_path: Path, limit: int = DEFAULT_HISTORY_LIMIT):
        self.db_path = Path(db_path)
        self.limit = limit
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self):
        """Open database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._init_schema()
        logger.info(f"History database connected: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _init_schema(self):
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS history (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                transfer_id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                size INTEGER NOT NULL,
                mime_type TEXT NOT NULL,
                direction TEXT NOT NULL,
                completed_at REAL NOT NULL,
                insight TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_history_completed ON history(completed_at);
        """)
        await self._connection.commit()

    async def append(self, entry: HistoryEntry):
        """Append an entry, then trim to the newest `limit` entries."""
        await self._connection.execute(
            """INSERT OR REPLACE INTO history
               (transfer_id, name, size, mime_type, direction, completed_at, insight)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (entry.transfer_id, entry.name, entry.size, entry.mime_type,
             entry.direction, entry.completed_at, entry.insight)
        )
        await self._connection.execute(
            """DELETE FROM history WHERE seq NOT IN
               (SELECT seq FROM history ORDER BY seq DESC LIMIT ?)""",
            (self.limit,)
        )
        await self._connection.commit()

    async def set_insight(self, transfer_id: str, insight: str) -> bool:
        """Attach an insight to an existing entry."""
        cursor = await self._connection.execute(
            "UPDATE history SET insight = ? WHERE transfer_id = ?",
            (insight, transfer_id)
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def get(self, transfer_id: str) -> Optional[HistoryEntry]:
        async with self._connection.execute(
            "SELECT * FROM history WHERE transfer_id = ?", (transfer_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_entry(row) if row else None

    async def list_entries(self) -> List[HistoryEntry]:
        """All entries, newest first."""
        async with self._connection.execute(
            "SELECT * FROM history ORDER BY seq DESC"
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_entry(row) for row in rows]

    async def remove(self, transfer_id: str) -> bool:
        cursor = await self._connection.execute(
            "DELETE FROM history WHERE transfer_id = ?", (transfer_id,)
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def count(self) -> int:
        async with self._connection.execute("SELECT COUNT(*) AS n FROM history") as cursor:
            row = await cursor.fetchone()
            return row['n']

    def _row_to_entry(self, row) -> HistoryEntry:
        return HistoryEntry(
            transfer_id=row['transfer_id'],
            name=row['name'],
            size=row['size'],
            mime_type=row['mime_type'],
            direction=row['direction'],
            completed_at=row['completed_at'],
            insight=row['insight'],
        )
