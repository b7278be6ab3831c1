#!/usr/bin/env python3
"""
Unit tests for the SQLite transfer history.

- Newest-first listing and the 50-entry cap
- Insight updates, removal and persistence across connections
"""

import tempfile
import unittest
from pathlib import Path

from orbitdrop.storage.history import HistoryEntry, HistoryStore


def entry(n: int) -> HistoryEntry:
    return HistoryEntry(
        transfer_id=f"t{n}",
        name=f"file{n}.txt",
        size=n * 100,
        mime_type="text/plain",
        direction="inbound",
        completed_at=1000.0 + n,
    )


class TestHistoryStore(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp_path = Path(tmp.name)

        self.store = HistoryStore(self.tmp_path / "history.db")
        await self.store.connect()

    async def asyncTearDown(self):
        await self.store.close()

    async def test_append_and_list(self):
        await self.store.append(entry(1))
        await self.store.append(entry(2))

        entries = await self.store.list_entries()
        self.assertEqual([e.transfer_id for e in entries], ["t2", "t1"])
        self.assertEqual(entries[0].size, 200)

    async def test_capped_at_fifty(self):
        for n in range(55):
            await self.store.append(entry(n))

        self.assertEqual(await self.store.count(), 50)
        entries = await self.store.list_entries()
        self.assertEqual(entries[0].transfer_id, "t54")
        self.assertEqual(entries[-1].transfer_id, "t5")
        self.assertIsNone(await self.store.get("t4"))

    async def test_custom_limit(self):
        history = HistoryStore(self.tmp_path / "small.db", limit=3)
        await history.connect()
        for n in range(5):
            await history.append(entry(n))

        entries = await history.list_entries()
        self.assertEqual([e.transfer_id for e in entries], ["t4", "t3", "t2"])
        await history.close()

    async def test_set_insight(self):
        await self.store.append(entry(1))
        self.assertTrue(await self.store.set_insight("t1", "Text document (100.0 B)."))
        self.assertFalse(await self.store.set_insight("missing", "x"))

        saved = await self.store.get("t1")
        self.assertEqual(saved.insight, "Text document (100.0 B).")

    async def test_remove(self):
        await self.store.append(entry(1))
        self.assertTrue(await self.store.remove("t1"))
        self.assertFalse(await self.store.remove("t1"))
        self.assertEqual(await self.store.count(), 0)

    async def test_persists_across_connections(self):
        path = self.tmp_path / "persist.db"
        first = HistoryStore(path)
        await first.connect()
        await first.append(entry(7))
        await first.close()

        second = HistoryStore(path)
        await second.connect()
        self.assertEqual((await second.get("t7")).name, "file7.txt")
        await second.close()


if __name__ == '__main__':
    unittest.main()
