#!/usr/bin/env python3
"""
End-to-end tests: two endpoints in one process.

Pairs endpoints over an in-process bus and a loopback (or local TCP)
transport, then checks saved files, history and insight annotation.
"""

import tempfile
import unittest
from pathlib import Path

from orbitdrop.channel.loopback import LoopbackNetwork, LoopbackTransport
from orbitdrop.channel.tcp import TcpTransport
from orbitdrop.config import Config
from orbitdrop.endpoint import Endpoint
from orbitdrop.insight import FALLBACK_INSIGHT
from orbitdrop.session.coordinator import ConnectionState
from orbitdrop.signaling.bus import MemoryBus
from orbitdrop.transfer.records import Direction, TransferStatus

from .helpers import wait_until


async def pair(alice, bob):
    code = await alice.create_room()
    await bob.join_room(code.lower())
    await alice.wait_open(timeout=5)
    await bob.wait_open(timeout=5)


class TestEndpoint(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp_path = Path(tmp.name)

        self.bus = MemoryBus()
        self.network = LoopbackNetwork()
        self.created = []

    async def asyncTearDown(self):
        for endpoint in self.created:
            await endpoint.stop()

    async def make_endpoint(self, name, transport=None, **kwargs):
        endpoint = Endpoint(
            Config(data_dir=self.tmp_path / name),
            bus=self.bus,
            transport=transport or LoopbackTransport(self.network),
            **kwargs,
        )
        await endpoint.start()
        self.created.append(endpoint)
        return endpoint

    async def test_send_bytes_end_to_end(self):
        alice = await self.make_endpoint("alice")
        bob = await self.make_endpoint("bob")
        await pair(alice, bob)

        data = b"hello orbit\n" * 1000
        sent = await alice.send_bytes("notes.txt", data)
        self.assertIs(sent.status, TransferStatus.COMPLETED)

        await wait_until(lambda: bob.get_transfer(sent.id) is not None
                         and bob.get_transfer(sent.id).insight is not None)

        received = bob.get_transfer(sent.id)
        self.assertIs(received.direction, Direction.INBOUND)
        self.assertIs(received.status, TransferStatus.COMPLETED)
        self.assertEqual(received.insight, "Text document (11.7 KB).")
        self.assertEqual(Path(received.local_path).read_bytes(), data)
        self.assertEqual(Path(received.local_path).parent, bob.config.received_dir)

        history = await bob.get_history()
        self.assertEqual([h.transfer_id for h in history], [sent.id])
        self.assertEqual(history[0].insight, received.insight)

        await wait_until(lambda: sent.insight is not None)
        self.assertEqual([h.direction for h in await alice.get_history()], ['outbound'])

    async def test_send_file_over_tcp(self):
        alice = await self.make_endpoint("alice", transport=TcpTransport(host='127.0.0.1'))
        bob = await self.make_endpoint("bob", transport=TcpTransport(host='127.0.0.1'))
        await pair(alice, bob)

        source = self.tmp_path / "photo.png"
        source.write_bytes(bytes(range(256)) * 300)

        sent = await bob.send_file(source)
        await wait_until(lambda: alice.get_transfer(sent.id) is not None
                         and alice.get_transfer(sent.id).local_path is not None)

        received = alice.get_transfer(sent.id)
        self.assertEqual(received.mime_type, "image/png")
        self.assertEqual(Path(received.local_path).read_bytes(), source.read_bytes())

    async def test_name_collisions_get_suffix(self):
        alice = await self.make_endpoint("alice")
        bob = await self.make_endpoint("bob")
        await pair(alice, bob)

        first = await alice.send_bytes("a.txt", b"one")
        second = await alice.send_bytes("a.txt", b"two")

        await wait_until(lambda: all(
            bob.get_transfer(r.id) is not None and bob.get_transfer(r.id).local_path
            for r in (first, second)
        ))

        paths = {Path(bob.get_transfer(r.id).local_path).name for r in (first, second)}
        self.assertEqual(paths, {"a.txt", "a (1).txt"})

    async def test_failing_insight_keeps_completed(self):
        async def broken(name, mime_type, size):
            raise ConnectionError("insight service unreachable")

        alice = await self.make_endpoint("alice")
        bob = await self.make_endpoint("bob", insight_lookup=broken)
        await pair(alice, bob)

        sent = await alice.send_bytes("data.bin", b"\x00" * 10)
        await wait_until(lambda: bob.get_transfer(sent.id) is not None
                         and bob.get_transfer(sent.id).insight is not None)

        received = bob.get_transfer(sent.id)
        self.assertIs(received.status, TransferStatus.COMPLETED)
        self.assertEqual(received.insight, FALLBACK_INSIGHT)

    async def test_remove_transfer(self):
        alice = await self.make_endpoint("alice")
        bob = await self.make_endpoint("bob")
        await pair(alice, bob)

        sent = await alice.send_bytes("a.txt", b"abc")
        self.assertTrue(alice.remove_transfer(sent.id))
        self.assertIsNone(alice.get_transfer(sent.id))
        self.assertFalse(alice.remove_transfer(sent.id))

    async def test_peer_leaving_fails_inbound(self):
        alice = await self.make_endpoint("alice")
        bob = await self.make_endpoint("bob")
        await pair(alice, bob)

        # Metadata only: the transfer never finishes on bob's side
        alice.coordinator.channel.send(
            '{"type": "metadata", "transferId": "t1", "name": "x.bin", "totalSize": 100}'
        )
        await wait_until(lambda: bob.get_transfer("t1") is not None)

        await alice.stop()
        await wait_until(lambda: bob.state is ConnectionState.DEGRADED)

        record = bob.get_transfer("t1")
        self.assertIs(record.status, TransferStatus.FAILED)
        self.assertEqual(record.error, "Connection lost")

    async def test_start_send_runs_in_background(self):
        alice = await self.make_endpoint("alice")
        bob = await self.make_endpoint("bob")
        await pair(alice, bob)

        source = self.tmp_path / "report.pdf"
        source.write_bytes(b"%PDF" + b"0" * 50000)

        transfer_id = alice.start_send(source)
        await wait_until(lambda: alice.get_transfer(transfer_id) is not None
                         and alice.get_transfer(transfer_id).status is TransferStatus.COMPLETED)
        await wait_until(lambda: bob.get_transfer(transfer_id) is not None
                         and bob.get_transfer(transfer_id).insight is not None)

        self.assertTrue(bob.get_transfer(transfer_id).insight.startswith("PDF document"))

    async def test_stats(self):
        alice = await self.make_endpoint("alice")
        stats = alice.get_stats()
        self.assertTrue(stats['running'])
        self.assertEqual(stats['connection']['state'], 'idle')
        await alice.stop()
        self.assertFalse(alice.is_running)


if __name__ == '__main__':
    unittest.main()
