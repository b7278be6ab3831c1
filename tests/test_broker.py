#!/usr/bin/env python3
"""
Unit tests for the signaling broker and message buses.

- Routing between the two participants of a room
- Ordering, third-sender rejection, room isolation
- Manual token import, run in the importing task
- BroadcastBus datagram handling
"""

import asyncio
import unittest

from orbitdrop.errors import InvalidToken, NegotiationError, SignalingError
from orbitdrop.signaling.broker import SignalingBroker
from orbitdrop.signaling.bus import BroadcastBus, MemoryBus
from orbitdrop.signaling.envelope import EnvelopeType, SignalingEnvelope
from orbitdrop.signaling.token import encode_token

from .helpers import wait_until


class Recorder:
    """Envelope handler that remembers what it saw."""

    def __init__(self, error=None):
        self.envelopes = []
        self.error = error

    async def __call__(self, envelope):
        self.envelopes.append(envelope)
        if self.error is not None:
            raise self.error


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestSignalingBroker(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.bus = MemoryBus()

    async def test_envelopes_reach_the_other_participant(self):
        alice = SignalingBroker(self.bus, "AB12CD", peer_id="alice")
        bob = SignalingBroker(self.bus, "ab12cd", peer_id="bob")
        alice_seen, bob_seen = Recorder(), Recorder()
        alice.subscribe(alice_seen)
        bob.subscribe(bob_seen)

        await alice.broadcast(SignalingEnvelope(EnvelopeType.ANNOUNCE, {'role': 'initiator'}))
        await wait_until(lambda: bob_seen.envelopes)
        await settle()

        self.assertEqual([e.type for e in bob_seen.envelopes], [EnvelopeType.ANNOUNCE])
        self.assertEqual(bob_seen.envelopes[0].sender, "alice")
        self.assertEqual(alice_seen.envelopes, [])
        self.assertEqual(bob.remote_peer, "alice")

        await alice.unsubscribe()
        await bob.unsubscribe()

    async def test_envelopes_are_handled_in_order(self):
        alice = SignalingBroker(self.bus, "AB12CD", peer_id="alice")
        bob = SignalingBroker(self.bus, "AB12CD", peer_id="bob")
        seen = Recorder()
        bob.subscribe(seen)

        for port in (9001, 9002, 9003):
            await alice.broadcast(SignalingEnvelope(
                EnvelopeType.ICE_CANDIDATE, {'host': '10.0.0.1', 'port': port}
            ))

        await wait_until(lambda: len(seen.envelopes) == 3)
        self.assertEqual([e.payload['port'] for e in seen.envelopes], [9001, 9002, 9003])
        await bob.unsubscribe()

    async def test_third_sender_is_dropped(self):
        alice = SignalingBroker(self.bus, "AB12CD", peer_id="alice")
        bob = SignalingBroker(self.bus, "AB12CD", peer_id="bob")
        mallory = SignalingBroker(self.bus, "AB12CD", peer_id="mallory")
        seen = Recorder()
        bob.subscribe(seen)

        await alice.broadcast(SignalingEnvelope(EnvelopeType.ANNOUNCE))
        await wait_until(lambda: seen.envelopes)
        await mallory.broadcast(SignalingEnvelope(EnvelopeType.ANNOUNCE))
        await settle()

        self.assertEqual([e.sender for e in seen.envelopes], ["alice"])
        self.assertEqual(bob.envelopes_dropped, 1)
        await bob.unsubscribe()

    async def test_other_rooms_are_isolated(self):
        alice = SignalingBroker(self.bus, "AB12CD", peer_id="alice")
        bob = SignalingBroker(self.bus, "ZZ99ZZ", peer_id="bob")
        seen = Recorder()
        bob.subscribe(seen)

        await alice.broadcast(SignalingEnvelope(EnvelopeType.ANNOUNCE))
        await settle()

        self.assertEqual(seen.envelopes, [])
        await bob.unsubscribe()

    async def test_malformed_message_is_dropped(self):
        broker = SignalingBroker(self.bus, "AB12CD", peer_id="bob")
        seen = Recorder()
        broker.subscribe(seen)

        await self.bus.publish(broker.topic, {'type': 'bogus', 'sender': 'alice', 'room': 'AB12CD'})
        await settle()

        self.assertEqual(seen.envelopes, [])
        self.assertEqual(broker.envelopes_dropped, 1)
        await broker.unsubscribe()

    async def test_single_subscriber_per_room(self):
        broker = SignalingBroker(self.bus, "AB12CD")
        broker.subscribe(Recorder())
        with self.assertRaises(SignalingError):
            broker.subscribe(Recorder())
        await broker.unsubscribe()
        self.assertFalse(broker.is_subscribed)

    async def test_invalid_room_code_rejected(self):
        with self.assertRaises(ValueError):
            SignalingBroker(self.bus, "nope")

    async def test_import_token_feeds_handler(self):
        broker = SignalingBroker(self.bus, "AB12CD")
        seen = Recorder()
        broker.subscribe(seen)

        await broker.import_token(encode_token({'type': 'offer', 'session': 's1'}))

        self.assertIs(seen.envelopes[0].type, EnvelopeType.OFFER)
        self.assertEqual(seen.envelopes[0].payload['session'], 's1')
        await broker.unsubscribe()

    async def test_import_token_raises_handler_error(self):
        broker = SignalingBroker(self.bus, "AB12CD")
        broker.subscribe(Recorder(error=NegotiationError("bad offer")))

        with self.assertRaises(NegotiationError):
            await broker.import_token(encode_token({'type': 'offer', 'session': 's1'}))
        await broker.unsubscribe()

    async def test_unsubscribe_after_rejected_import(self):
        broker = SignalingBroker(self.bus, "AB12CD")
        seen = Recorder(error=NegotiationError("bad offer"))
        broker.subscribe(seen)

        with self.assertRaises(NegotiationError):
            await broker.import_token(encode_token({'type': 'offer', 'session': 's1'}))

        # The dispatch loop is unaffected and shuts down cleanly
        other = SignalingBroker(self.bus, "AB12CD")
        await other.broadcast(SignalingEnvelope(EnvelopeType.ANNOUNCE))
        await wait_until(lambda: len(seen.envelopes) == 2)

        await asyncio.wait_for(broker.unsubscribe(), timeout=1)
        self.assertFalse(broker.is_subscribed)

    async def test_import_invalid_token_raises_immediately(self):
        broker = SignalingBroker(self.bus, "AB12CD")
        seen = Recorder()
        broker.subscribe(seen)

        with self.assertRaises(InvalidToken):
            await broker.import_token("not-base64!!")

        await settle()
        self.assertEqual(seen.envelopes, [])
        await broker.unsubscribe()

    async def test_import_without_subscriber(self):
        broker = SignalingBroker(self.bus, "AB12CD")
        with self.assertRaises(SignalingError):
            await broker.import_token(encode_token({'type': 'answer', 'session': 's1'}))


class TestBroadcastBus(unittest.IsolatedAsyncioTestCase):

    async def test_requires_start(self):
        broadcast = BroadcastBus(broadcast_port=0)
        with self.assertRaises(SignalingError):
            await broadcast.publish("orbit_signal_AB12CD", {'type': 'announce'})

    async def test_ignores_malformed_datagrams(self):
        broadcast = BroadcastBus()
        received = []
        broadcast.subscribe("orbit_signal_AB12CD", received.append)

        broadcast._handle_datagram(b"\x00garbage", ("10.0.0.9", 8470))
        broadcast._handle_datagram(b'{"topic": "orbit_signal_AB12CD"}', ("10.0.0.9", 8470))
        broadcast._handle_datagram(
            b'{"topic": "orbit_signal_AB12CD", "message": {"type": "announce"}}',
            ("10.0.0.9", 8470),
        )

        self.assertEqual(received, [{'type': 'announce'}])


if __name__ == '__main__':
    unittest.main()
