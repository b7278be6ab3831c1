#!/usr/bin/env python3
"""
Unit tests for control/chunk framing, receiver frame handling and records.

- JSON wire form of metadata and control messages
- Binary chunk header and truncated frames
- Receiver reassembly, drops, interleaving and connection loss
- Progress arithmetic on transfer records
"""

import json
import unittest

from orbitdrop.session.events import EventHub, TransferCompleted
from orbitdrop.transfer.protocol import (
    ControlAction, MetadataAnnounce, TransferControl, decode_chunk, decode_control, encode_chunk
)
from orbitdrop.transfer.receiver import TransferReceiver
from orbitdrop.transfer.records import Direction, TransferRecord, TransferStatus
from orbitdrop.transfer.source import get_chunk_count


class TestControlMessages(unittest.TestCase):

    def test_metadata_wire_form(self):
        text = MetadataAnnounce("t1", "notes.txt", 40000, "text/plain").to_json()
        self.assertEqual(json.loads(text), {
            'type': 'metadata',
            'transferId': 't1',
            'name': 'notes.txt',
            'totalSize': 40000,
            'mimeType': 'text/plain',
        })

    def test_control_wire_form(self):
        text = TransferControl("t1", ControlAction.PAUSE).to_json()
        self.assertEqual(
            json.loads(text), {'type': 'control', 'transferId': 't1', 'action': 'pause'}
        )

    def test_decode_metadata(self):
        message = decode_control(MetadataAnnounce("t1", "a.png", 10, "image/png").to_json())
        self.assertEqual(message, MetadataAnnounce("t1", "a.png", 10, "image/png"))

    def test_missing_mime_type_defaults(self):
        message = decode_control(json.dumps({
            'type': 'metadata', 'transferId': 't1', 'name': 'x', 'totalSize': 3,
        }))
        self.assertEqual(message.mime_type, "application/octet-stream")

    def test_malformed_text_frames(self):
        frames = [
            "not json",
            "[1, 2]",
            json.dumps({'type': 'metadata', 'name': 'x', 'totalSize': 3}),
            json.dumps({'type': 'metadata', 'transferId': 't1', 'name': 'x', 'totalSize': -1}),
            json.dumps({'type': 'metadata', 'transferId': 't1', 'name': 'x', 'totalSize': True}),
            json.dumps({'type': 'control', 'transferId': 't1', 'action': 'rewind'}),
            json.dumps({'type': 'chat', 'transferId': 't1'}),
        ]
        for text in frames:
            with self.subTest(text=text):
                self.assertIsNone(decode_control(text))


class TestChunks(unittest.TestCase):

    def test_chunk_header(self):
        frame = encode_chunk("abc", 7, b"payload")
        self.assertEqual(frame[0], 3)
        self.assertEqual(frame[1:4], b"abc")
        self.assertEqual(frame[4:8], (7).to_bytes(4, 'big'))

        chunk = decode_chunk(frame)
        self.assertEqual((chunk.transfer_id, chunk.sequence, chunk.payload), ("abc", 7, b"payload"))

    def test_truncated_chunks(self):
        for frame in [b"", b"\x00", b"\x05ab", b"\x03abc\x00\x00"]:
            with self.subTest(frame=frame):
                self.assertIsNone(decode_chunk(frame))

    def test_empty_transfer_id_rejected(self):
        with self.assertRaises(ValueError):
            encode_chunk("", 0, b"x")

    def test_chunk_count(self):
        self.assertEqual(get_chunk_count(0), 0)
        self.assertEqual(get_chunk_count(40000), 3)
        self.assertEqual(get_chunk_count(16384), 1)


class TestReceiver(unittest.TestCase):

    def setUp(self):
        self.events = EventHub()
        self.completed = []
        self.events.add_listener(
            lambda e: self.completed.append(e) if isinstance(e, TransferCompleted) else None
        )
        self.receiver = TransferReceiver(events=self.events)

    def announce(self, transfer_id="t1", size=10):
        self.receiver.handle_frame(
            MetadataAnnounce(transfer_id, "file.bin", size, "application/octet-stream").to_json()
        )

    def test_reassembles_in_order(self):
        self.announce(size=6)
        self.receiver.handle_frame(encode_chunk("t1", 0, b"abc"))
        self.receiver.handle_frame(encode_chunk("t1", 1, b"def"))

        record = self.receiver.get_record("t1")
        self.assertIs(record.status, TransferStatus.COMPLETED)
        self.assertEqual(self.completed[0].payload, b"abcdef")

    def test_chunk_before_metadata_dropped(self):
        self.receiver.handle_frame(encode_chunk("t1", 0, b"abc"))
        self.assertIsNone(self.receiver.get_record("t1"))
        self.assertEqual(self.receiver.frames_dropped, 1)

    def test_out_of_order_chunk_dropped(self):
        self.announce(size=6)
        self.receiver.handle_frame(encode_chunk("t1", 1, b"def"))

        record = self.receiver.get_record("t1")
        self.assertEqual(record.transferred, 0)
        self.assertEqual(self.receiver.frames_dropped, 1)

    def test_overflow_dropped(self):
        self.announce(size=4)
        self.receiver.handle_frame(encode_chunk("t1", 0, b"abcdef"))

        record = self.receiver.get_record("t1")
        self.assertEqual(record.transferred, 0)
        self.assertIs(record.status, TransferStatus.IN_PROGRESS)

    def test_malformed_frames_never_raise(self):
        self.receiver.handle_frame("{")
        self.receiver.handle_frame(b"\x09")
        self.assertEqual(self.receiver.frames_dropped, 2)

    def test_duplicate_metadata_ignored(self):
        self.announce(size=6)
        self.receiver.handle_frame(encode_chunk("t1", 0, b"abc"))
        self.announce(size=100)

        self.assertEqual(self.receiver.get_record("t1").total_size, 6)
        self.assertEqual(self.receiver.get_record("t1").transferred, 3)

    def test_interleaved_transfers(self):
        self.announce("t1", size=4)
        self.announce("t2", size=4)
        self.receiver.handle_frame(encode_chunk("t2", 0, b"zz"))
        self.receiver.handle_frame(encode_chunk("t1", 0, b"aa"))
        self.receiver.handle_frame(encode_chunk("t1", 1, b"bb"))
        self.receiver.handle_frame(encode_chunk("t2", 1, b"yy"))

        payloads = {e.record.id: e.payload for e in self.completed}
        self.assertEqual(payloads, {'t1': b"aabb", 't2': b"zzyy"})

    def test_pause_and_resume_notices(self):
        self.announce()
        self.receiver.handle_frame(TransferControl("t1", ControlAction.PAUSE).to_json())
        self.assertIs(self.receiver.get_record("t1").status, TransferStatus.PAUSED)

        self.receiver.handle_frame(TransferControl("t1", ControlAction.RESUME).to_json())
        self.assertIs(self.receiver.get_record("t1").status, TransferStatus.IN_PROGRESS)

    def test_fail_incomplete(self):
        self.announce("t1", size=4)
        self.announce("t2", size=2)
        self.receiver.handle_frame(encode_chunk("t2", 0, b"ok"))

        self.receiver.fail_incomplete("Connection lost")

        self.assertIs(self.receiver.get_record("t1").status, TransferStatus.FAILED)
        self.assertEqual(self.receiver.get_record("t1").error, "Connection lost")
        self.assertIs(self.receiver.get_record("t2").status, TransferStatus.COMPLETED)

    def test_remove(self):
        self.announce()
        self.assertTrue(self.receiver.remove("t1"))
        self.assertFalse(self.receiver.remove("t1"))


class TestRecords(unittest.TestCase):

    def make(self, size):
        return TransferRecord(
            id="t1", name="f", total_size=size, mime_type="text/plain",
            direction=Direction.OUTBOUND,
        )

    def test_progress(self):
        record = self.make(40000)
        record.transferred = 16384
        self.assertAlmostEqual(record.progress_percent, 40.96)

    def test_empty_payload_progress(self):
        record = self.make(0)
        self.assertEqual(record.progress_percent, 0)
        record.status = TransferStatus.COMPLETED
        self.assertEqual(record.progress_percent, 100)

    def test_to_dict(self):
        data = self.make(10).to_dict()
        self.assertEqual(data['direction'], 'outbound')
        self.assertEqual(data['status'], 'pending')


if __name__ == '__main__':
    unittest.main()
