#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Receiver tests against scripted sender packets, on a real temporary directory.
"""

import hashlib
import io
import os
import shutil
import stat
import tempfile
import unittest

from chunksync import (
    Config,
    FileIOError,
    Packet,
    PacketType,
    ProtocolError,
    Receiver,
    ReceiverState,
    TruncatedStream,
    UnexpectedPacketType,
    atomic_output,
)


def wire(*packets):
    return b"".join(Packet(*p).encode() for p in packets)


def md5(data: bytes) -> bytes:
    return hashlib.md5(data).digest()


class ReceiverTestCase(unittest.TestCase):

    chunk_size = 100
    filename = "some filename"

    def setUp(self):
        Config.reset_defaults()
        self.test_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.test_dir, self.filename)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def write_local(self, data: bytes) -> None:
        with open(self.path, "wb") as f:
            f.write(data)

    def read_local(self) -> bytes:
        with open(self.path, "rb") as f:
            return f.read()

    def run_receiver(self, incoming: bytes, chunk_size=None):
        output = io.BytesIO()
        receiver = Receiver(chunk_size or self.chunk_size, io.BytesIO(incoming), output,
                            dest_dir=self.test_dir)
        return receiver, output

    def leftover_files(self):
        return sorted(set(os.listdir(self.test_dir)) - {self.filename})


class TestReceiver(ReceiverTestCase):

    def test_skips_chunk_it_has(self):
        local_data = b"here is my local data"
        self.write_local(local_data)
        receiver, output = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_DIGEST, md5(local_data)),
            (PacketType.DONE,),
        ))
        stats = receiver.run()

        self.assertEqual(output.getvalue(), wire((PacketType.HAVE_CHUNK,)))
        self.assertEqual(self.read_local(), local_data)
        self.assertEqual(stats.matched_chunks, 1)
        self.assertEqual(receiver.state, ReceiverState.FINISHED)
        self.assertEqual(self.leftover_files(), [])

    def test_requests_chunk_it_does_not_have(self):
        self.write_local(b"here is my local data")
        remote_data = b"here is some different data"
        receiver, output = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_DIGEST, md5(remote_data)),
            (PacketType.NEXT_CHUNK_CONTENT, remote_data),
            (PacketType.DONE,),
        ))
        stats = receiver.run()

        self.assertEqual(output.getvalue(), wire((PacketType.NEED_CHUNK,)))
        self.assertEqual(self.read_local(), remote_data)
        self.assertEqual(stats.literal_chunks, 1)
        self.assertEqual(stats.literal_data, len(remote_data))

    def test_missing_original_is_created(self):
        receiver, output = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_DIGEST, md5(b"new")),
            (PacketType.NEXT_CHUNK_CONTENT, b"new"),
            (PacketType.DONE,),
        ))
        receiver.run()
        self.assertEqual(self.read_local(), b"new")
        self.assertEqual(stat.S_IMODE(os.stat(self.path).st_mode), 0o644)

    def test_done_right_away_empties_file(self):
        self.write_local(b"stale")
        receiver, output = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.DONE,),
        ))
        receiver.run()
        self.assertEqual(self.read_local(), b"")
        self.assertEqual(output.getvalue(), b"")

    def test_shuffled_chunks(self):
        self.write_local(b"67890")
        receiver, output = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_DIGEST, md5(b"12345")),
            (PacketType.NEXT_CHUNK_CONTENT, b"12345"),
            (PacketType.NEXT_CHUNK_DIGEST, md5(b"67890")),
            (PacketType.DONE,),
        ), chunk_size=5)
        receiver.run()
        self.assertEqual(output.getvalue(), wire((PacketType.NEED_CHUNK,), (PacketType.HAVE_CHUNK,)))
        self.assertEqual(self.read_local(), b"1234567890")

    def test_only_basename_is_used(self):
        receiver, _ = self.run_receiver(wire(
            (PacketType.FILENAME, b"../../elsewhere/target.txt"),
            (PacketType.DONE,),
        ))
        receiver.run()
        self.assertEqual(receiver.path, receiver.dest_dir / "target.txt")
        self.assertTrue(os.path.exists(os.path.join(self.test_dir, "target.txt")))

    def test_rejects_unusable_names(self):
        for name in (b"", b"..", b"dir/", b"a\x00b"):
            with self.subTest(name=name):
                receiver, _ = self.run_receiver(wire((PacketType.FILENAME, name), (PacketType.DONE,)))
                with self.assertRaises(ProtocolError):
                    receiver.run()

    def test_preserves_permissions(self):
        self.write_local(b"old")
        os.chmod(self.path, 0o600)
        receiver, _ = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_DIGEST, md5(b"fresh")),
            (PacketType.NEXT_CHUNK_CONTENT, b"fresh"),
            (PacketType.DONE,),
        ))
        receiver.run()
        self.assertEqual(stat.S_IMODE(os.stat(self.path).st_mode), 0o600)

    def test_directory_in_the_way(self):
        os.mkdir(self.path)
        receiver, _ = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.DONE,),
        ))
        with self.assertRaises(FileIOError):
            receiver.run()
        self.assertTrue(os.path.isdir(self.path))
        self.assertEqual(self.leftover_files(), [])

    def test_rejects_digest_of_wrong_length(self):
        receiver, output = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_DIGEST, md5(b"chunk")[:8]),
            (PacketType.DONE,),
        ))
        with self.assertRaises(ProtocolError):
            receiver.run()
        self.assertEqual(output.getvalue(), b"")
        self.assertFalse(os.path.exists(self.path))
        self.assertEqual(self.leftover_files(), [])


class TestReceiverAtomicity(ReceiverTestCase):

    original = b"original content that must survive"

    def setUp(self):
        super().setUp()
        self.write_local(self.original)

    def test_stream_ends_before_content(self):
        receiver, output = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_DIGEST, md5(b"something else")),
        ))
        with self.assertRaises(TruncatedStream):
            receiver.run()
        self.assertEqual(output.getvalue(), wire((PacketType.NEED_CHUNK,)))
        self.assertEqual(receiver.state, ReceiverState.AWAIT_CONTENT)
        self.assertEqual(self.read_local(), self.original)
        self.assertEqual(self.leftover_files(), [])

    def test_stream_ends_before_done(self):
        receiver, _ = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_DIGEST, md5(b"something else")),
            (PacketType.NEXT_CHUNK_CONTENT, b"something else"),
        ))
        with self.assertRaises(TruncatedStream):
            receiver.run()
        self.assertEqual(self.read_local(), self.original)
        self.assertEqual(self.leftover_files(), [])

    def test_desynchronized_sender(self):
        receiver, _ = self.run_receiver(wire(
            (PacketType.FILENAME, self.filename.encode()),
            (PacketType.NEXT_CHUNK_CONTENT, b"out of turn"),
        ))
        with self.assertRaises(UnexpectedPacketType):
            receiver.run()
        self.assertEqual(self.read_local(), self.original)
        self.assertEqual(self.leftover_files(), [])

    def test_first_packet_must_be_filename(self):
        receiver, _ = self.run_receiver(wire((PacketType.DONE,)))
        with self.assertRaises(UnexpectedPacketType):
            receiver.run()
        self.assertEqual(self.read_local(), self.original)


class TestAtomicOutput(ReceiverTestCase):

    def test_replaces_on_success(self):
        self.write_local(b"before")
        with atomic_output(self.path) as handle:
            handle.write(b"after")
            self.assertEqual(self.read_local(), b"before")
        self.assertEqual(self.read_local(), b"after")
        self.assertEqual(self.leftover_files(), [])

    def test_discards_on_error(self):
        self.write_local(b"before")
        with self.assertRaises(RuntimeError):
            with atomic_output(self.path) as handle:
                handle.write(b"partial")
                raise RuntimeError("boom")
        self.assertEqual(self.read_local(), b"before")
        self.assertEqual(self.leftover_files(), [])

    def test_missing_directory(self):
        with self.assertRaises(FileIOError):
            with atomic_output(os.path.join(self.test_dir, "nope", "file")):
                pass


if __name__ == "__main__":
    unittest.main()
