#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Packet framing tests: header layout, round trips, and every decode failure.
"""

import dataclasses
import io
import struct
import unittest

from chunksync import (
    HEADER_SIZE,
    InvalidType,
    Packet,
    PacketType,
    ProtocolError,
    TruncatedStream,
    UnknownPacketCode,
    ValidationError,
)


class TrickleStream:
    """Readable stream that hands out at most one byte per read()."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def read(self, size: int) -> bytes:
        chunk = self._data[self._pos:self._pos + min(size, 1)]
        self._pos += len(chunk)
        return chunk


class TestPacketTypeCodes(unittest.TestCase):

    def test_codes_are_stable(self):
        self.assertEqual(
            [(t.name, t.value) for t in PacketType],
            [
                ("FILENAME", 0),
                ("NEXT_CHUNK_DIGEST", 1),
                ("NEXT_CHUNK_CONTENT", 2),
                ("HAVE_CHUNK", 3),
                ("NEED_CHUNK", 4),
                ("DONE", 5),
            ],
        )

    def test_header_is_five_bytes(self):
        self.assertEqual(HEADER_SIZE, 5)


class TestPacketEncoding(unittest.TestCase):

    def test_header_layout(self):
        packet = Packet(PacketType.NEXT_CHUNK_DIGEST, b"just a test")
        self.assertEqual(packet.encode(), b"\x01\x00\x00\x00\x0bjust a test")

    def test_empty_payload(self):
        self.assertEqual(Packet(PacketType.DONE).encode(), b"\x05\x00\x00\x00\x00")

    def test_length_is_big_endian(self):
        payload = b"x" * 0x0102
        encoded = Packet(PacketType.NEXT_CHUNK_CONTENT, payload).encode()
        self.assertEqual(encoded[:5], b"\x02\x00\x00\x01\x02")
        self.assertEqual(len(encoded), 5 + len(payload))

    def test_invalid_type_int(self):
        with self.assertRaises(InvalidType):
            Packet(7, b"").encode()

    def test_invalid_type_name(self):
        with self.assertRaises(InvalidType) as ctx:
            Packet("done").encode()
        self.assertIsInstance(ctx.exception, ValidationError)

    def test_write_to_flushes(self):
        class Sink(io.BytesIO):
            flushed = 0

            def flush(self):
                self.flushed += 1
                super().flush()

        sink = Sink()
        written = Packet(PacketType.HAVE_CHUNK).write_to(sink)
        self.assertEqual(written, 5)
        self.assertEqual(sink.getvalue(), b"\x03\x00\x00\x00\x00")
        self.assertEqual(sink.flushed, 1)


class TestPacketDecoding(unittest.TestCase):

    def test_round_trip_every_type(self):
        payloads = [b"", b"\x00", b"some filename", bytes(range(256)) * 3]
        for packet_type in PacketType:
            for payload in payloads:
                with self.subTest(type=packet_type, size=len(payload)):
                    packet = Packet(packet_type, payload)
                    stream = io.BytesIO(packet.encode())
                    self.assertEqual(Packet.decode_from(stream), packet)
                    self.assertEqual(stream.read(), b"")

    def test_sequential_packets(self):
        packets = [
            Packet(PacketType.FILENAME, b"a.txt"),
            Packet(PacketType.NEXT_CHUNK_DIGEST, b"d" * 16),
            Packet(PacketType.DONE),
        ]
        stream = io.BytesIO(b"".join(p.encode() for p in packets))
        self.assertEqual([Packet.decode_from(stream) for _ in packets], packets)

    def test_short_reads_are_retried(self):
        packet = Packet(PacketType.NEXT_CHUNK_CONTENT, b"1234567890")
        self.assertEqual(Packet.decode_from(TrickleStream(packet.encode())), packet)

    def test_empty_stream(self):
        with self.assertRaises(TruncatedStream):
            Packet.decode_from(io.BytesIO(b""))

    def test_partial_header(self):
        with self.assertRaises(TruncatedStream):
            Packet.decode_from(io.BytesIO(b"\x01\x00\x00"))

    def test_payload_shorter_than_declared(self):
        data = struct.pack(">BI", 2, 10) + b"12345"
        with self.assertRaises(TruncatedStream) as ctx:
            Packet.decode_from(io.BytesIO(data))
        self.assertIsInstance(ctx.exception, ProtocolError)

    def test_unknown_code(self):
        for code in (6, 42, 255):
            with self.subTest(code=code):
                with self.assertRaises(UnknownPacketCode) as ctx:
                    Packet.decode_from(io.BytesIO(struct.pack(">BI", code, 0)))
                self.assertEqual(ctx.exception.code_value, code)


class TestPacketValue(unittest.TestCase):

    def test_equality_is_by_content(self):
        self.assertEqual(Packet(PacketType.DONE), Packet(PacketType.DONE, b""))
        self.assertNotEqual(Packet(PacketType.FILENAME, b"a"), Packet(PacketType.FILENAME, b"b"))
        self.assertNotEqual(Packet(PacketType.HAVE_CHUNK), Packet(PacketType.NEED_CHUNK))

    def test_payload_is_normalized_to_bytes(self):
        packet = Packet(PacketType.NEXT_CHUNK_CONTENT, bytearray(b"abc"))
        self.assertIsInstance(packet.payload, bytes)
        self.assertEqual(packet, Packet(PacketType.NEXT_CHUNK_CONTENT, b"abc"))

    def test_immutable(self):
        packet = Packet(PacketType.DONE)
        with self.assertRaises(dataclasses.FrozenInstanceError):
            packet.payload = b"changed"

    def test_hashable(self):
        self.assertEqual(len({Packet(PacketType.DONE), Packet(PacketType.DONE)}), 1)

    def test_repr(self):
        self.assertEqual(repr(Packet(PacketType.HAVE_CHUNK)), "Packet(have_chunk, 0 bytes)")


if __name__ == "__main__":
    unittest.main()
