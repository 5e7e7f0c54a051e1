#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
chunksync: Digest-Addressed Delta Transfer for a Single File
============================================================

A sender holding the authoritative content of a file and a receiver holding a
possibly stale copy talk over one byte stream. The sender announces a digest
for every fixed-size chunk of its data; the receiver searches its old copy for
a window with the same digest and only asks for the chunk content when no
such window exists.

Quick Start:
-----------
    >>> from chunksync import sync_files
    >>>
    >>> sender_stats, receiver_stats = sync_files("new/report.csv", "old/report.csv")
    >>> print(f"Reused: {receiver_stats.efficiency:.1%}")

Wire Format:
-----------
    byte 0       type code (0-5)
    bytes 1..4   payload length, unsigned 32-bit, big-endian
    bytes 5..N   payload

    filename(0) next_chunk_digest(1) next_chunk_content(2)
    have_chunk(3) need_chunk(4) done(5)

Matching:
--------
    For every announced digest the receiver reads a window of
    SCAN_WINDOW_CHUNKS * chunk_size bytes from its cursor in the original file
    and slides one byte at a time, hashing each chunk-sized slice. The first
    hit is reused and the cursor moves past it. A miss leaves the cursor where
    it was, so later chunks can still be found in the same region.

Known Limitations:
-----------------
    - Two different chunks with the same digest are treated as equal.
    - No whole-file checksum is exchanged when the transfer completes.
    - Every candidate window is hashed in full (no rolling checksum), so a
      miss costs one digest per byte of the scan window.

CLI Usage:
---------
    $ chunksync sync new/report.csv old/report.csv --stats
    $ chunksync send report.csv | ssh host chunksync receive --dest-dir /srv
    $ chunksync benchmark --size 128 --pattern insert-middle
"""

from __future__ import annotations

__version__ = "1.0.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Protocol
    'PacketType',
    'Packet',
    'PacketStream',
    'SenderState',
    'ReceiverState',
    'SENDER_TRANSITIONS',
    'RECEIVER_TRANSITIONS',
    'read_exact',

    # Transfer endpoints
    'Sender',
    'Receiver',
    'ChunkLocator',
    'atomic_output',
    'sync_files',
    'TransferStats',

    # Data sources
    'DataSource',
    'BytesDataSource',
    'FileDataSource',

    # Digests
    'DigestType',
    'DigestRegistry',

    # Exceptions
    'SyncError',
    'ValidationError',
    'InvalidType',
    'ProtocolError',
    'TruncatedStream',
    'UnknownPacketCode',
    'UnexpectedPacketType',
    'FileIOError',

    # Configuration
    'Config',
    'configure_logging',
    'validate_chunk_size',
    'validate_window_chunks',

    # Constants
    'DEFAULT_CHUNK_SIZE',
    'DEFAULT_SCAN_WINDOW_CHUNKS',
    'DIGEST_LENGTH',
    'HEADER_SIZE',
    'MAX_PAYLOAD_SIZE',

    # Utilities and CLI
    'format_size',
    'format_time',
    'create_parser',
    'main',
]

import os
import sys
import struct
import shutil
import socket
import hashlib
import logging
import argparse
import tempfile
import threading
import time
import random
from pathlib import Path
from contextlib import contextmanager
from typing import (
    Optional, Tuple, List, Dict, Union, Any, Callable, Iterable, Iterator,
    BinaryIO, ClassVar, FrozenSet
)
from enum import Enum, IntEnum
from dataclasses import dataclass
from abc import ABC, abstractmethod

import xxhash


# ============================================================================
# PROTOCOL CONSTANTS
# ============================================================================

DEFAULT_CHUNK_SIZE = 4096
DEFAULT_SCAN_WINDOW_CHUNKS = 100
MAX_CHUNK_SIZE = 1 << 24

HEADER_FORMAT = '>BI'                          # type code, payload length
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)   # always 5
MAX_PAYLOAD_SIZE = 0xFFFFFFFF
DIGEST_LENGTH = 16

DEFAULT_FILE_MODE = 0o644


# ============================================================================
# DIGEST TYPES
# ============================================================================

class DigestType(Enum):
    """
    Chunk digest algorithms. Both produce 16-byte digests.

    The digest is not announced on the wire: sender and receiver must be
    configured with the same type, exactly like the chunk size.

    - MD5: cryptographic, default.
    - XXH128: xxHash3 128-bit, much faster, non-cryptographic. Only suitable
      when the peer is trusted.
    """
    MD5 = "md5"
    XXH128 = "xxh128"


class DigestRegistry:
    """
    Factory for digest functions.

    Returned callables accept bytes or a memoryview so the scan-ahead search
    can hash slices of its window without copying them.

    Example:
        >>> digest = DigestRegistry.get_digest_function(DigestType.MD5)
        >>> len(digest(b"12345"))
        16
    """

    @classmethod
    def get_digest_function(cls, digest_type: DigestType) -> Callable[[Any], bytes]:
        """
        Get the digest function for a digest type.

        Raises:
            ValueError: If the digest type is not supported
        """
        if digest_type == DigestType.MD5:
            return cls._md5_digest
        elif digest_type == DigestType.XXH128:
            return cls._xxh128_digest
        raise ValueError(f"Unsupported digest type: {digest_type}")

    @staticmethod
    def _md5_digest(data: Any) -> bytes:
        return hashlib.md5(data).digest()

    @staticmethod
    def _xxh128_digest(data: Any) -> bytes:
        return xxhash.xxh3_128(data).digest()


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration shared by every Sender and Receiver in the process.

    Chunk size and digest type are out-of-band settings: both endpoints of a
    transfer must use the same values or no digest will ever match.

    Attributes:
        CHUNK_SIZE (int): Chunk size used when none is passed explicitly
        SCAN_WINDOW_CHUNKS (int): Scan-ahead window, in chunks
        DIGEST_TYPE (DigestType): Chunk digest algorithm
        VERBOSE_LOGGING (bool): Log at INFO level even without -v

    Example:
        >>> Config.CHUNK_SIZE = 8192
        >>> Config.reset_defaults()
    """
    CHUNK_SIZE: ClassVar[int] = DEFAULT_CHUNK_SIZE
    SCAN_WINDOW_CHUNKS: ClassVar[int] = DEFAULT_SCAN_WINDOW_CHUNKS
    DIGEST_TYPE: ClassVar[DigestType] = DigestType.MD5
    VERBOSE_LOGGING: ClassVar[bool] = False

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "CHUNK_SIZE": DEFAULT_CHUNK_SIZE,
            "SCAN_WINDOW_CHUNKS": DEFAULT_SCAN_WINDOW_CHUNKS,
            "DIGEST_TYPE": DigestType.MD5,
            "VERBOSE_LOGGING": False,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

logger = logging.getLogger('chunksync')


def configure_logging(verbose: int = 0) -> None:
    """
    Configure logging for CLI use.

    Log records always go to stderr: in send/receive mode stdout carries
    protocol bytes.

    Args:
        verbose: 0 for warnings only, 1 for INFO, 2 or more for DEBUG
    """
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose >= 1 or Config.VERBOSE_LOGGING:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )
    logger.setLevel(level)


# ============================================================================
# CUSTOM EXCEPTIONS
# ============================================================================

class SyncError(Exception):
    """
    Base exception for all chunksync errors.

    Every error is fatal for the transfer it happens in; nothing is retried.

    Attributes:
        message: Human-readable error description
        code: Numeric error code, used as the CLI exit status
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(SyncError):
    """Raised for invalid arguments (chunk sizes, payload sizes, ...)."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class InvalidType(ValidationError):
    """
    Raised when encoding a packet whose type is not a PacketType.

    This is a programming error on the local side, never a network condition.
    """


class ProtocolError(SyncError):
    """Raised for wire-level failures."""
    def __init__(self, message: str, code: int = 5) -> None:
        super().__init__(message, code)


class TruncatedStream(ProtocolError):
    """The stream ended before a whole header or payload could be read."""


class UnknownPacketCode(ProtocolError):
    """A header carried a type code outside 0-5."""
    def __init__(self, code_value: int) -> None:
        super().__init__(f"invalid packet code {code_value}")
        self.code_value = code_value


class UnexpectedPacketType(ProtocolError):
    """
    A well-formed packet arrived whose type is not legal at this point.

    This means the two endpoints are out of step.
    """
    def __init__(self, received: 'PacketType', expected: Iterable['PacketType']) -> None:
        self.received = received
        self.expected = frozenset(expected)
        names = ", ".join(sorted(t.name.lower() for t in self.expected))
        super().__init__(
            f"unexpected packet type: {received.name.lower()} (expected one of: {names})"
        )


class FileIOError(SyncError):
    """Wraps OS-level file errors with transfer context."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


# ============================================================================
# VALIDATION
# ============================================================================

def validate_chunk_size(chunk_size: int) -> None:
    """
    Validate a chunk size.

    Raises:
        ValidationError: If chunk_size is not an int in 1..MAX_CHUNK_SIZE
    """
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int):
        raise ValidationError(f"chunk size must be an integer, got {type(chunk_size).__name__}")
    if chunk_size <= 0:
        raise ValidationError(f"chunk size must be positive, got {chunk_size}")
    if chunk_size > MAX_CHUNK_SIZE:
        raise ValidationError(f"chunk size {chunk_size} exceeds maximum {MAX_CHUNK_SIZE}")


def validate_window_chunks(window_chunks: int) -> None:
    if isinstance(window_chunks, bool) or not isinstance(window_chunks, int) or window_chunks <= 0:
        raise ValidationError(f"scan window must be a positive number of chunks, got {window_chunks!r}")


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def format_size(size: float) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}" if unit != 'B' else f"{size} {unit}"
        size = size / 1024.0
    return f"{size:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format time duration in human-readable format.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"


def read_exact(stream: Any, size: int) -> bytes:
    """
    Read up to size bytes, retrying short reads until EOF.

    Pipes and sockets may hand back fewer bytes than asked for; only an empty
    read means the stream is exhausted. The result is shorter than size only
    at EOF.
    """
    chunks: List[bytes] = []
    remaining = size
    while remaining > 0:
        part = stream.read(remaining)
        if not part:
            break
        chunks.append(part)
        remaining -= len(part)
    return b"".join(chunks)


# ============================================================================
# TRANSFER STATISTICS
# ============================================================================

@dataclass
class TransferStats:
    """
    Statistics for one transfer, from either endpoint's point of view.

    Attributes:
        chunks: Chunks negotiated
        matched_chunks: Chunks the receiver already had (have_chunk)
        literal_chunks: Chunks whose content crossed the wire (need_chunk)
        matched_data: Bytes reused from the receiver's original file
        literal_data: Bytes of chunk content sent over the wire
        bytes_read: Protocol bytes read from the stream
        bytes_written: Protocol bytes written to the stream
        elapsed: Wall-clock duration in seconds
    """
    chunks: int = 0
    matched_chunks: int = 0
    literal_chunks: int = 0
    matched_data: int = 0
    literal_data: int = 0
    bytes_read: int = 0
    bytes_written: int = 0
    elapsed: float = 0.0

    def record_match(self, size: int) -> None:
        self.chunks += 1
        self.matched_chunks += 1
        self.matched_data += size

    def record_literal(self, size: int) -> None:
        self.chunks += 1
        self.literal_chunks += 1
        self.literal_data += size

    @property
    def total_data(self) -> int:
        return self.matched_data + self.literal_data

    @property
    def efficiency(self) -> float:
        """Fraction of the file's bytes that did not need to be sent."""
        total = self.total_data
        return self.matched_data / total if total > 0 else 0.0

    def summary(self) -> str:
        return "\n".join([
            f"Chunks: {self.chunks:,} (matched {self.matched_chunks:,}, literal {self.literal_chunks:,})",
            f"Total file size: {format_size(self.total_data)}",
            f"Matched data: {format_size(self.matched_data)}",
            f"Literal data: {format_size(self.literal_data)}",
            f"Bytes read: {format_size(self.bytes_read)}",
            f"Bytes written: {format_size(self.bytes_written)}",
            f"Efficiency: {self.efficiency:.1%}",
            f"Elapsed: {format_time(self.elapsed)}",
        ])

    def print_stats(self, file: Any = None) -> None:
        print(file=file or sys.stdout)
        print(self.summary(), file=file or sys.stdout)

    def __repr__(self) -> str:
        return (
            f"TransferStats(chunks={self.chunks}, matched={self.matched_chunks}, "
            f"literal={self.literal_chunks}, efficiency={self.efficiency:.1%})"
        )


# ============================================================================
# PACKETS
# ============================================================================

class PacketType(IntEnum):
    """
    Packet kinds. The values are the on-wire type codes and must never be
    reordered.
    """
    FILENAME = 0
    NEXT_CHUNK_DIGEST = 1
    NEXT_CHUNK_CONTENT = 2
    HAVE_CHUNK = 3
    NEED_CHUNK = 4
    DONE = 5


@dataclass(frozen=True)
class Packet:
    """
    One protocol message: a type and an opaque payload.

    Packets compare equal when both type and payload are equal. They are
    built right before being written and right after being parsed, and never
    change in between.

    Example:
        >>> packet = Packet(PacketType.NEXT_CHUNK_DIGEST, b"just a test")
        >>> packet.encode()[:5]
        b'\\x01\\x00\\x00\\x00\\x0b'
    """
    type: PacketType
    payload: bytes = b""

    def __post_init__(self) -> None:
        if not isinstance(self.payload, bytes):
            object.__setattr__(self, 'payload', bytes(self.payload))

    @property
    def code(self) -> int:
        """
        The wire code for this packet's type.

        Raises:
            InvalidType: If type is not a PacketType member
        """
        if not isinstance(self.type, PacketType):
            raise InvalidType(f"unknown packet type {self.type!r}")
        return int(self.type)

    def encode(self) -> bytes:
        """
        Serialize to exactly HEADER_SIZE + len(payload) bytes.

        Raises:
            InvalidType: If type is not a PacketType member
            ValidationError: If the payload does not fit the 32-bit length field
        """
        code = self.code
        size = len(self.payload)
        if size > MAX_PAYLOAD_SIZE:
            raise ValidationError(f"payload too large: {size} > {MAX_PAYLOAD_SIZE}")
        return struct.pack(HEADER_FORMAT, code, size) + self.payload

    def write_to(self, stream: Any) -> int:
        """Write the encoded packet and flush. Returns the bytes written."""
        data = self.encode()
        stream.write(data)
        stream.flush()
        return len(data)

    @classmethod
    def decode_from(cls, stream: Any) -> 'Packet':
        """
        Read exactly one packet from a binary stream.

        Raises:
            TruncatedStream: If the header or payload is cut short
            UnknownPacketCode: If the type byte is outside 0-5
        """
        header = read_exact(stream, HEADER_SIZE)
        if len(header) < HEADER_SIZE:
            raise TruncatedStream(
                f"unexpected end of stream: needed {HEADER_SIZE} header bytes, got {len(header)}"
            )
        code, size = struct.unpack(HEADER_FORMAT, header)
        try:
            packet_type = PacketType(code)
        except ValueError:
            raise UnknownPacketCode(code) from None
        payload = read_exact(stream, size)
        if len(payload) < size:
            raise TruncatedStream(
                f"unexpected end of stream: needed {size} payload bytes, got {len(payload)}"
            )
        return cls(packet_type, payload)

    @property
    def wire_size(self) -> int:
        return HEADER_SIZE + len(self.payload)

    def __repr__(self) -> str:
        name = self.type.name.lower() if isinstance(self.type, PacketType) else repr(self.type)
        return f"Packet({name}, {len(self.payload)} bytes)"


# ============================================================================
# PROTOCOL STATE MACHINE
# ============================================================================
#
# Each endpoint is a small state machine. The tables below hold, for every
# state in which an endpoint blocks on the stream, the set of packet types
# that are legal to receive next. PacketStream.receive() enforces them; any
# other packet is a desynchronization and aborts the transfer.

class SenderState(Enum):
    ANNOUNCE_FILENAME = "announce_filename"
    SEND_DIGEST = "send_digest"
    AWAIT_REPLY = "await_reply"
    SEND_CONTENT = "send_content"
    ANNOUNCE_DONE = "announce_done"
    FINISHED = "finished"


class ReceiverState(Enum):
    AWAIT_FILENAME = "await_filename"
    AWAIT_DIGEST_OR_DONE = "await_digest_or_done"
    AWAIT_CONTENT = "await_content"
    FINALIZE = "finalize"
    FINISHED = "finished"


SENDER_TRANSITIONS: Dict[SenderState, FrozenSet[PacketType]] = {
    SenderState.AWAIT_REPLY: frozenset({PacketType.HAVE_CHUNK, PacketType.NEED_CHUNK}),
}

RECEIVER_TRANSITIONS: Dict[ReceiverState, FrozenSet[PacketType]] = {
    ReceiverState.AWAIT_FILENAME: frozenset({PacketType.FILENAME}),
    ReceiverState.AWAIT_DIGEST_OR_DONE: frozenset({PacketType.NEXT_CHUNK_DIGEST, PacketType.DONE}),
    ReceiverState.AWAIT_CONTENT: frozenset({PacketType.NEXT_CHUNK_CONTENT}),
}


class PacketStream:
    """
    Sends and receives whole packets over a pair of binary streams.

    Every send is flushed immediately: the peer is blocked waiting for it.
    Nothing is buffered between calls.

    Args:
        input: Readable binary stream (read(n))
        output: Writable binary stream (write(b), flush())
    """

    def __init__(self, input: Any, output: Any) -> None:
        self.input = input
        self.output = output
        self.bytes_read = 0
        self.bytes_written = 0

    def send(self, packet_type: PacketType, payload: bytes = b"") -> Packet:
        packet = Packet(packet_type, payload)
        self.bytes_written += packet.write_to(self.output)
        logger.debug(f"sent {packet!r}")
        return packet

    def receive(self, expected_types: Union[PacketType, Iterable[PacketType]]) -> Packet:
        """
        Read one packet and check it against the legal types.

        Args:
            expected_types: A PacketType or an iterable of them

        Raises:
            UnexpectedPacketType: If the packet's type is not expected
            TruncatedStream, UnknownPacketCode: On framing errors
        """
        if isinstance(expected_types, PacketType):
            expected: FrozenSet[PacketType] = frozenset({expected_types})
        else:
            expected = frozenset(expected_types)
        packet = Packet.decode_from(self.input)
        self.bytes_read += packet.wire_size
        logger.debug(f"received {packet!r}")
        if packet.type not in expected:
            raise UnexpectedPacketType(packet.type, expected)
        return packet


# ============================================================================
# DATA SOURCES
# ============================================================================

class DataSource(ABC):
    """
    Random-access, read-only view of some content.

    The sender reads its chunks from a DataSource; the receiver scans its
    original file through one.
    """

    @abstractmethod
    def read_chunk(self, size: int) -> bytes:
        """Read up to size bytes from the current position (empty at EOF)."""
        raise NotImplementedError

    @abstractmethod
    def seek(self, offset: int) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Close the data source and release resources."""
        pass

    def __enter__(self) -> 'DataSource':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class BytesDataSource(DataSource):
    """
    DataSource over in-memory bytes.

    Example:
        >>> source = BytesDataSource(b"1234567890")
        >>> source.read_chunk(5)
        b'12345'
    """

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._position = 0

    def read_chunk(self, size: int) -> bytes:
        chunk = self._data[self._position:self._position + size]
        self._position += len(chunk)
        return chunk

    def seek(self, offset: int) -> None:
        self._position = max(0, min(offset, len(self._data)))


class FileDataSource(DataSource):
    """
    DataSource that reads from a file on disk, opened read-only.

    The file is opened on __enter__ and closed on __exit__.

    Example:
        >>> with FileDataSource("report.csv") as source:
        ...     first = source.read_chunk(4096)
    """

    def __init__(self, filepath: Union[str, Path]) -> None:
        self.filepath = str(filepath)
        self._file: Optional[BinaryIO] = None

    def __enter__(self) -> 'FileDataSource':
        """
        Raises:
            FileIOError: If the file cannot be opened
        """
        try:
            self._file = open(self.filepath, 'rb')
        except OSError as e:
            raise FileIOError(f"Cannot open file {self.filepath}: {e}")
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def read_chunk(self, size: int) -> bytes:
        if not self._file:
            raise RuntimeError("File not opened. Use 'with' statement.")
        return self._file.read(size)

    def seek(self, offset: int) -> None:
        if not self._file:
            raise RuntimeError("File not opened. Use 'with' statement.")
        self._file.seek(offset)

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None


def _chunk_reader(data: Any) -> Callable[[int], bytes]:
    """Return a read(n) callable for a DataSource, raw bytes or a binary file."""
    if isinstance(data, DataSource):
        return data.read_chunk
    if isinstance(data, (bytes, bytearray, memoryview)):
        return BytesDataSource(bytes(data)).read_chunk
    return lambda size: read_exact(data, size)


# ============================================================================
# SCAN-AHEAD MATCHING
# ============================================================================

class ChunkLocator:
    """
    The receiver's cursor into its original file, plus the scan-ahead search.

    find() reads a window of window_chunks * chunk_size bytes starting at the
    cursor and slides over it one byte at a time, hashing the chunk_size
    slice at each offset (shorter near the end of the window). The first
    offset whose digest equals the requested one wins: its bytes are returned
    and the cursor moves to ``start + offset + chunk_size``.

    On a miss the cursor stays where it was. The content is then fetched from
    the sender instead, and the next digest is searched for from the same
    place, which is what lets a missing or corrupted leading chunk be followed
    by chunks that are still reused.

    Digest equality is the only test: two different slices with the same
    digest are treated as the same content.

    Args:
        source: Original content, read through seek()/read_chunk()
        chunk_size: Chunk size shared with the sender
        window_chunks: Scan window size in chunks (default: Config)
        digest_type: Digest algorithm shared with the sender (default: Config)
        position: Initial cursor
    """

    def __init__(
        self,
        source: DataSource,
        chunk_size: int,
        window_chunks: Optional[int] = None,
        digest_type: Optional[DigestType] = None,
        position: int = 0,
    ) -> None:
        validate_chunk_size(chunk_size)
        if window_chunks is None:
            window_chunks = Config.SCAN_WINDOW_CHUNKS
        validate_window_chunks(window_chunks)
        self.source = source
        self.chunk_size = chunk_size
        self.window = window_chunks * chunk_size
        self.digest_type = digest_type or Config.DIGEST_TYPE
        self.position = position
        self._digest = DigestRegistry.get_digest_function(self.digest_type)

    def find(self, digest: bytes) -> Optional[bytes]:
        """
        Search for a slice with the given digest.

        Returns:
            The matched bytes, or None when nothing in the window matches
        """
        start = self.position
        self.source.seek(start)
        window = self.source.read_chunk(self.window)
        if not window:
            logger.debug(f"scan at {start}: end of original file")
            return None

        view = memoryview(window)
        chunk_size = self.chunk_size
        digest_of = self._digest
        for offset in range(len(window)):
            if digest_of(view[offset:offset + chunk_size]) == digest:
                self.position = start + offset + chunk_size
                logger.debug(f"scan at {start}: match at offset {offset}, cursor -> {self.position}")
                return bytes(view[offset:offset + chunk_size])

        self.position = start
        logger.debug(f"scan at {start}: no match in {len(window)} bytes")
        return None


# ============================================================================
# ATOMIC OUTPUT
# ============================================================================

@contextmanager
def atomic_output(path: Union[str, Path]) -> Iterator[BinaryIO]:
    """
    Scoped temporary file that replaces path on successful exit.

    The temporary file lives next to path so the final os.replace() stays on
    one filesystem. If the block raises, the temporary file is removed and
    path is left exactly as it was. The permission bits of an existing file
    are carried over to its replacement.

    Raises:
        FileIOError: If the temporary file cannot be created or promoted
    """
    path = Path(path)
    try:
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".chunksync", dir=str(path.parent)
        )
    except OSError as e:
        raise FileIOError(f"Cannot create temporary file in {path.parent}: {e}")

    promoted = False
    try:
        with os.fdopen(fd, 'wb') as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        try:
            if path.is_file():
                shutil.copymode(str(path), temp_name)
            else:
                os.chmod(temp_name, DEFAULT_FILE_MODE)
            os.replace(temp_name, str(path))
        except OSError as e:
            raise FileIOError(f"Cannot replace {path}: {e}")
        promoted = True
    finally:
        if not promoted:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass


# ============================================================================
# SENDER
# ============================================================================

class Sender:
    """
    Outbound side of a transfer.

    Announces the filename, then for every chunk of data sends its digest and,
    when the receiver asks for it, its content. Finishes with done. The
    sender never sees the receiver's file.

    Args:
        chunk_size: Chunk size shared with the receiver
        filename: Name announced to the receiver (str or bytes)
        data: DataSource, bytes, or a binary file object
        input: Stream the receiver's replies arrive on
        output: Stream packets are written to
        digest_type: Digest algorithm shared with the receiver (default: Config)

    Example:
        >>> with FileDataSource("report.csv") as data:
        ...     stats = Sender(4096, "report.csv", data, sock_in, sock_out).run()
    """

    def __init__(
        self,
        chunk_size: int,
        filename: Union[str, bytes],
        data: Any,
        input: Any,
        output: Any,
        digest_type: Optional[DigestType] = None,
    ) -> None:
        validate_chunk_size(chunk_size)
        self.chunk_size = chunk_size
        self.filename = filename
        self.data = data
        self.stream = PacketStream(input, output)
        self.digest_type = digest_type or Config.DIGEST_TYPE
        self.state = SenderState.ANNOUNCE_FILENAME
        self.stats = TransferStats()
        self._digest = DigestRegistry.get_digest_function(self.digest_type)

    def run(self) -> TransferStats:
        started = time.perf_counter()
        name = self.filename if isinstance(self.filename, bytes) else os.fsencode(self.filename)
        logger.info(f"sending {os.fsdecode(name)} in {self.chunk_size}-byte chunks")

        self.state = SenderState.ANNOUNCE_FILENAME
        self.stream.send(PacketType.FILENAME, name)

        read = _chunk_reader(self.data)
        while True:
            chunk = read(self.chunk_size)
            if not chunk:
                break
            self.state = SenderState.SEND_DIGEST
            self.stream.send(PacketType.NEXT_CHUNK_DIGEST, self._digest(chunk))

            self.state = SenderState.AWAIT_REPLY
            reply = self.stream.receive(SENDER_TRANSITIONS[self.state])
            if reply.type == PacketType.HAVE_CHUNK:
                self.stats.record_match(len(chunk))
                continue

            self.state = SenderState.SEND_CONTENT
            self.stream.send(PacketType.NEXT_CHUNK_CONTENT, chunk)
            self.stats.record_literal(len(chunk))

        self.state = SenderState.ANNOUNCE_DONE
        self.stream.send(PacketType.DONE)
        self.state = SenderState.FINISHED

        self.stats.bytes_read = self.stream.bytes_read
        self.stats.bytes_written = self.stream.bytes_written
        self.stats.elapsed = time.perf_counter() - started
        logger.info(f"sent {os.fsdecode(name)}: {self.stats!r}")
        return self.stats


# ============================================================================
# RECEIVER
# ============================================================================

class Receiver:
    """
    Inbound side of a transfer.

    Receives the filename, resolves it inside dest_dir (only the last path
    component of the announced name is used), and rebuilds the file chunk by
    chunk into a temporary file: chunks found by the scan-ahead search are
    copied from the original, the rest are requested from the sender. On done
    the temporary file atomically replaces the original. On any error the
    original is left untouched.

    A missing original is treated as empty content.

    Args:
        chunk_size: Chunk size shared with the sender
        input: Stream the sender's packets arrive on
        output: Stream replies are written to
        dest_dir: Directory holding the file to update
        window_chunks: Scan window in chunks (default: Config)
        digest_type: Digest algorithm shared with the sender (default: Config)
    """

    def __init__(
        self,
        chunk_size: int,
        input: Any,
        output: Any,
        dest_dir: Union[str, Path] = ".",
        window_chunks: Optional[int] = None,
        digest_type: Optional[DigestType] = None,
    ) -> None:
        validate_chunk_size(chunk_size)
        if window_chunks is not None:
            validate_window_chunks(window_chunks)
        self.chunk_size = chunk_size
        self.stream = PacketStream(input, output)
        self.dest_dir = Path(dest_dir)
        self.window_chunks = window_chunks
        self.digest_type = digest_type or Config.DIGEST_TYPE
        self.state = ReceiverState.AWAIT_FILENAME
        self.stats = TransferStats()
        self.path: Optional[Path] = None

    def resolve_path(self, announced: bytes) -> Path:
        """
        Map an announced filename to the local file to update.

        Raises:
            ProtocolError: If the name has no usable final component or
                contains a NUL byte
        """
        name = os.path.basename(os.fsdecode(announced).replace("\\", "/"))
        if name in ("", ".", "..") or "\x00" in name:
            raise ProtocolError(f"invalid filename announced: {announced!r}")
        return self.dest_dir / name

    def _open_original(self, path: Path) -> DataSource:
        if path.exists() and not path.is_file():
            raise FileIOError(f"Cannot update {path}: not a regular file")
        if not path.exists():
            logger.info(f"{path} does not exist yet, starting from empty content")
            return BytesDataSource(b"")
        return FileDataSource(path)

    def run(self) -> TransferStats:
        started = time.perf_counter()
        self.state = ReceiverState.AWAIT_FILENAME
        header = self.stream.receive(RECEIVER_TRANSITIONS[self.state])
        self.path = self.resolve_path(header.payload)
        logger.info(f"receiving {self.path}")

        with atomic_output(self.path) as output:
            with self._open_original(self.path) as original:
                locator = ChunkLocator(
                    original,
                    self.chunk_size,
                    window_chunks=self.window_chunks,
                    digest_type=self.digest_type,
                )
                self._receive_chunks(locator, output)
            self.state = ReceiverState.FINALIZE
        self.state = ReceiverState.FINISHED

        self.stats.bytes_read = self.stream.bytes_read
        self.stats.bytes_written = self.stream.bytes_written
        self.stats.elapsed = time.perf_counter() - started
        logger.info(f"updated {self.path}: {self.stats!r}")
        return self.stats

    def _receive_chunks(self, locator: ChunkLocator, output: BinaryIO) -> None:
        while True:
            self.state = ReceiverState.AWAIT_DIGEST_OR_DONE
            packet = self.stream.receive(RECEIVER_TRANSITIONS[self.state])
            if packet.type == PacketType.DONE:
                return
            if len(packet.payload) != DIGEST_LENGTH:
                raise ProtocolError(
                    f"chunk digest must be {DIGEST_LENGTH} bytes, got {len(packet.payload)}"
                )

            chunk = locator.find(packet.payload)
            if chunk is not None:
                self.stream.send(PacketType.HAVE_CHUNK)
                output.write(chunk)
                self.stats.record_match(len(chunk))
                continue

            self.stream.send(PacketType.NEED_CHUNK)
            self.state = ReceiverState.AWAIT_CONTENT
            content = self.stream.receive(RECEIVER_TRANSITIONS[self.state])
            output.write(content.payload)
            self.stats.record_literal(len(content.payload))


# ============================================================================
# LOCAL TRANSFER
# ============================================================================

def sync_files(
    source: Union[str, Path],
    dest: Union[str, Path],
    chunk_size: Optional[int] = None,
    digest_type: Optional[DigestType] = None,
    window_chunks: Optional[int] = None,
) -> Tuple[TransferStats, TransferStats]:
    """
    Bring dest up to date with source through the full protocol.

    A Sender and a Receiver run on two threads joined by a socket pair. dest's
    name is what gets announced; dest's directory is where the receiver works.

    Returns:
        (sender_stats, receiver_stats)

    Raises:
        SyncError: The first error raised by either endpoint
    """
    if chunk_size is None:
        chunk_size = Config.CHUNK_SIZE
    validate_chunk_size(chunk_size)
    dest = Path(dest)
    dest_dir = dest.parent

    results: Dict[str, TransferStats] = {}
    errors: List[BaseException] = []

    def _serve(role: str, sock: socket.socket, endpoint: Callable[[Any, Any], Any]) -> None:
        try:
            with sock.makefile('rb') as rfile, sock.makefile('wb') as wfile:
                results[role] = endpoint(rfile, wfile).run()
        except Exception as e:
            logger.debug(f"{role} failed: {e}")
            errors.append(e)
        finally:
            # closing unblocks the peer, which then sees end of stream
            sock.close()

    with FileDataSource(source) as data:
        sender_sock, receiver_sock = socket.socketpair()
        threads = [
            threading.Thread(
                target=_serve,
                args=("sender", sender_sock,
                      lambda r, w: Sender(chunk_size, dest.name, data, r, w, digest_type=digest_type)),
                daemon=True,
            ),
            threading.Thread(
                target=_serve,
                args=("receiver", receiver_sock,
                      lambda r, w: Receiver(chunk_size, r, w, dest_dir=dest_dir,
                                            window_chunks=window_chunks, digest_type=digest_type)),
                daemon=True,
            ),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    if errors:
        raise errors[0]
    return results["sender"], results["receiver"]


# ============================================================================
# CLI
# ============================================================================

BENCHMARK_PATTERNS = ('flip-middle', 'append', 'prepend', 'insert-middle')


def create_parser() -> argparse.ArgumentParser:
    """Create the chunksync argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--chunk-size', type=int, default=None,
                        help=f'chunk size in bytes, must match the peer (default {DEFAULT_CHUNK_SIZE})')
    common.add_argument('--digest', choices=[d.value for d in DigestType], default=None,
                        help='chunk digest, must match the peer (default md5)')
    common.add_argument('--window-chunks', type=int, default=None,
                        help=f'scan-ahead window in chunks (default {DEFAULT_SCAN_WINDOW_CHUNKS})')
    common.add_argument('-v', '--verbose', action='count', default=0,
                        help='increase verbosity (-vv for packet traces)')
    common.add_argument('--stats', action='store_true', help='print transfer statistics')

    parser = argparse.ArgumentParser(
        prog='chunksync',
        description='Digest-addressed delta transfer of a single file.',
    )
    parser.add_argument('--version', action='version', version=f'chunksync {__version__}')
    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    send = subparsers.add_parser('send', parents=[common],
                                 help='send FILE over stdin/stdout')
    send.add_argument('file', help='file holding the new content')
    send.add_argument('--name', default=None, help='name to announce (default: basename of FILE)')
    send.set_defaults(handler=cmd_send)

    receive = subparsers.add_parser('receive', parents=[common],
                                    help='receive one file over stdin/stdout')
    receive.add_argument('--dest-dir', default='.', help='directory holding the file to update')
    receive.set_defaults(handler=cmd_receive)

    sync = subparsers.add_parser('sync', parents=[common], help='update DEST from SRC locally')
    sync.add_argument('source', help='file holding the new content')
    sync.add_argument('dest', help='file to update')
    sync.set_defaults(handler=cmd_sync)

    bench = subparsers.add_parser('benchmark', parents=[common],
                                  help='time a local transfer on synthetic data')
    bench.add_argument('--size', type=int, default=64, help='original size in KB (default 64)')
    bench.add_argument('--pattern', choices=BENCHMARK_PATTERNS, default='flip-middle')
    bench.add_argument('--change-pct', type=float, default=10.0,
                       help='share of the data changed, in percent (default 10)')
    bench.add_argument('--seed', type=int, default=None)
    bench.add_argument('--quiet', action='store_true')
    bench.set_defaults(handler=cli_benchmark)

    return parser


def _digest_from_args(args: argparse.Namespace) -> Optional[DigestType]:
    return DigestType(args.digest) if args.digest else None


def _chunk_size_from_args(args: argparse.Namespace) -> int:
    chunk_size = Config.CHUNK_SIZE if args.chunk_size is None else args.chunk_size
    validate_chunk_size(chunk_size)
    return chunk_size


def cmd_send(args: argparse.Namespace) -> int:
    name = args.name or os.path.basename(args.file)
    with FileDataSource(args.file) as data:
        stats = Sender(_chunk_size_from_args(args), name, data,
                       sys.stdin.buffer, sys.stdout.buffer,
                       digest_type=_digest_from_args(args)).run()
    if args.stats:
        stats.print_stats(file=sys.stderr)
    return 0


def cmd_receive(args: argparse.Namespace) -> int:
    stats = Receiver(_chunk_size_from_args(args), sys.stdin.buffer, sys.stdout.buffer,
                     dest_dir=args.dest_dir, window_chunks=args.window_chunks,
                     digest_type=_digest_from_args(args)).run()
    if args.stats:
        stats.print_stats(file=sys.stderr)
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    _, stats = sync_files(args.source, args.dest,
                          chunk_size=_chunk_size_from_args(args),
                          digest_type=_digest_from_args(args),
                          window_chunks=args.window_chunks)
    if args.stats:
        stats.print_stats()
    return 0


def cli_benchmark(args: argparse.Namespace) -> int:
    """Time a local transfer between a synthetic original and a modified copy."""
    size_bytes = args.size * 1024
    chunk_size = 512 if args.chunk_size is None else _chunk_size_from_args(args)
    change_size = max(1, int(size_bytes * (args.change_pct / 100.0)))
    rng = random.Random(args.seed)

    def _rand_bytes(n: int) -> bytes:
        return bytes(rng.randint(0, 255) for _ in range(n))

    original = _rand_bytes(size_bytes)
    if args.pattern == 'flip-middle':
        change_start = max(0, (size_bytes - change_size) // 2)
        flipped = bytearray(original)
        for i in range(change_start, min(size_bytes, change_start + change_size)):
            flipped[i] = (flipped[i] + 1) % 256
        modified = bytes(flipped)
    elif args.pattern == 'append':
        modified = original + _rand_bytes(change_size)
    elif args.pattern == 'prepend':
        modified = _rand_bytes(change_size) + original
    else:
        insert_at = size_bytes // 2
        modified = original[:insert_at] + _rand_bytes(change_size) + original[insert_at:]

    if not args.quiet:
        print(f"Original size: {format_size(len(original))}")
        print(f"Modified size: {format_size(len(modified))} ({args.pattern}, {args.change_pct}%)")
        print(f"Chunk size: {chunk_size:,} bytes")

    with tempfile.TemporaryDirectory(prefix="chunksync-bench-") as workdir:
        source = Path(workdir) / "source" / "data.bin"
        dest = Path(workdir) / "dest" / "data.bin"
        source.parent.mkdir()
        dest.parent.mkdir()
        source.write_bytes(modified)
        dest.write_bytes(original)

        start = time.perf_counter()
        _, stats = sync_files(source, dest, chunk_size=chunk_size,
                              digest_type=_digest_from_args(args),
                              window_chunks=args.window_chunks)
        elapsed = time.perf_counter() - start
        correct = dest.read_bytes() == modified

    if not args.quiet:
        print(f"Transfer: {format_time(elapsed)} "
              f"({len(modified) / max(elapsed, 1e-9) / 1024 / 1024:.2f} MB/s)")
        print(f"Chunks: {stats.matched_chunks:,} reused, {stats.literal_chunks:,} sent")
        print(f"Efficiency: {stats.efficiency:.1%}")
        print("Verification: PASSED" if correct else "Verification: FAILED")
    return 0 if correct else 1


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code (0 for success, SyncError.code on failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    try:
        return args.handler(args)
    except SyncError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"chunksync error: {e} (code {e.code})", file=sys.stderr)
        return e.code


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
