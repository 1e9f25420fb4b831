"""Files, packet sinks and sources feeding TS packets to sinks."""

from __future__ import annotations

import abc
import enum
import io
import logging
import os
from typing import BinaryIO

from .base import BLOCK_SIZE, ExitCode

_log = logging.getLogger(__name__)

PKT_SIZE = 188
SYNC_BYTE = 0x47
NULL_PACKET = bytes([SYNC_BYTE, 0x1F, 0xFF, 0x10]) + b"\xff" * (PKT_SIZE - 4)


class SeekMode(enum.IntEnum):
    SET = os.SEEK_SET
    CUR = os.SEEK_CUR
    END = os.SEEK_END


class File(abc.ABC):
    """A byte file; operations raise OSError on failure."""

    @property
    @abc.abstractmethod
    def path(self) -> str: ...

    @abc.abstractmethod
    def read(self, size: int) -> bytes:
        """Read up to `size` bytes; an empty result means end of file."""

    @abc.abstractmethod
    def write(self, data: bytes) -> int:
        """Write `data` and return the number of bytes written."""

    @abc.abstractmethod
    def sync(self) -> None: ...

    @abc.abstractmethod
    def trunc(self, size: int) -> None: ...

    @abc.abstractmethod
    def seek(self, offset: int, mode: SeekMode) -> int:
        """Move the position and return the new one."""


class BinaryFile(File):
    """A File over a binary file object."""

    def __init__(self, fileobj: BinaryIO, path: str = "<stream>") -> None:
        self._fileobj = fileobj
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def read(self, size: int) -> bytes:
        return self._fileobj.read(size) or b""

    def write(self, data: bytes) -> int:
        return self._fileobj.write(data)

    def sync(self) -> None:
        self._fileobj.flush()
        try:
            os.fsync(self._fileobj.fileno())
        except (AttributeError, io.UnsupportedOperation):
            pass

    def trunc(self, size: int) -> None:
        self._fileobj.truncate(size)

    def seek(self, offset: int, mode: SeekMode) -> int:
        return self._fileobj.seek(offset, int(mode))


class PacketSink(abc.ABC):
    """Consumes TS packets one at a time."""

    def start(self) -> bool:
        return True

    def end(self) -> None:
        pass

    @property
    def exit_code(self) -> int:
        return ExitCode.SUCCESS

    @abc.abstractmethod
    def handle_packet(self, packet) -> bool:
        """Handle one packet; return False to stop the feed."""


class PacketSource(abc.ABC):
    """Produces TS packets and feeds them to a connected sink."""

    _sink: PacketSink | None = None

    def connect(self, sink: PacketSink) -> None:
        self._sink = sink

    def feed_packets(self) -> int:
        if self._sink is None:
            raise RuntimeError("no packet sink connected")
        sink = self._sink
        _log.info("Feed packets...")
        if not sink.start():
            _log.error("Failed to start")
            return ExitCode.FAILURE
        while (packet := self.next_packet()) is not None:
            if not sink.handle_packet(packet):
                break
        sink.end()
        exit_code = sink.exit_code
        _log.info("Ended with exit-code(%d)", exit_code)
        return exit_code

    @abc.abstractmethod
    def next_packet(self):
        """Return the next packet, or None at the end of the stream."""


class FileSource(PacketSource):
    """Reads 188-byte packets from a File, resynchronising when sync is lost."""

    MAX_DROP_BYTES = 2 * PKT_SIZE
    MAX_RESYNC_BYTES = MAX_DROP_BYTES + 3 * PKT_SIZE
    READ_CHUNK_SIZE = 4 * BLOCK_SIZE

    def __init__(self, file: File) -> None:
        self._file = file
        self._buf = bytearray()
        self._pos = 0
        self._eof = False

    def next_packet(self) -> bytes | None:
        if not self._fill_buffer(PKT_SIZE):
            return None
        if self._buf[self._pos] != SYNC_BYTE:
            _log.warning("Synchronization was lost")
            if not self._resync():
                return None
        packet = bytes(self._buf[self._pos:self._pos + PKT_SIZE])
        self._pos += PKT_SIZE
        return packet

    def _available(self) -> int:
        return len(self._buf) - self._pos

    def _fill_buffer(self, min_bytes: int) -> bool:
        if self._eof:
            return False
        if self._available() >= min_bytes:
            return True
        del self._buf[:self._pos]
        self._pos = 0
        while len(self._buf) < min_bytes:
            try:
                data = self._file.read(self.READ_CHUNK_SIZE)
            except OSError as exc:
                _log.error("%s: read failed: %s", self._file.path, exc)
                data = b""
            if not data:
                self._eof = True
                _log.info("EOF reached")
                return False
            self._buf += data
        return True

    def _resync(self) -> bool:
        _log.warning("Resync...")
        if not self._fill_buffer(self.MAX_RESYNC_BYTES):
            return False
        start = self._pos
        for pos in range(start, start + self.MAX_DROP_BYTES):
            if self._buf[pos] == SYNC_BYTE and self._valid_sync_at(pos):
                self._pos = pos
                _log.warning("Resynced, %d bytes dropped", pos - start)
                return True
        self._pos = start + self.MAX_DROP_BYTES
        _log.error("Resync failed")
        return False

    def _valid_sync_at(self, pos: int) -> bool:
        return all(self._buf[pos + n * PKT_SIZE] == SYNC_BYTE for n in (1, 2, 3))