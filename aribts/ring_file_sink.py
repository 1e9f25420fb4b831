"""A packet sink writing into a fixed-size ring file split into chunks."""

from __future__ import annotations

import abc
import logging

from .base import BLOCK_SIZE, ExitCode
from .log import TRACE
from .packet_source import File, PacketSink, SeekMode

_log = logging.getLogger(__name__)

_INT64_MAX = (1 << 63) - 1


class PacketRingObserver(abc.ABC):
    """Notified when the ring sink completes a chunk."""

    @abc.abstractmethod
    def on_end_of_chunk(self, pos: int) -> None: ...


class RingFileSink(PacketSink):
    """Buffers packets and writes them into a ring file."""

    BUFFER_SIZE = 2 * BLOCK_SIZE
    MAX_CHUNK_SIZE = BUFFER_SIZE * 0x3FFFF
    MAX_NUM_CHUNKS = 0x7FFFFFFF
    MAX_RING_SIZE = MAX_CHUNK_SIZE * MAX_NUM_CHUNKS

    def __init__(self, file: File, chunk_size: int, num_chunks: int) -> None:
        if not 0 < chunk_size <= self.MAX_CHUNK_SIZE:
            raise ValueError(f"chunk size out of range: {chunk_size}")
        if not 0 < num_chunks <= self.MAX_NUM_CHUNKS:
            raise ValueError(f"number of chunks out of range: {num_chunks}")
        if chunk_size % self.BUFFER_SIZE != 0:
            raise ValueError("The chunk size must be a multiple of the buffer size")
        self._file = file
        self._chunk_size = chunk_size
        self._ring_size = chunk_size * num_chunks
        self._observer: PacketRingObserver | None = None
        self._buf = bytearray()
        self._ring_pos = 0
        self._chunk_pos = 0
        self._broken = False
        _log.info(
            "%s: %d bytes * %d chunks = %d bytes",
            file.path, chunk_size, num_chunks, self._ring_size,
        )

    @property
    def ring_size(self) -> int:
        return self._ring_size

    @property
    def pos(self) -> int:
        return self._ring_pos

    @property
    def is_broken(self) -> bool:
        return self._broken

    @property
    def exit_code(self) -> int:
        return ExitCode.FAILURE if self._broken else ExitCode.SUCCESS

    def end(self) -> None:
        # The buffer is intentionally not flushed here.
        pass

    def handle_packet(self, packet) -> bool:
        data = bytes(packet)
        written = 0
        while written < len(data):
            written += self._fill_buffer(data, written)
            if len(self._buf) == self.BUFFER_SIZE and not self._flush():
                _log.error("Failed flushing, need reset")
                self._broken = True
                return False
        return True

    def set_position(self, pos: int) -> None:
        """Move the write position to the start of a chunk."""
        if not 0 <= pos <= _INT64_MAX or pos % self.BUFFER_SIZE != 0:
            raise ValueError(f"invalid position: {pos}")
        if pos >= self._ring_size:
            raise ValueError("The position must be smaller than the ring buffer size")
        if pos % self._chunk_size != 0:
            raise ValueError("The position must be a multiple of the chunk size")
        if self._file.seek(pos, SeekMode.SET) != pos:
            raise OSError(f"{self._file.path}: failed to seek to {pos}")
        self._buf.clear()
        self._ring_pos = pos
        self._chunk_pos = 0

    def set_observer(self, observer: PacketRingObserver) -> None:
        if observer is None:
            raise ValueError("observer must not be None")
        self._observer = observer

    def _fill_buffer(self, data: bytes, offset: int) -> int:
        count = min(len(data) - offset, self.BUFFER_SIZE - len(self._buf))
        self._buf += data[offset:offset + count]
        self._ring_pos += count
        return count

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        written = 0
        while written < len(data):
            _log.log(TRACE, "%s: Write the buffer", self._file.path)
            result = self._file.write(view[written:])
            if result <= 0:
                raise OSError(f"{self._file.path}: write returned {result}")
            written += result

    def _flush(self) -> bool:
        path = self._file.path
        try:
            self._write_all(bytes(self._buf))
            self._buf.clear()

            self._chunk_pos += self.BUFFER_SIZE
            if self._chunk_pos == self._chunk_size:
                _log.debug("%s: Reached the chunk boundary %d, sync", path, self._ring_pos)
                self._file.sync()
                self._chunk_pos = 0
                if self._observer is not None:
                    self._observer.on_end_of_chunk(self._ring_pos)

            if self._ring_pos == self._ring_size:
                _log.debug(
                    "%s: Reached the end of the ring buffer, truncate at %d",
                    path, self._ring_pos,
                )
                self._file.trunc(self._ring_size)
                _log.debug("%s: Reset the position", path)
                if self._file.seek(0, SeekMode.SET) != 0:
                    return False
                self._ring_pos = 0
        except OSError as exc:
            _log.error("%s: %s", path, exc)
            return False
        return True