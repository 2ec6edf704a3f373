"""Keep recent frames in a ring buffer and write them out when closed."""

from __future__ import annotations

import logging
import struct
import sys
from typing import Any, BinaryIO, Optional

from .options import VideoOptions
from .output import Output, OutputError, OutputFlag

log = logging.getLogger(__name__)

ALIGN = 16
_HEADER = struct.Struct("<I?3xq")


def _aligned(length: int) -> int:
    return (length + ALIGN - 1) & ~(ALIGN - 1)


class CircularBuffer:
    """A fixed-size byte ring buffer."""

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError("circular buffer size must be positive")
        self._size = size
        self._buf = bytearray(size)
        self._rptr = 0
        self._wptr = 0

    def empty(self) -> bool:
        return self._rptr == self._wptr

    def available(self) -> int:
        if self._wptr == self._rptr:
            return self._size - 1
        return (self._size - self._wptr + self._rptr) % self._size - 1

    def skip(self, n: int) -> None:
        self._rptr = (self._rptr + n) % self._size

    def read(self, n: int) -> bytes:
        """Remove and return the next n bytes."""
        parts = []
        if self._rptr + n >= self._size:
            parts.append(bytes(self._buf[self._rptr:]))
            n -= self._size - self._rptr
            self._rptr = 0
        parts.append(bytes(self._buf[self._rptr:self._rptr + n]))
        self._rptr += n
        return b"".join(parts)

    def pad(self, n: int) -> None:
        self._wptr = (self._wptr + n) % self._size

    def write(self, data: Any) -> None:
        view = memoryview(data).cast("B")
        if self._wptr + len(view) >= self._size:
            first = self._size - self._wptr
            self._buf[self._wptr:] = view[:first]
            view = view[first:]
            self._wptr = 0
        self._buf[self._wptr:self._wptr + len(view)] = view
        self._wptr += len(view)


class CircularOutput(Output):
    """Hold frames in memory (options.circular megabytes) and save them on close."""

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        try:
            self._cb = CircularBuffer(options.circular << 20)
            self._fp, self._owns_fp = self._open(options.output)
        except BaseException:
            super().close()
            raise

    @staticmethod
    def _open(output: str) -> tuple[BinaryIO, bool]:
        fp: Optional[BinaryIO] = None
        if output == "-":
            return sys.stdout.buffer, False
        if output:
            try:
                fp = open(output, "wb")
            except OSError:
                fp = None
        if fp is None:
            raise OutputError("could not open output file")
        return fp, True

    def _output_buffer(self, mem: Any, timestamp_us: int, flags: OutputFlag) -> None:
        size = memoryview(mem).nbytes
        pad = (ALIGN - size) & (ALIGN - 1)
        while size + pad + _HEADER.size > self._cb.available():
            if self._cb.empty():
                raise OutputError("circular buffer too small")
            length, _, _ = _HEADER.unpack(self._cb.read(_HEADER.size))
            self._cb.skip(_aligned(length))
        self._cb.write(_HEADER.pack(size, bool(flags & OutputFlag.KEYFRAME), timestamp_us))
        self._cb.write(mem)
        self._cb.pad(pad)

    def _timestamp_ready(self, timestamp: int) -> None:
        # Timestamps are only written when the buffer is dumped.
        pass

    def _dump(self) -> None:
        # Output begins at the first keyframe still held.
        total = frames = 0
        seen_keyframe = False
        while not self._cb.empty():
            length, keyframe, timestamp = _HEADER.unpack(self._cb.read(_HEADER.size))
            seen_keyframe |= keyframe
            if seen_keyframe:
                self._fp.write(self._cb.read(length))
                self._cb.skip((ALIGN - length) & (ALIGN - 1))
                total += length
                if self._timestamps is not None:
                    super()._timestamp_ready(timestamp)
                frames += 1
            else:
                self._cb.skip(_aligned(length))
        self._fp.flush()
        log.info("Wrote %d bytes (%d frames)", total, frames)

    def close(self) -> None:
        """Write the buffered frames out, then close everything."""
        if self._fp is not None:
            try:
                self._dump()
            finally:
                if self._owns_fp:
                    self._fp.close()
                self._fp = None
        super().close()