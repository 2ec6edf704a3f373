"""Base class for video stream outputs, with timestamp and metadata files."""

from __future__ import annotations

import enum
import logging
import sys
from collections import deque
from collections.abc import Mapping, Sequence
from typing import Any, Deque, Optional, TextIO

from .options import VideoOptions

log = logging.getLogger(__name__)


class OutputError(RuntimeError):
    """Raised when an output cannot be opened or written."""


class OutputFlag(enum.IntFlag):
    """Flags passed along with each encoded buffer."""

    NONE = 0
    KEYFRAME = 1
    RESTART = 2


class _State(enum.Enum):
    DISABLED = 0
    WAITING_KEYFRAME = 1
    RUNNING = 2


def _c_divmod(value: int, divisor: int) -> tuple[int, int]:
    """Division that truncates towards zero, remainder taking the dividend's sign."""
    quotient, remainder = divmod(abs(value), divisor)
    if value < 0:
        return -quotient, -remainder
    return quotient, remainder


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, bytes, bytearray)):
        return value if isinstance(value, str) else value.decode(errors="replace")
    if isinstance(value, Sequence):
        return "[ " + ", ".join(_format_value(item) for item in value) + " ]"
    return str(value)


def start_metadata_output(out: TextIO, fmt: str) -> None:
    """Write whatever opens a metadata stream of the given format."""
    if fmt == "json":
        out.write("[\n")
        out.flush()


def write_metadata(out: TextIO, fmt: str, metadata: Mapping[str, Any], first_write: bool) -> None:
    """Write one frame's metadata as "txt" lines or as a JSON object."""
    if fmt == "txt":
        for name, value in metadata.items():
            out.write(f"{name}={_format_value(value)}\n")
        out.write("\n")
    else:
        if not first_write:
            out.write(",\n")
        out.write("{")
        first_done = False
        for name, value in metadata.items():
            text = _format_value(value)
            quote = '"' if "/" in text else ""
            out.write(("," if first_done else "") + "\n")
            out.write(f'    "{name}": {quote}{text}{quote}')
            first_done = True
        out.write("\n}")
    out.flush()


def stop_metadata_output(out: TextIO, fmt: str) -> None:
    """Write whatever closes a metadata stream of the given format."""
    if fmt == "json":
        out.write("\n]\n")
        out.flush()


class Output:
    """An output that consumes encoded buffers; this base writes no buffers itself."""

    def __init__(self, options: VideoOptions) -> None:
        self.options = options
        self._timestamps: Optional[TextIO] = None
        self._metadata_file: Optional[TextIO] = None
        self._metadata_started = False
        self._metadata_queue: Deque[Mapping[str, Any]] = deque()
        self._state = _State.WAITING_KEYFRAME
        self._enabled = not options.pause
        self._time_offset = 0
        self._last_timestamp = 0
        self._closed = False

        if options.save_pts:
            try:
                self._timestamps = open(options.save_pts, "w", encoding="utf-8")
            except OSError as exc:
                raise OutputError(f"Failed to open timestamp file {options.save_pts}") from exc
            self._timestamps.write("# timecode format v2\n")

        if options.metadata and options.metadata != "-":
            try:
                self._metadata_file = open(options.metadata, "w", encoding="utf-8")
            except OSError as exc:
                if self._timestamps is not None:
                    self._timestamps.close()
                raise OutputError(f"Failed to open metadata file {options.metadata}") from exc
            start_metadata_output(self._metadata_file, options.metadata_format)

    @property
    def _metadata_out(self) -> TextIO:
        return self._metadata_file if self._metadata_file is not None else sys.stdout

    def signal(self) -> None:
        """Toggle between recording and paused."""
        self._enabled = not self._enabled

    def output_ready(self, mem: Any, timestamp_us: int, keyframe: bool) -> None:
        """Accept one encoded buffer, waiting for a keyframe after any pause."""
        flags = OutputFlag.KEYFRAME if keyframe else OutputFlag.NONE
        if not self._enabled:
            self._state = _State.DISABLED
        elif self._state is _State.DISABLED:
            self._state = _State.WAITING_KEYFRAME
        if self._state is _State.WAITING_KEYFRAME and keyframe:
            self._state = _State.RUNNING
            flags |= OutputFlag.RESTART
        if self._state is not _State.RUNNING:
            return

        # Keep timestamps continuous across a pause.
        if flags & OutputFlag.RESTART:
            self._time_offset = timestamp_us - self._last_timestamp
        self._last_timestamp = timestamp_us - self._time_offset

        self._output_buffer(mem, self._last_timestamp, flags)

        if self._timestamps is not None:
            self._timestamp_ready(self._last_timestamp)

        if self.options.metadata:
            if not self._metadata_queue:
                raise OutputError("no metadata available for output frame")
            metadata = self._metadata_queue.popleft()
            write_metadata(self._metadata_out, self.options.metadata_format, metadata, not self._metadata_started)
            self._metadata_started = True

    def metadata_ready(self, metadata: Mapping[str, Any]) -> None:
        """Queue metadata for the next frame, if metadata output was requested."""
        if not self.options.metadata:
            return
        self._metadata_queue.append(metadata)

    def _output_buffer(self, mem: Any, timestamp_us: int, flags: OutputFlag) -> None:
        """Write one buffer; the base output discards it."""

    def _timestamp_ready(self, timestamp: int) -> None:
        assert self._timestamps is not None
        seconds, millis = _c_divmod(timestamp, 1000)
        self._timestamps.write(f"{seconds}.{millis:03d}\n")
        if self.options.flush:
            self._timestamps.flush()

    def close(self) -> None:
        """Finish the timestamp and metadata files."""
        if self._closed:
            return
        self._closed = True
        if self._timestamps is not None:
            self._timestamps.close()
        if self.options.metadata:
            stop_metadata_output(self._metadata_out, self.options.metadata_format)
            if self._metadata_file is not None:
                self._metadata_file.close()

    def __enter__(self) -> "Output":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()