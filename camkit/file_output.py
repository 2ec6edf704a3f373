"""Write encoded video to one file or a numbered series of files."""

from __future__ import annotations

import logging
import sys
from typing import Any, BinaryIO, Optional

from .options import VideoOptions
from .output import Output, OutputError, OutputFlag, _c_divmod

log = logging.getLogger(__name__)

_MAX_FILENAME = 255


def _format_filename(pattern: str, count: int) -> str:
    if "%" not in pattern:
        return pattern[:_MAX_FILENAME]
    try:
        return (pattern % (count,))[:_MAX_FILENAME]
    except (TypeError, ValueError) as exc:
        raise OutputError("failed to generate filename") from exc


class FileOutput(Output):
    """Output to files, optionally starting new ones by time segment or on restart."""

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        self._fp: Optional[BinaryIO] = None
        self._owns_fp = False
        self._count = 0
        self._file_start_time_ms = 0

    def _output_buffer(self, mem: Any, timestamp_us: int, flags: OutputFlag) -> None:
        options = self.options
        new_segment = (
            options.segment
            and flags & OutputFlag.KEYFRAME
            and _c_divmod(timestamp_us, 1000)[0] - self._file_start_time_ms > options.segment
        )
        restart = options.split and flags & OutputFlag.RESTART
        if self._fp is None or new_segment or restart:
            self._close_file()
            self._open_file(timestamp_us)

        size = memoryview(mem).nbytes
        log.debug("FileOutput: output buffer size %d", size)
        if self._fp is not None and size:
            try:
                self._fp.write(mem)
            except OSError as exc:
                raise OutputError("failed to write output bytes") from exc
            if options.flush:
                self._fp.flush()

    def _open_file(self, timestamp_us: int) -> None:
        output = self.options.output
        if output == "-":
            self._fp, self._owns_fp = sys.stdout.buffer, False
        elif output:
            filename = _format_filename(output, self._count)
            self._count += 1
            if self.options.wrap:
                self._count %= self.options.wrap
            try:
                self._fp = open(filename, "wb")
            except OSError as exc:
                raise OutputError(f"failed to open output file {filename}") from exc
            self._owns_fp = True
            log.debug("FileOutput: opened output file %s", filename)
            self._file_start_time_ms = _c_divmod(timestamp_us, 1000)[0]

    def _close_file(self) -> None:
        if self._fp is None:
            return
        if self.options.flush or not self._owns_fp:
            self._fp.flush()
        if self._owns_fp:
            self._fp.close()
        self._fp = None

    def close(self) -> None:
        """Close the current file and the base output's files."""
        self._close_file()
        super().close()