"""An encoder that passes frames through unchanged."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Optional, Tuple

from .encoder import Encoder, register_encoder
from .options import StreamInfo, VideoOptions

log = logging.getLogger(__name__)

_POLL_SECONDS = 0.2


class NullEncoder(Encoder):
    """Returns each frame, as is, as an encoded keyframe from a worker thread."""

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        self._queue: "queue.Queue[Tuple[Any, int]]" = queue.Queue()
        self._abort = threading.Event()
        self._error: Optional[BaseException] = None
        self._closed = False
        log.debug("Opened NullEncoder")
        self._thread = threading.Thread(target=self._output_thread, name="null-encoder", daemon=True)
        self._thread.start()

    def encode_buffer(self, mem: Any, info: StreamInfo, timestamp_us: int) -> None:
        """Queue the frame to be handed straight back."""
        if self._closed:
            raise RuntimeError("encoder is closed")
        self._queue.put((mem, timestamp_us))

    def _output_thread(self) -> None:
        while True:
            try:
                mem, timestamp_us = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._abort.is_set():
                    return
                continue
            try:
                # Input done must come first: it pushes the metadata that output pops.
                self.input_done_callback()
                self.output_ready_callback(mem, timestamp_us, True)
            except BaseException as exc:  # re-raised by close()
                self._error = exc
                return

    def close(self) -> None:
        """Deliver the queued frames, stop the worker and raise any callback error."""
        if self._closed:
            return
        self._closed = True
        self._abort.set()
        self._thread.join()
        log.debug("NullEncoder closed")
        if self._error is not None:
            raise self._error


register_encoder("null", lambda options, info: NullEncoder(options))