"""An encoder that turns each frame into a JPEG, using several worker threads."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .encoder import Encoder, register_encoder
from .jpeg import yuv_to_jpeg
from .options import StreamInfo, VideoOptions

log = logging.getLogger(__name__)

_POLL_SECONDS = 0.2


@dataclass(frozen=True)
class _EncodeItem:
    mem: Any
    info: StreamInfo
    timestamp_us: int
    index: int


@dataclass(frozen=True)
class _OutputItem:
    data: Optional[bytes]
    timestamp_us: int


class MjpegEncoder(Encoder):
    """Encodes frames as JPEGs on a pool of threads, delivering them in input order.

    Every output is flagged as a keyframe.
    """

    NUM_ENC_THREADS = 4

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        self._encode_queue: "queue.Queue[_EncodeItem]" = queue.Queue()
        self._index = 0
        self._index_lock = threading.Lock()
        self._abort_encode = threading.Event()
        self._abort_output = False
        self._done: Dict[int, _OutputItem] = {}
        self._output_cond = threading.Condition()
        self._errors: List[BaseException] = []
        self._errors_lock = threading.Lock()
        self._closed = False

        self._output_thread = threading.Thread(target=self._output_loop, name="mjpeg-output", daemon=True)
        self._output_thread.start()
        self._encode_threads = [
            threading.Thread(target=self._encode_loop, args=(num,), name=f"mjpeg-encode-{num}", daemon=True)
            for num in range(self.NUM_ENC_THREADS)
        ]
        for thread in self._encode_threads:
            thread.start()
        log.debug("Opened MjpegEncoder")

    def encode_buffer(self, mem: Any, info: StreamInfo, timestamp_us: int) -> None:
        """Queue one YUV frame for JPEG encoding."""
        if self._closed:
            raise RuntimeError("encoder is closed")
        with self._index_lock:
            self._encode_queue.put(_EncodeItem(mem, info, timestamp_us, self._index))
            self._index += 1

    def _record_error(self, exc: BaseException) -> None:
        with self._errors_lock:
            self._errors.append(exc)

    def _encode_loop(self, num: int) -> None:
        frames = 0
        encode_time = 0.0
        while True:
            try:
                item = self._encode_queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._abort_encode.is_set():
                    if frames:
                        log.debug("Encode %d frames, average time %gms", frames, encode_time * 1000 / frames)
                    return
                continue

            start = time.perf_counter()
            data: Optional[bytes]
            try:
                data = yuv_to_jpeg(item.mem, item.info, item.info.width, item.info.height,
                                   self.options.quality, 0)
            except Exception as exc:  # re-raised by close()
                self._record_error(exc)
                data = None
            encode_time += time.perf_counter() - start
            frames += 1

            with self._output_cond:
                self._done[item.index] = _OutputItem(data, item.timestamp_us)
                self._output_cond.notify_all()

    def _output_loop(self) -> None:
        index = 0
        while True:
            with self._output_cond:
                while index not in self._done:
                    # Once the encoders have stopped, a missing frame will never arrive.
                    if self._abort_output:
                        return
                    self._output_cond.wait(_POLL_SECONDS)
                item = self._done.pop(index)
            index += 1
            try:
                self.input_done_callback()
                if item.data is not None:
                    self.output_ready_callback(item.data, item.timestamp_us, True)
            except BaseException as exc:  # re-raised by close()
                self._record_error(exc)
                return

    def close(self) -> None:
        """Encode and deliver every queued frame, stop the threads and raise any error."""
        if self._closed:
            return
        self._closed = True
        self._abort_encode.set()
        for thread in self._encode_threads:
            thread.join()
        with self._output_cond:
            self._abort_output = True
            self._output_cond.notify_all()
        self._output_thread.join()
        log.debug("MjpegEncoder closed")
        with self._errors_lock:
            if self._errors:
                raise self._errors[0]


register_encoder("mjpeg", lambda options, info: MjpegEncoder(options))