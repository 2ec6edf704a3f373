"""Save RGB images as PNG files."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, BinaryIO, Iterator, Sequence

from PIL import Image

from .options import PixelFormat, StillOptions, StreamInfo

log = logging.getLogger(__name__)


@contextmanager
def _open_output(filename: str) -> Iterator[BinaryIO]:
    if filename == "-":
        yield sys.stdout.buffer
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            yield fp


def _packed_rows(data: memoryview, stride: int, length: int, count: int) -> bytes:
    rows = []
    for start in range(0, count * stride, stride):
        row = data[start:start + length]
        if len(row) < length:
            raise ValueError("image buffer too small")
        rows.append(row)
    return b"".join(rows)


def png_save(mem: Sequence[Any], info: StreamInfo, filename: str, options: StillOptions) -> None:
    """Write the first plane of a BGR888 image to a PNG file ("-" for stdout)."""
    if info.pixel_format is not PixelFormat.BGR888:
        raise ValueError("pixel format for png should be BGR")

    data = memoryview(mem[0]).cast("B")
    pixels = _packed_rows(data, info.stride, info.width * 3, info.height)
    image = Image.frombytes("RGB", (info.width, info.height), pixels)

    with _open_output(filename) as fp:
        # A low compression level gets most of the gain for much less time.
        image.save(fp, format="PNG", compress_level=1)
        if fp.seekable():
            log.debug("Wrote PNG file of %d bytes", fp.tell())