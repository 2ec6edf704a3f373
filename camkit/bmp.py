"""Save RGB images as uncompressed 24-bit BMP files."""

from __future__ import annotations

import logging
import struct
import sys
from contextlib import contextmanager
from typing import Any, BinaryIO, Iterator, Sequence

from .options import PixelFormat, StillOptions, StreamInfo

log = logging.getLogger(__name__)

_FILE_HEADER = struct.Struct("<2sIHHI")
_IMAGE_HEADER = struct.Struct("<IIiHHIIIIII")
_PIXEL_OFFSET = _FILE_HEADER.size + _IMAGE_HEADER.size


@contextmanager
def _open_output(filename: str) -> Iterator[BinaryIO]:
    if filename == "-":
        yield sys.stdout.buffer
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            yield fp


def _rows(data: memoryview, stride: int, length: int, count: int) -> Iterator[memoryview]:
    for start in range(0, count * stride, stride):
        row = data[start:start + length]
        if len(row) < length:
            raise ValueError("image buffer too small")
        yield row


def bmp_save(mem: Sequence[Any], info: StreamInfo, filename: str, options: StillOptions) -> None:
    """Write the first plane of an RGB888 image to a BMP file ("-" for stdout)."""
    if info.pixel_format is not PixelFormat.RGB888:
        raise ValueError("pixel format for bmp should be RGB")

    data = memoryview(mem[0]).cast("B")
    line = info.width * 3
    pitch = (line + 3) & ~3  # rows are padded to multiples of 4 bytes
    padding = bytes(pitch - line)
    rows = list(_rows(data, info.stride, line, info.height))
    filesize = _PIXEL_OFFSET + info.height * pitch

    file_header = _FILE_HEADER.pack(b"BM", filesize, 0, 0, _PIXEL_OFFSET)
    # A negative height stores the rows top-down.
    image_header = _IMAGE_HEADER.pack(
        _IMAGE_HEADER.size, info.width, -info.height, 1, 24, 0, 0, 100000, 100000, 0, 0
    )

    with _open_output(filename) as fp:
        fp.write(file_header)
        fp.write(image_header)
        for row in rows:
            fp.write(row)
            if padding:
                fp.write(padding)

    log.debug("Wrote %d bytes to BMP file", filesize)