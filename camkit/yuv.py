"""Save uncompressed YUV or RGB image data."""

from __future__ import annotations

import sys
from contextlib import contextmanager
from typing import Any, BinaryIO, Iterator, Sequence

from .options import PixelFormat, StillOptions, StreamInfo

_RGB_FORMATS = frozenset(
    {PixelFormat.BGR888, PixelFormat.RGB888, PixelFormat.BGR161616, PixelFormat.RGB161616}
)


@contextmanager
def _open_output(filename: str) -> Iterator[BinaryIO]:
    if filename == "-":
        yield sys.stdout.buffer
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            yield fp


def _rows(data: memoryview, offset: int, stride: int, length: int, count: int) -> Iterator[memoryview]:
    for start in range(offset, offset + count * stride, stride):
        row = data[start:start + length]
        if len(row) < length:
            raise ValueError("image buffer too small")
        yield row


def _check_even(info: StreamInfo) -> None:
    if info.width & 1 or info.height & 1:
        raise ValueError("both width and height must be even")


def _yuv420_planes(mem: Sequence[Any], info: StreamInfo, options: StillOptions) -> list:
    if options.encoding != "yuv420":
        raise ValueError(f"output format {options.encoding} not supported")
    _check_even(info)
    if len(mem) != 1:
        raise ValueError("incorrect number of planes in YUV420 data")
    data = memoryview(mem[0]).cast("B")
    w, h, stride = info.width, info.height, info.stride
    u_offset = stride * h
    v_offset = u_offset + (stride // 2) * (h // 2)
    return [
        *_rows(data, 0, stride, w, h),
        *_rows(data, u_offset, stride // 2, w // 2, h // 2),
        *_rows(data, v_offset, stride // 2, w // 2, h // 2),
    ]


def _yuyv_planes(mem: Sequence[Any], info: StreamInfo, options: StillOptions) -> list:
    if options.encoding != "yuv420":
        raise ValueError(f"output format {options.encoding} not supported")
    _check_even(info)
    data = memoryview(mem[0]).cast("B")
    row_bytes = 2 * info.width
    rows = list(_rows(data, 0, info.stride, row_bytes, info.height))
    chroma_rows = rows[::2]
    return [
        *(row[0::2] for row in rows),
        *(row[1::4] for row in chroma_rows),
        *(row[3::4] for row in chroma_rows),
    ]


def _rgb_rows(mem: Sequence[Any], info: StreamInfo, options: StillOptions) -> list:
    if options.encoding not in ("rgb24", "rgb48"):
        raise ValueError("encoding should be set to rgb")
    data = memoryview(mem[0]).cast("B")
    row_bytes = 3 * info.width * (2 if options.encoding == "rgb48" else 1)
    return list(_rows(data, 0, info.stride, row_bytes, info.height))


def yuv_save(mem: Sequence[Any], info: StreamInfo, filename: str, options: StillOptions) -> None:
    """Write YUYV or YUV420 data as planar YUV420, or RGB data as packed rows."""
    if info.pixel_format is PixelFormat.YUYV:
        rows = _yuyv_planes(mem, info, options)
    elif info.pixel_format is PixelFormat.YUV420:
        rows = _yuv420_planes(mem, info, options)
    elif info.pixel_format in _RGB_FORMATS:
        rows = _rgb_rows(mem, info, options)
    else:
        raise ValueError("unrecognised YUV/RGB save format")

    with _open_output(filename) as fp:
        for row in rows:
            fp.write(row)