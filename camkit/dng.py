"""Save raw Bayer images as DNG files."""

from __future__ import annotations

import logging
import math
import struct
import time
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Iterable, List, Mapping, Sequence, Tuple

import numpy as np

from .options import PixelFormat, StillOptions, StreamInfo

log = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"

# The compression parameters PiSP always uses.
COMPRESS_OFFSET = 2048
COMPRESS_MODE = 1

_RGGB = (0, 1, 1, 2)
_GRBG = (1, 0, 2, 1)
_BGGR = (2, 1, 1, 0)
_GBRG = (1, 2, 0, 1)


@dataclass(frozen=True)
class _BayerFormat:
    name: str
    bits: int
    order: Tuple[int, int, int, int]
    packed: bool
    compressed: bool


_BAYER_FORMATS = {
    PixelFormat.SRGGB10_CSI2P: _BayerFormat("RGGB-10", 10, _RGGB, True, False),
    PixelFormat.SGRBG10_CSI2P: _BayerFormat("GRBG-10", 10, _GRBG, True, False),
    PixelFormat.SBGGR10_CSI2P: _BayerFormat("BGGR-10", 10, _BGGR, True, False),
    PixelFormat.SGBRG10_CSI2P: _BayerFormat("GBRG-10", 10, _GBRG, True, False),
    PixelFormat.SRGGB10: _BayerFormat("RGGB-10", 10, _RGGB, False, False),
    PixelFormat.SGRBG10: _BayerFormat("GRBG-10", 10, _GRBG, False, False),
    PixelFormat.SBGGR10: _BayerFormat("BGGR-10", 10, _BGGR, False, False),
    PixelFormat.SGBRG10: _BayerFormat("GBRG-10", 10, _GBRG, False, False),
    PixelFormat.SRGGB12_CSI2P: _BayerFormat("RGGB-12", 12, _RGGB, True, False),
    PixelFormat.SGRBG12_CSI2P: _BayerFormat("GRBG-12", 12, _GRBG, True, False),
    PixelFormat.SBGGR12_CSI2P: _BayerFormat("BGGR-12", 12, _BGGR, True, False),
    PixelFormat.SGBRG12_CSI2P: _BayerFormat("GBRG-12", 12, _GBRG, True, False),
    PixelFormat.SRGGB12: _BayerFormat("RGGB-12", 12, _RGGB, False, False),
    PixelFormat.SGRBG12: _BayerFormat("GRBG-12", 12, _GRBG, False, False),
    PixelFormat.SBGGR12: _BayerFormat("BGGR-12", 12, _BGGR, False, False),
    PixelFormat.SGBRG12: _BayerFormat("GBRG-12", 12, _GBRG, False, False),
    PixelFormat.SRGGB16: _BayerFormat("RGGB-16", 16, _RGGB, False, False),
    PixelFormat.SGRBG16: _BayerFormat("GRBG-16", 16, _GRBG, False, False),
    PixelFormat.SBGGR16: _BayerFormat("BGGR-16", 16, _BGGR, False, False),
    PixelFormat.SGBRG16: _BayerFormat("GBRG-16", 16, _GBRG, False, False),
    PixelFormat.R10_CSI2P: _BayerFormat("BGGR-10", 10, _BGGR, True, False),
    PixelFormat.R10: _BayerFormat("BGGR-10", 10, _BGGR, False, False),
    PixelFormat.R12: _BayerFormat("BGGR-12", 12, _BGGR, False, False),
    PixelFormat.RGGB_PISP_COMP1: _BayerFormat("RGGB-16-PISP", 16, _RGGB, False, True),
    PixelFormat.GRBG_PISP_COMP1: _BayerFormat("GRBG-16-PISP", 16, _GRBG, False, True),
    PixelFormat.GBRG_PISP_COMP1: _BayerFormat("GBRG-16-PISP", 16, _GBRG, False, True),
    PixelFormat.BGGR_PISP_COMP1: _BayerFormat("BGGR-16-PISP", 16, _BGGR, False, True),
}


class Matrix:
    """A 3x3 matrix stored row by row."""

    __slots__ = ("m",)

    def __init__(self, *args: float) -> None:
        if len(args) == 3:
            args = (args[0], 0, 0, 0, args[1], 0, 0, 0, args[2])
        elif not args:
            args = (0.0,) * 9
        elif len(args) != 9:
            raise TypeError("Matrix takes 0, 3 or 9 values")
        self.m: Tuple[float, ...] = tuple(float(v) for v in args)

    @classmethod
    def diagonal(cls, d0: float, d1: float, d2: float) -> "Matrix":
        return cls(d0, 0, 0, 0, d1, 0, 0, 0, d2)

    def transpose(self) -> "Matrix":
        m = self.m
        return Matrix(m[0], m[3], m[6], m[1], m[4], m[7], m[2], m[5], m[8])

    def cofactor(self) -> "Matrix":
        m = self.m
        return Matrix(
            m[4] * m[8] - m[5] * m[7], -(m[3] * m[8] - m[5] * m[6]), m[3] * m[7] - m[4] * m[6],
            -(m[1] * m[8] - m[2] * m[7]), m[0] * m[8] - m[2] * m[6], -(m[0] * m[7] - m[1] * m[6]),
            m[1] * m[5] - m[2] * m[4], -(m[0] * m[5] - m[2] * m[3]), m[0] * m[4] - m[1] * m[3],
        )

    def adjugate(self) -> "Matrix":
        return self.cofactor().transpose()

    def determinant(self) -> float:
        m = self.m
        return (
            m[0] * (m[4] * m[8] - m[5] * m[7])
            - m[1] * (m[3] * m[8] - m[5] * m[6])
            + m[2] * (m[3] * m[7] - m[4] * m[6])
        )

    def inverse(self) -> "Matrix":
        det = self.determinant()
        if det == 0:
            raise ZeroDivisionError("matrix is singular")
        return self.adjugate() * (1.0 / det)

    def __mul__(self, other: Any) -> "Matrix":
        if isinstance(other, Matrix):
            a, b = self.m, other.m
            return Matrix(*(
                a[3 * i] * b[j] + a[3 * i + 1] * b[3 + j] + a[3 * i + 2] * b[6 + j]
                for i in range(3) for j in range(3)
            ))
        if isinstance(other, (int, float)):
            return Matrix(*(v * other for v in self.m))
        return NotImplemented

    def __rmul__(self, other: Any) -> "Matrix":
        if isinstance(other, (int, float)):
            return self * other
        return NotImplemented

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.m == other.m

    def __hash__(self) -> int:
        return hash(self.m)

    def __repr__(self) -> str:
        return f"Matrix{self.m}"


def _rows(data: Any, info: StreamInfo, row_bytes: int) -> np.ndarray:
    """View the image data as (height, row_bytes) bytes, one row per stride."""
    if info.stride < row_bytes and info.height > 1:
        raise ValueError("stride too small for image width")
    buf = np.frombuffer(memoryview(data).cast("B"), dtype=np.uint8)
    if info.height == 0:
        return np.zeros((0, row_bytes), dtype=np.uint8)
    if buf.size < (info.height - 1) * info.stride + row_bytes:
        raise ValueError("image buffer too small")
    return np.lib.stride_tricks.as_strided(
        buf, shape=(info.height, row_bytes), strides=(info.stride, 1), writeable=False
    )


def unpack_10bit(data: Any, info: StreamInfo) -> np.ndarray:
    """Unpack CSI-2 packed 10-bit pixels into a (height, width) uint16 array."""
    groups = (info.width + 3) // 4
    rows = _rows(data, info, groups * 5).reshape(info.height, groups, 5).astype(np.uint16)
    shifts = np.arange(4, dtype=np.uint16) * 2
    pixels = (rows[..., :4] << 2) | ((rows[..., 4:5] >> shifts) & 3)
    return np.ascontiguousarray(pixels.reshape(info.height, groups * 4)[:, :info.width])


def unpack_12bit(data: Any, info: StreamInfo) -> np.ndarray:
    """Unpack CSI-2 packed 12-bit pixels into a (height, width) uint16 array."""
    groups = (info.width + 1) // 2
    rows = _rows(data, info, groups * 3).reshape(info.height, groups, 3).astype(np.uint16)
    shifts = np.array([0, 4], dtype=np.uint16)
    pixels = (rows[..., :2] << 4) | ((rows[..., 2:3] >> shifts) & 15)
    return np.ascontiguousarray(pixels.reshape(info.height, groups * 2)[:, :info.width])


def unpack_16bit(data: Any, info: StreamInfo) -> np.ndarray:
    """Copy native-order 16-bit pixels into a (height, width) uint16 array."""
    rows = np.ascontiguousarray(_rows(data, info, 2 * info.width))
    return rows.view(np.uint16).reshape(info.height, info.width)


def _dequantize(q: np.ndarray, qmode: np.ndarray) -> np.ndarray:
    values = np.select(
        [qmode == 0, qmode == 1, qmode == 2],
        [np.where(q < 320, 16 * q, 32 * (q - 160)), 64 * q, 128 * q],
        np.where(q < 94, 256 * q, np.minimum(0xFFFF, 512 * (q - 47))),
    )
    return values & 0xFFFF


def _sub_block(w: np.ndarray) -> np.ndarray:
    """Decode one 32-bit word into four dequantised samples."""
    qmode = w & 3
    field0 = (w >> 2) & 511
    field1 = (w >> 11) & 127
    field2 = (w >> 18) & 127
    field3 = (w >> 25) & 127
    special = (qmode == 2) & (field0 >= 384)
    high = field1 >= 64
    q1 = np.where(special, field0, np.where(high, field0, field0 + 64 - field1))
    q2 = np.where(special, field1 + 384, np.where(high, field0 + field1 - 64, field0))
    p1 = np.maximum(0, q1 - 64)
    p1 = np.where(qmode == 2, np.minimum(384, p1), p1)
    p2 = np.maximum(0, q2 - 64)
    p2 = np.where(qmode == 2, np.minimum(384, p2), p2)
    q0 = p1 + field2
    q3 = p2 + field3

    pack0 = (w >> 2) & 32767
    pack1 = (w >> 17) & 32767
    alt = qmode == 3
    q0 = np.where(alt, (pack0 & 15) + 16 * ((pack0 >> 8) // 11), q0)
    q1 = np.where(alt, (pack0 >> 4) % 176, q1)
    q2 = np.where(alt, (pack1 & 15) + 16 * ((pack1 >> 8) // 11), q2)
    q3 = np.where(alt, (pack1 >> 4) % 176, q3)

    q = np.stack([q0, q1, q2, q3], axis=-1)
    return _dequantize(q, qmode[..., None])


def uncompress(data: Any, info: StreamInfo) -> np.ndarray:
    """Decompress PiSP mode-1 data into a (height, width rounded up to 8) uint16 array."""
    padded = (info.width + 7) & ~7
    blocks = padded // 8
    rows = np.ascontiguousarray(_rows(data, info, padded))
    words = rows.view("<u4").reshape(info.height, blocks, 2).astype(np.int64)
    out = np.empty((info.height, blocks, 8), dtype=np.int64)
    out[..., 0::2] = _sub_block(words[..., 0])
    out[..., 1::2] = _sub_block(words[..., 1])
    out = np.minimum(0xFFFF, out + COMPRESS_OFFSET)
    return out.astype(np.uint16).reshape(info.height, padded)


# TIFF field types.
_BYTE, _ASCII, _SHORT, _LONG, _RATIONAL, _SRATIONAL = 1, 2, 3, 4, 5, 10

_Entry = Tuple[int, int, int, bytes]


def _rational(value: float, signed: bool) -> Tuple[int, int]:
    limit = 2**31 - 1 if signed else 2**32 - 1
    if math.isinf(value):
        return (limit if value > 0 or not signed else -limit), 1
    frac = Fraction(value).limit_denominator(1_000_000)
    if abs(frac.numerator) > limit:
        frac = Fraction(round(value))
    low = -limit if signed else 0
    return min(limit, max(low, frac.numerator)), frac.denominator


def _entry(tag: int, typ: int, values: Any) -> _Entry:
    if typ == _ASCII:
        payload = values.encode() + b"\0"
        return tag, typ, len(payload), payload
    values = list(values) if isinstance(values, Iterable) else [values]
    count = len(values)
    if typ == _BYTE:
        payload = bytes(values)
    elif typ == _SHORT:
        payload = struct.pack(f"<{count}H", *values)
    elif typ == _LONG:
        payload = struct.pack(f"<{count}I", *values)
    else:
        signed = typ == _SRATIONAL
        pairs = [part for v in values for part in _rational(float(v), signed)]
        payload = struct.pack(f"<{2 * count}{'i' if signed else 'I'}", *pairs)
    return tag, typ, count, payload


def _append_ifd(out: bytearray, entries: Sequence[_Entry]) -> int:
    """Append an IFD (and its out-of-line values) to out; return its offset."""
    if len(out) % 2:
        out.append(0)
    entries = sorted(entries, key=lambda e: e[0])
    offset = len(out)
    extra_start = offset + 2 + 12 * len(entries) + 4
    table = bytearray(struct.pack("<H", len(entries)))
    extra = bytearray()
    for tag, typ, count, payload in entries:
        if len(payload) <= 4:
            field = payload.ljust(4, b"\0")
        else:
            field = struct.pack("<I", extra_start + len(extra))
            extra += payload
            if len(extra) % 2:
                extra.append(0)
        table += struct.pack("<HHI", tag, typ, count) + field
    table += struct.pack("<I", 0)
    out += table
    out += extra
    return offset


def _append_data(out: bytearray, data: bytes) -> int:
    if len(out) % 2:
        out.append(0)
    offset = len(out)
    out += data
    return offset


_RGB2XYZ = Matrix(0.4124564, 0.3575761, 0.1804375,
                  0.2126729, 0.7151522, 0.0721750,
                  0.0193339, 0.1191920, 0.9503041)

_DEFAULT_CCM = Matrix(1.90255, -0.77478, -0.12777,
                      -0.31338, 1.88197, -0.56858,
                      -0.06001, -0.61785, 1.67786)


def _thumbnail(raw: np.ndarray, bits: int) -> np.ndarray:
    th, tw = raw.shape[0] >> 4, raw.shape[1] >> 4
    b = raw.astype(np.int64)
    grey = (b[0:16 * th:16, 0:16 * tw:16] + b[0:16 * th:16, 1:16 * tw:16]
            + b[1:16 * th:16, 0:16 * tw:16] + b[1:16 * th:16, 1:16 * tw:16])
    grey = ((grey << 14) & 0xFFFFFFFF) >> bits
    grey = np.sqrt(grey).astype(np.int64) & 0xFF  # a simple gamma curve
    return np.repeat(grey.astype(np.uint8)[..., None], 3, axis=2)


def _black_levels(metadata: Mapping[str, Any], fmt: _BayerFormat) -> List[float]:
    scale = (1 << fmt.bits) / 65536.0
    levels = [4096 * scale] * 4
    bl = metadata.get("SensorBlackLevels")
    if bl is None:
        log.warning("WARNING: no black level found, using default")
        return levels
    # bl is ordered R, Gr, Gb, B; reorder for the actual Bayer order.
    for i, j in enumerate(fmt.order):
        j = 0 if j == 0 else (3 if j == 2 else 1 + bool(fmt.order[i ^ 1]))
        levels[j] = bl[i] * scale
    return levels


def dng_save(mem: Sequence[Any], info: StreamInfo, metadata: Mapping[str, Any], filename: str,
             cam_model: str, options: StillOptions) -> None:
    """Write the first plane of a raw Bayer image, with a small thumbnail, as a DNG file."""
    fmt = _BAYER_FORMATS.get(info.pixel_format)  # type: ignore[arg-type]
    if fmt is None:
        raise ValueError("unsupported Bayer format")
    log.info("Bayer format is %s", fmt.name)

    if fmt.compressed:
        raw = uncompress(mem[0], info)
    elif fmt.packed and fmt.bits == 10:
        raw = unpack_10bit(mem[0], info)
    elif fmt.packed:
        raw = unpack_12bit(mem[0], info)
    else:
        raw = unpack_16bit(mem[0], info)

    black_levels = _black_levels(metadata, fmt)

    exposure = metadata.get("ExposureTime")
    exp_time = 10000.0
    if exposure is not None:
        exp_time = float(exposure)
    else:
        log.warning("WARNING: default to exposure time of %gus", exp_time)
    exp_time /= 1e6

    gain = metadata.get("AnalogueGain")
    iso = 100
    if gain is not None:
        iso = int(gain * 100.0) & 0xFFFF
    else:
        log.warning("WARNING: default to ISO value of %d", iso)

    neutral = [1.0, 1.0, 1.0]
    wb_gains = Matrix.diagonal(1, 1, 1)
    colour_gains = metadata.get("ColourGains")
    if colour_gains is not None:
        neutral[0] = 1.0 / colour_gains[0]
        neutral[2] = 1.0 / colour_gains[1]
        wb_gains = Matrix.diagonal(colour_gains[0], 1, colour_gains[1])

    ccm_values = metadata.get("ColourCorrectionMatrix")
    if ccm_values is not None:
        ccm = Matrix(*ccm_values)
    else:
        ccm = _DEFAULT_CCM
        log.warning("WARNING: no CCM metadata found")

    cam_xyz = (_RGB2XYZ * ccm * wb_gains).inverse()
    log.debug("Black levels %s, exposure time %gus, ISO %d", black_levels, exp_time * 1e6, iso)
    log.debug("Neutral %s", neutral)
    log.debug("Cam_XYZ: %s", cam_xyz.m)

    thumb = _thumbnail(raw, fmt.bits)
    th, tw = thumb.shape[:2]
    main = raw[:, :info.width].astype("<u2")

    out = bytearray(b"II*\0\0\0\0\0")
    thumb_offset = _append_data(out, thumb.tobytes())
    main_offset = _append_data(out, main.tobytes())

    sub_ifd = _append_ifd(out, [
        _entry(254, _LONG, 0),
        _entry(256, _LONG, info.width),
        _entry(257, _LONG, info.height),
        _entry(258, _SHORT, 16),
        _entry(259, _SHORT, 1),
        _entry(262, _SHORT, 32803),
        _entry(273, _LONG, main_offset),
        _entry(277, _SHORT, 1),
        _entry(278, _LONG, info.height),
        _entry(279, _LONG, main.nbytes),
        _entry(284, _SHORT, 1),
        _entry(33421, _SHORT, (2, 2)),
        _entry(33422, _BYTE, fmt.order),
        _entry(50713, _SHORT, (2, 2)),
        _entry(50714, _RATIONAL, black_levels),
        _entry(50717, _LONG, (1 << fmt.bits) - 1),
    ])

    exif_entries = [
        _entry(33434, _RATIONAL, exp_time),
        _entry(34855, _SHORT, iso),
        _entry(36867, _ASCII, time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())),
    ]
    lens_position = metadata.get("LensPosition")
    if lens_position is not None:
        dist = 1.0 / lens_position if lens_position > 0.0 else math.inf
        exif_entries.append(_entry(37382, _RATIONAL, dist))
    exif_ifd = _append_ifd(out, exif_entries)

    ifd0 = _append_ifd(out, [
        _entry(254, _LONG, 1),
        _entry(256, _LONG, tw),
        _entry(257, _LONG, th),
        _entry(258, _SHORT, (8, 8, 8)),
        _entry(259, _SHORT, 1),
        _entry(262, _SHORT, 2),
        _entry(271, _ASCII, MAKE_STRING),
        _entry(272, _ASCII, cam_model),
        _entry(273, _LONG, thumb_offset),
        _entry(274, _SHORT, 1),
        _entry(277, _SHORT, 3),
        _entry(278, _LONG, th),
        _entry(279, _LONG, thumb.nbytes),
        _entry(284, _SHORT, 1),
        _entry(305, _ASCII, "rpicam-still"),
        _entry(330, _LONG, sub_ifd),
        _entry(34665, _LONG, exif_ifd),
        _entry(50706, _BYTE, (1, 1, 0, 0)),
        _entry(50707, _BYTE, (1, 0, 0, 0)),
        _entry(50708, _ASCII, f"{MAKE_STRING} {cam_model}"),
        _entry(50721, _SRATIONAL, cam_xyz.m),
        _entry(50728, _RATIONAL, neutral),
        _entry(50778, _SHORT, 21),
    ])
    struct.pack_into("<I", out, 4, ifd0)

    try:
        with open(filename, "wb") as fp:
            fp.write(out)
    except OSError as exc:
        raise OSError(f"could not open file {filename}") from exc