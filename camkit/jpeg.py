"""Encode YUV images as JPEG files carrying EXIF data and an optional thumbnail."""

from __future__ import annotations

import enum
import io
import logging
import re
import struct
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Iterator, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .options import PixelFormat, StillOptions, StreamInfo

log = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"

_EXIF_PREFIX = b"Exif\0\0"
_TIFF_HEADER = b"II*\0" + struct.pack("<I", 8)
_APP1_START = b"\xff\xd8\xff\xe1"
# The whole EXIF segment must stay below 64K, so this leaves room for the tags.
_MAX_THUMB_BYTES = 60000


class _Format(enum.IntEnum):
    BYTE = 1
    ASCII = 2
    SHORT = 3
    LONG = 4
    RATIONAL = 5
    SBYTE = 6
    UNDEFINED = 7
    SSHORT = 8
    SLONG = 9
    SRATIONAL = 10


_FORMAT_SIZE = {
    _Format.BYTE: 1, _Format.ASCII: 1, _Format.SHORT: 2, _Format.LONG: 4,
    _Format.RATIONAL: 8, _Format.SBYTE: 1, _Format.UNDEFINED: 1,
    _Format.SSHORT: 2, _Format.SLONG: 4, _Format.SRATIONAL: 8,
}


class _Ifd(enum.Enum):
    IFD0 = "IFD0"
    IFD1 = "IFD1"
    EXIF = "EXIF"
    GPS = "GPS"
    INTEROP = "EINT"


_IFD_NAMES = {ifd.value: ifd for ifd in _Ifd}

_EXIF_IFD_POINTER = 0x8769
_GPS_IFD_POINTER = 0x8825
_INTEROP_IFD_POINTER = 0xA005

# Tag name -> (tag id, format, components). A format of None is "unknown",
# and zero components means the count depends on the value given.
_TAGS: Dict[str, Tuple[int, Optional[_Format], int]] = {
    "ImageWidth": (0x0100, _Format.SHORT, 1),
    "ImageLength": (0x0101, _Format.SHORT, 1),
    "BitsPerSample": (0x0102, _Format.SHORT, 3),
    "Compression": (0x0103, _Format.SHORT, 1),
    "PhotometricInterpretation": (0x0106, _Format.SHORT, 1),
    "ImageDescription": (0x010E, _Format.ASCII, 0),
    "Make": (0x010F, _Format.ASCII, 0),
    "Model": (0x0110, _Format.ASCII, 0),
    "Orientation": (0x0112, _Format.SHORT, 1),
    "XResolution": (0x011A, _Format.RATIONAL, 1),
    "YResolution": (0x011B, _Format.RATIONAL, 1),
    "ResolutionUnit": (0x0128, _Format.SHORT, 1),
    "Software": (0x0131, _Format.ASCII, 0),
    "DateTime": (0x0132, _Format.ASCII, 0),
    "Artist": (0x013B, _Format.ASCII, 0),
    "WhitePoint": (0x013E, _Format.RATIONAL, 2),
    "PrimaryChromaticities": (0x013F, _Format.RATIONAL, 6),
    "JPEGInterchangeFormat": (0x0201, _Format.LONG, 1),
    "JPEGInterchangeFormatLength": (0x0202, _Format.LONG, 1),
    "YCbCrCoefficients": (0x0211, _Format.UNDEFINED, 0),
    "YCbCrSubSampling": (0x0212, _Format.SHORT, 2),
    "YCbCrPositioning": (0x0213, _Format.SHORT, 1),
    "ReferenceBlackWhite": (0x0214, _Format.RATIONAL, 6),
    "Copyright": (0x8298, _Format.ASCII, 0),
    "ExposureTime": (0x829A, _Format.RATIONAL, 1),
    "FNumber": (0x829D, _Format.RATIONAL, 1),
    "ExposureProgram": (0x8822, _Format.SHORT, 1),
    "ISOSpeedRatings": (0x8827, _Format.SHORT, 1),
    "ExifVersion": (0x9000, _Format.UNDEFINED, 4),
    "DateTimeOriginal": (0x9003, _Format.ASCII, 0),
    "DateTimeDigitized": (0x9004, _Format.ASCII, 0),
    "ShutterSpeedValue": (0x9201, _Format.SRATIONAL, 1),
    "ApertureValue": (0x9202, _Format.RATIONAL, 1),
    "BrightnessValue": (0x9203, _Format.SRATIONAL, 1),
    "ExposureBiasValue": (0x9204, _Format.SRATIONAL, 1),
    "MaxApertureValue": (0x9205, _Format.RATIONAL, 1),
    "SubjectDistance": (0x9206, _Format.RATIONAL, 1),
    "MeteringMode": (0x9207, _Format.SHORT, 1),
    "LightSource": (0x9208, _Format.SHORT, 1),
    "Flash": (0x9209, _Format.SHORT, 1),
    "FocalLength": (0x920A, _Format.RATIONAL, 1),
    "SubjectArea": (0x9214, None, 0),
    "MakerNote": (0x927C, _Format.UNDEFINED, 0),
    "UserComment": (0x9286, _Format.UNDEFINED, 0),
    "ColorSpace": (0xA001, _Format.SHORT, 1),
    "PixelXDimension": (0xA002, _Format.LONG, 1),
    "PixelYDimension": (0xA003, _Format.LONG, 1),
    "WhiteBalance": (0xA403, _Format.SHORT, 1),
    "DigitalZoomRatio": (0xA404, _Format.RATIONAL, 1),
    "FocalLengthIn35mmFilm": (0xA405, _Format.SHORT, 1),
    "SceneCaptureType": (0xA406, _Format.SHORT, 1),
    "ImageUniqueID": (0xA420, _Format.ASCII, 0),
    "InteroperabilityIndex": (0x0001, _Format.ASCII, 0),
    "GPSLatitudeRef": (0x0001, _Format.ASCII, 0),
    "GPSLatitude": (0x0002, _Format.RATIONAL, 3),
    "GPSLongitudeRef": (0x0003, _Format.ASCII, 0),
    "GPSLongitude": (0x0004, _Format.RATIONAL, 3),
    "GPSAltitudeRef": (0x0005, _Format.BYTE, 1),
    "GPSAltitude": (0x0006, _Format.RATIONAL, 1),
    "GPSTimeStamp": (0x0007, _Format.RATIONAL, 3),
    "GPSDateStamp": (0x001D, _Format.ASCII, 0),
}

# Tags whose format is otherwise undefined but is known.
_FORMAT_EXCEPTIONS = {0x0211: (_Format.RATIONAL, 3)}

_INT = r"\s*([+-]?\d+)"
_ONE_INT = re.compile(_INT)
_TWO_INTS = re.compile(_INT + "/" + _INT)

# Format -> (pattern, struct codes, description used in errors).
_READERS = {
    _Format.SHORT: (_ONE_INT, "H", "unsigned short"),
    _Format.SSHORT: (_ONE_INT, "h", "signed short"),
    _Format.LONG: (_ONE_INT, "I", "unsigned long"),
    _Format.SLONG: (_ONE_INT, "i", "signed long"),
    _Format.RATIONAL: (_TWO_INTS, "II", "unsigned rational"),
    _Format.SRATIONAL: (_TWO_INTS, "ii", "signed rational"),
}

_CODE_BITS = {"H": (16, False), "h": (16, True), "I": (32, False), "i": (32, True)}


def _wrap(value: int, code: str) -> int:
    bits, signed = _CODE_BITS[code]
    value &= (1 << bits) - 1
    if signed and value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _read_value(fmt: _Format, text: str, pos: int) -> Tuple[bytes, int]:
    pattern, codes, label = _READERS[fmt]
    match = pattern.match(text, pos)
    if match is None:
        raise ValueError(f"failed to read EXIF {label}")
    values = [_wrap(int(group), code) for group, code in zip(match.groups(), codes)]
    return struct.pack("<" + codes, *values), match.end()


class ExifItem(NamedTuple):
    """One "IFD.Tag=value" setting."""

    ifd: str
    tag: str
    value: str


_ITEM = re.compile(r"([^.]{1,4})\.([^=]{1,127})=")


def parse_exif_item(text: str) -> ExifItem:
    """Split "IFD.Tag=value" into its parts, checking the IFD name."""
    match = _ITEM.match(text)
    if match is None:
        raise ValueError("failed to read EXIF IFD and tag")
    ifd_name, tag_name = match.groups()
    if ifd_name not in _IFD_NAMES:
        raise ValueError(f"bad IFD name {ifd_name}")
    return ExifItem(ifd_name, tag_name, text[match.end():])


@dataclass
class _Entry:
    tag: int
    format: Optional[_Format]
    components: int
    data: bytearray = field(default_factory=bytearray)


class _ExifData:
    """A little-endian EXIF block built up entry by entry."""

    def __init__(self) -> None:
        self.ifds: Dict[_Ifd, Dict[int, _Entry]] = {ifd: {} for ifd in _Ifd}

    def entry(self, ifd: _Ifd, name: str) -> _Entry:
        tag, fmt, components = _TAGS[name]
        existing = self.ifds[ifd].get(tag)
        if existing is not None:
            return existing
        size = _FORMAT_SIZE[fmt] if fmt is not None else 0
        entry = _Entry(tag, fmt, components, bytearray(components * size))
        self.ifds[ifd][tag] = entry
        return entry

    def set_string(self, ifd: _Ifd, name: str, text: str) -> None:
        entry = self.entry(ifd, name)
        entry.data = bytearray(text.encode())
        entry.components = len(entry.data)
        entry.format = _Format.ASCII

    def set_packed(self, ifd: _Ifd, name: str, packed: bytes) -> _Entry:
        entry = self.entry(ifd, name)
        entry.data = bytearray(packed)
        return entry

    def read_item(self, item: ExifItem) -> None:
        ifd = _IFD_NAMES[item.ifd]
        if item.tag not in _TAGS:
            log.warning("WARNING: no EXIF tag %s found - ignoring", item.tag)
            return
        entry = self.entry(ifd, item.tag)
        if entry.format is None:
            log.warning("WARNING: format for EXIF tag %s unknown - ignoring", item.tag)
            return
        if entry.format is _Format.UNDEFINED:
            if entry.tag in _FORMAT_EXCEPTIONS:
                entry.format, entry.components = _FORMAT_EXCEPTIONS[entry.tag]
            else:
                log.warning("WARNING: libexif format for tag %s undefined - treating as ASCII", item.tag)
                entry.format = _Format.ASCII

        if entry.format is _Format.ASCII:
            self.set_string(ifd, item.tag, item.value)
            return

        if entry.format not in _READERS:
            raise ValueError(f"cannot read EXIF values of format {entry.format.name} for tag {item.tag}")
        size = _FORMAT_SIZE[entry.format]
        if entry.components == 0 or len(entry.data) != entry.components * size:
            if entry.components == 0:
                entry.components = item.value.count(",") + 1
            entry.data = bytearray(entry.components * size)

        pos = 0
        for i in range(entry.components):
            if pos >= len(item.value):
                raise ValueError(f"too few parameters for EXIF tag {item.tag}")
            packed, end = _read_value(entry.format, item.value, pos)
            entry.data[i * size:(i + 1) * size] = packed
            pos = end + 1  # allow a comma

    def save(self) -> bytes:
        """Serialise to "Exif\\0\\0" followed by a TIFF structure."""

        def usable(ifd: _Ifd) -> Dict[int, _Entry]:
            return {tag: e for tag, e in self.ifds[ifd].items() if e.format is not None}

        ifd0, exif, interop = usable(_Ifd.IFD0), usable(_Ifd.EXIF), usable(_Ifd.INTEROP)
        gps, ifd1 = usable(_Ifd.GPS), usable(_Ifd.IFD1)
        if interop:
            exif[_INTEROP_IFD_POINTER] = _Entry(_INTEROP_IFD_POINTER, _Format.LONG, 1, bytearray(4))
        if exif:
            ifd0[_EXIF_IFD_POINTER] = _Entry(_EXIF_IFD_POINTER, _Format.LONG, 1, bytearray(4))
        if gps:
            ifd0[_GPS_IFD_POINTER] = _Entry(_GPS_IFD_POINTER, _Format.LONG, 1, bytearray(4))

        layout = [(_Ifd.IFD0, ifd0)] + [
            (ifd, entries)
            for ifd, entries in ((_Ifd.EXIF, exif), (_Ifd.INTEROP, interop), (_Ifd.GPS, gps), (_Ifd.IFD1, ifd1))
            if entries
        ]
        offsets: Dict[_Ifd, int] = {}
        pos = len(_TIFF_HEADER)
        for ifd, entries in layout:
            offsets[ifd] = pos
            pos += _ifd_size(entries)

        for parent, tag, child in (
            (exif, _INTEROP_IFD_POINTER, _Ifd.INTEROP),
            (ifd0, _EXIF_IFD_POINTER, _Ifd.EXIF),
            (ifd0, _GPS_IFD_POINTER, _Ifd.GPS),
        ):
            if tag in parent:
                parent[tag].data = bytearray(struct.pack("<I", offsets[child]))

        body = bytearray(_TIFF_HEADER)
        for ifd, entries in layout:
            next_offset = offsets.get(_Ifd.IFD1, 0) if ifd is _Ifd.IFD0 else 0
            body += _serialise_ifd(entries, offsets[ifd], next_offset)
        return _EXIF_PREFIX + bytes(body)


def _ifd_size(entries: Mapping[int, _Entry]) -> int:
    extra = sum(len(e.data) + len(e.data) % 2 for e in entries.values() if len(e.data) > 4)
    return 2 + 12 * len(entries) + 4 + extra


def _serialise_ifd(entries: Mapping[int, _Entry], offset: int, next_offset: int) -> bytes:
    table = bytearray(struct.pack("<H", len(entries)))
    extra = bytearray()
    extra_start = offset + 2 + 12 * len(entries) + 4
    for entry in sorted(entries.values(), key=lambda e: e.tag):
        data = bytes(entry.data)
        if len(data) <= 4:
            value_field = data.ljust(4, b"\0")
        else:
            value_field = struct.pack("<I", extra_start + len(extra))
            extra += data
            if len(extra) % 2:
                extra.append(0)
        assert entry.format is not None
        table += struct.pack("<HHI", entry.tag, int(entry.format), entry.components) + value_field
    table += struct.pack("<I", next_offset)
    return bytes(table + extra)


def _sample(data: Any, info: StreamInfo, out_w: int, out_h: int) -> np.ndarray:
    """Pick the (Y, Cb, Cr) sample for every output pixel, nearest neighbour."""
    buf = np.frombuffer(memoryview(data).cast("B"), dtype=np.uint8)
    scan = np.arange(out_h, dtype=np.int64)
    cols = np.arange(out_w, dtype=np.int64)
    row = ((scan * info.height) // out_h * info.stride)[:, None]
    try:
        if info.pixel_format is PixelFormat.YUYV:
            off = (cols * info.width) // out_w * 2
            aligned = off & ~3
            planes = (buf[row + off], buf[row + aligned + 1], buf[row + aligned + 3])
        else:
            half = info.stride // 2
            u_base = info.stride * info.height
            v_base = u_base + half * (info.height // 2)
            off = (cols * info.width) // out_w
            uv_row = (((scan // 2) * info.height) // out_h * half)[:, None]
            planes = (buf[row + off], buf[u_base + uv_row + off // 2], buf[v_base + uv_row + off // 2])
    except IndexError:
        raise ValueError("image buffer too small") from None
    return np.stack(planes, axis=-1)


def yuv_to_jpeg(data: Any, info: StreamInfo, output_width: int, output_height: int,
                quality: int, restart: int) -> bytes:
    """Encode YUYV or YUV420 data, scaled to the output size, as a JPEG."""
    if info.pixel_format not in (PixelFormat.YUYV, PixelFormat.YUV420):
        raise ValueError("unsupported YUV format in JPEG encode")
    if output_width <= 0 or output_height <= 0 or info.width <= 0 or info.height <= 0:
        raise ValueError("image dimensions must be positive")
    pixels = _sample(data, info, output_width, output_height)
    image = Image.frombytes("YCbCr", (output_width, output_height), pixels.tobytes())
    params: Dict[str, Any] = {"quality": quality, "subsampling": 2}
    if restart:
        params["restart_marker_blocks"] = restart
    out = io.BytesIO()
    image.save(out, format="JPEG", **params)
    return out.getvalue()


def create_exif_data(mem: Sequence[Any], info: StreamInfo, metadata: Mapping[str, Any],
                     cam_model: str, options: StillOptions) -> Tuple[bytes, bytes]:
    """Build the EXIF block and thumbnail JPEG (empty if none) for an image."""
    exif = _ExifData()
    ifd = _Ifd.EXIF

    exif.set_string(ifd, "Make", MAKE_STRING)
    exif.set_string(ifd, "Model", cam_model)
    exif.set_string(ifd, "Software", "rpicam-apps")
    now = time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())
    for name in ("DateTime", "DateTimeOriginal", "DateTimeDigitized"):
        exif.set_string(ifd, name, now)

    exposure_time = metadata.get("ExposureTime")
    if exposure_time is not None:
        log.debug("Exposure time: %s", exposure_time)
        exif.set_packed(ifd, "ExposureTime", struct.pack("<II", int(exposure_time) & 0xFFFFFFFF, 1000000))
    analogue_gain = metadata.get("AnalogueGain")
    if analogue_gain is not None:
        digital_gain = metadata.get("DigitalGain")
        gain = analogue_gain * (digital_gain if digital_gain is not None else 1.0)
        log.debug("Ag %s Dg %s Total %s", analogue_gain, digital_gain, gain)
        exif.set_packed(ifd, "ISOSpeedRatings", struct.pack("<H", int(100 * gain) & 0xFFFF))
    lens_position = metadata.get("LensPosition")
    if lens_position is not None:
        exif.set_packed(ifd, "SubjectDistance",
                        struct.pack("<II", 1000, int(1000.0 * lens_position) & 0xFFFFFFFF))

    for text in options.exif:
        log.debug("Processing EXIF item: %s", text)
        exif.read_item(parse_exif_item(text))

    thumb = b""
    if options.thumb_quality:
        log.debug("Thumbnail dimensions are %d x %d", options.thumb_width, options.thumb_height)
        exif.set_packed(_Ifd.IFD1, "ImageWidth", struct.pack("<H", options.thumb_width & 0xFFFF))
        exif.set_packed(_Ifd.IFD1, "ImageLength", struct.pack("<H", options.thumb_height & 0xFFFF))
        exif.set_packed(_Ifd.IFD1, "Compression", struct.pack("<H", 6))
        offset_entry = exif.set_packed(_Ifd.IFD1, "JPEGInterchangeFormat", struct.pack("<I", 0))
        length_entry = exif.set_packed(_Ifd.IFD1, "JPEGInterchangeFormatLength", struct.pack("<I", 0))
        exif_len = len(exif.save())

        quality = options.thumb_quality
        while quality > 0:
            thumb = yuv_to_jpeg(mem[0], info, options.thumb_width, options.thumb_height, quality, 0)
            if len(thumb) < _MAX_THUMB_BYTES:
                break
            quality -= 5
        log.debug("Thumbnail size %d", len(thumb))
        if quality <= 0:
            raise RuntimeError("failed to make acceptable thumbnail")

        # The thumbnail follows the EXIF block; offsets count from the TIFF header.
        offset_entry.data = bytearray(struct.pack("<I", exif_len - len(_EXIF_PREFIX)))
        length_entry.data = bytearray(struct.pack("<I", len(thumb)))

    return exif.save(), thumb


def _strip_jfif(jpeg: bytes) -> bytes:
    """Drop the SOI marker and any JFIF APP0 segment from an encoded JPEG."""
    pos = 2
    if jpeg[2:4] == b"\xff\xe0":
        pos = 4 + int.from_bytes(jpeg[4:6], "big")
    return jpeg[pos:]


@contextmanager
def _open_output(filename: str) -> Iterator[BinaryIO]:
    if filename == "-":
        yield sys.stdout.buffer
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            yield fp


def jpeg_save(mem: Sequence[Any], info: StreamInfo, metadata: Mapping[str, Any], filename: str,
              cam_model: str, options: StillOptions) -> None:
    """Write a YUV image as a JPEG file with EXIF data ("-" for stdout)."""
    if info.width & 1 or info.height & 1:
        raise ValueError("both width and height must be even")
    if len(mem) != 1:
        raise ValueError("only single plane YUV supported")

    exif, thumb = create_exif_data(mem, info, metadata, cam_model, options)
    jpeg = yuv_to_jpeg(mem[0], info, info.width, info.height, options.quality, options.restart)
    log.debug("JPEG size is %d", len(jpeg))

    segment_length = len(exif) + len(thumb) + 2
    if segment_length > 0xFFFF:
        raise ValueError("EXIF data too large for a JPEG APP1 segment")
    log.debug("EXIF data len %d", len(exif))

    try:
        with _open_output(filename) as fp:
            fp.write(_APP1_START)
            fp.write(segment_length.to_bytes(2, "big"))
            fp.write(exif)
            fp.write(thumb)
            fp.write(_strip_jfif(jpeg))
    except OSError as exc:
        raise OSError(f"failed to open file {options.output or filename}") from exc