import io
import re
import struct
from fractions import Fraction

import pytest
from PIL import Image

from camkit.jpeg import create_exif_data, jpeg_save, parse_exif_item, yuv_to_jpeg
from camkit.options import PixelFormat, StillOptions, StreamInfo

W, H = 64, 48
_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 6: 1, 7: 1, 8: 2, 9: 4, 10: 8}


def _yuv420(y=128, u=128, v=128, width=W, height=H):
    stride = width
    data = bytes([y]) * (stride * height) + bytes([u]) * ((stride // 2) * (height // 2))
    data += bytes([v]) * ((stride // 2) * (height // 2))
    return data, StreamInfo(width, height, stride, PixelFormat.YUV420)


def _yuyv(value=128, width=W, height=H):
    stride = 2 * width
    return bytes([value]) * (stride * height), StreamInfo(width, height, stride, PixelFormat.YUYV)


def _read_ifd(tiff, offset):
    (count,) = struct.unpack_from("<H", tiff, offset)
    entries = {}
    for i in range(count):
        tag, typ, n, value_field = struct.unpack_from("<HHI4s", tiff, offset + 2 + 12 * i)
        size = n * _SIZES[typ]
        if size > 4:
            (ptr,) = struct.unpack("<I", value_field)
            raw = tiff[ptr:ptr + size]
        else:
            raw = value_field[:size]
        entries[tag] = (typ, n, raw)
    (nxt,) = struct.unpack_from("<I", tiff, offset + 2 + 12 * count)
    return entries, nxt


def _parse(exif):
    assert exif[:6] == b"Exif\0\0"
    tiff = exif[6:]
    assert tiff[:4] == b"II*\0"
    (first,) = struct.unpack_from("<I", tiff, 4)
    ifd0, nxt = _read_ifd(tiff, first)
    result = {"IFD0": ifd0}
    if 0x8769 in ifd0:
        result["EXIF"], _ = _read_ifd(tiff, struct.unpack("<I", ifd0[0x8769][2])[0])
        if 0xA005 in result["EXIF"]:
            result["EINT"], _ = _read_ifd(tiff, struct.unpack("<I", result["EXIF"][0xA005][2])[0])
    if 0x8825 in ifd0:
        result["GPS"], _ = _read_ifd(tiff, struct.unpack("<I", ifd0[0x8825][2])[0])
    if nxt:
        result["IFD1"], _ = _read_ifd(tiff, nxt)
    return result


def _options(**kwargs):
    kwargs.setdefault("thumb_quality", 0)
    return StillOptions(**kwargs)


def test_yuv420_jpeg_full_size_keeps_grey_level():
    data, info = _yuv420(y=100)
    out = yuv_to_jpeg(data, info, W, H, 90, 0)
    assert out[:2] == b"\xff\xd8"
    image = Image.open(io.BytesIO(out))
    assert image.size == (W, H)
    y, cb, cr = image.convert("YCbCr").getpixel((10, 10))
    assert abs(y - 100) <= 3
    assert abs(cb - 128) <= 3 and abs(cr - 128) <= 3


def test_yuv420_downscale_size():
    data, info = _yuv420()
    out = yuv_to_jpeg(data, info, W // 2, H // 2, 80, 0)
    assert Image.open(io.BytesIO(out)).size == (W // 2, H // 2)


def test_yuyv_scaled_size_and_level():
    data, info = _yuyv(value=150)
    out = yuv_to_jpeg(data, info, 40, 30, 90, 0)
    image = Image.open(io.BytesIO(out))
    assert image.size == (40, 30)
    assert abs(image.convert("YCbCr").getpixel((5, 5))[0] - 150) <= 3


def test_restart_interval_still_decodes():
    data, info = _yuv420()
    out = yuv_to_jpeg(data, info, W, H, 75, 2)
    assert Image.open(io.BytesIO(out)).size == (W, H)


def test_unsupported_format_rejected():
    info = StreamInfo(W, H, W * 3, PixelFormat.RGB888)
    with pytest.raises(ValueError, match="unsupported YUV format"):
        yuv_to_jpeg(bytes(W * H * 3), info, W, H, 90, 0)


def test_short_buffer_rejected():
    _, info = _yuv420()
    with pytest.raises(ValueError, match="too small"):
        yuv_to_jpeg(bytes(W * H), info, W, H, 90, 0)


def test_parse_exif_item_splits_parts():
    assert parse_exif_item("IFD0.Artist=someone") == ("IFD0", "Artist", "someone")
    assert parse_exif_item("EXIF.FNumber=28/10").value == "28/10"


@pytest.mark.parametrize("text", ["IFD0Artist=x", "TOOLONG.Artist=x", "IFD0.Artist"])
def test_parse_exif_item_malformed(text):
    with pytest.raises(ValueError):
        parse_exif_item(text)


def test_parse_exif_item_bad_ifd():
    with pytest.raises(ValueError, match="bad IFD name XYZ"):
        parse_exif_item("XYZ.Artist=x")


def test_fixed_tags_present():
    data, info = _yuv420()
    exif, thumb = create_exif_data([data], info, {}, "imx999", _options())
    assert thumb == b""
    parsed = _parse(exif)
    tags = parsed["EXIF"]
    assert tags[0x010F][2] == b"Raspberry Pi"
    assert tags[0x0110][2] == b"imx999"
    assert tags[0x0131][2] == b"rpicam-apps"
    assert re.fullmatch(rb"\d{4}:\d\d:\d\d \d\d:\d\d:\d\d", tags[0x0132][2])
    assert tags[0x9003][2] == tags[0x0132][2] == tags[0x9004][2]
    assert "IFD1" not in parsed


def test_metadata_tags():
    data, info = _yuv420()
    metadata = {"ExposureTime": 20000, "AnalogueGain": 2.0, "DigitalGain": 1.5, "LensPosition": 2.0}
    exif, _ = create_exif_data([data], info, metadata, "cam", _options())
    tags = _parse(exif)["EXIF"]
    num, den = struct.unpack("<II", tags[0x829A][2])
    assert Fraction(num, den) == Fraction(20000, 1000000)
    assert struct.unpack("<H", tags[0x8827][2])[0] == 300
    assert struct.unpack("<II", tags[0x9206][2]) == (1000, 2000)


def test_user_tags_in_each_ifd():
    data, info = _yuv420()
    items = [
        "IFD0.Artist=someone",
        "IFD0.XResolution=72/1",
        "EXIF.ISOSpeedRatings=400",
        "IFD0.YCbCrCoefficients=299/1000,587/1000,114/1000",
        "EXIF.UserComment=hello",
        "GPS.GPSLatitude=51/1,30/1,0/1",
        "EINT.InteroperabilityIndex=R98",
        "EXIF.ExposureBiasValue=-1/3",
    ]
    exif, _ = create_exif_data([data], info, {}, "cam", _options(exif=items))
    parsed = _parse(exif)
    assert parsed["IFD0"][0x013B][2] == b"someone"
    assert parsed["IFD0"][0x011A][2] == struct.pack("<II", 72, 1)
    assert parsed["EXIF"][0x8827][2] == struct.pack("<H", 400)
    coeffs = parsed["IFD0"][0x0211]
    assert coeffs[:2] == (5, 3)
    assert coeffs[2] == struct.pack("<6I", 299, 1000, 587, 1000, 114, 1000)
    assert parsed["EXIF"][0x9286][:2] == (2, 5)
    assert parsed["GPS"][0x0002][2] == struct.pack("<6I", 51, 1, 30, 1, 0, 1)
    assert parsed["EINT"][0x0001][2] == b"R98"
    assert parsed["EXIF"][0x9204][2] == struct.pack("<ii", -1, 3)


def test_unknown_tag_is_ignored():
    data, info = _yuv420()
    exif, _ = create_exif_data([data], info, {}, "cam", _options(exif=["IFD0.NoSuchTag=1"]))
    assert set(_parse(exif)["IFD0"]) == {0x8769}


def test_too_few_values():
    data, info = _yuv420()
    with pytest.raises(ValueError, match="too few parameters"):
        create_exif_data([data], info, {}, "cam", _options(exif=["IFD0.WhitePoint=1/2"]))


def test_unreadable_value():
    data, info = _yuv420()
    with pytest.raises(ValueError, match="unsigned short"):
        create_exif_data([data], info, {}, "cam", _options(exif=["EXIF.ISOSpeedRatings=abc"]))


def test_thumbnail_offsets():
    data, info = _yuv420()
    options = StillOptions(thumb_width=32, thumb_height=24, thumb_quality=70)
    exif, thumb = create_exif_data([data], info, {}, "cam", options)
    assert Image.open(io.BytesIO(thumb)).size == (32, 24)
    ifd1 = _parse(exif)["IFD1"]
    assert struct.unpack("<I", ifd1[0x0201][2])[0] == len(exif) - 6
    assert struct.unpack("<I", ifd1[0x0202][2])[0] == len(thumb)
    assert struct.unpack("<H", ifd1[0x0103][2])[0] == 6
    assert struct.unpack("<H", ifd1[0x0100][2])[0] == 32


def test_jpeg_save_writes_file(tmp_path):
    data, info = _yuv420()
    path = tmp_path / "out.jpg"
    options = StillOptions(thumb_width=32, thumb_height=24, thumb_quality=70, quality=90)
    jpeg_save([data], info, {"ExposureTime": 1000}, str(path), "cam", options)
    raw = path.read_bytes()
    assert raw[:4] == b"\xff\xd8\xff\xe1"
    assert raw[6:12] == b"Exif\0\0"
    segment_length = int.from_bytes(raw[4:6], "big")
    assert raw[4 + segment_length] == 0xFF
    assert Image.open(path).size == (W, H)


def test_jpeg_save_rejects_odd_size(tmp_path):
    data, _ = _yuv420()
    info = StreamInfo(W - 1, H, W, PixelFormat.YUV420)
    with pytest.raises(ValueError, match="even"):
        jpeg_save([data], info, {}, str(tmp_path / "x.jpg"), "cam", _options())


def test_jpeg_save_rejects_multiple_planes(tmp_path):
    data, info = _yuv420()
    with pytest.raises(ValueError, match="single plane"):
        jpeg_save([data, data], info, {}, str(tmp_path / "x.jpg"), "cam", _options())
    assert not (tmp_path / "x.jpg").exists()