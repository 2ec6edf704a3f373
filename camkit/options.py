"""Option sets and stream descriptions shared by encoders, outputs and image writers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional


class PixelFormat(str, enum.Enum):
    """Pixel formats understood by the image writers and encoders."""

    YUV420 = "YUV420"
    YUYV = "YUYV"
    RGB888 = "RGB888"
    BGR888 = "BGR888"
    RGB161616 = "RGB161616"
    BGR161616 = "BGR161616"

    SRGGB10_CSI2P = "SRGGB10_CSI2P"
    SGRBG10_CSI2P = "SGRBG10_CSI2P"
    SBGGR10_CSI2P = "SBGGR10_CSI2P"
    SGBRG10_CSI2P = "SGBRG10_CSI2P"
    SRGGB10 = "SRGGB10"
    SGRBG10 = "SGRBG10"
    SBGGR10 = "SBGGR10"
    SGBRG10 = "SGBRG10"

    SRGGB12_CSI2P = "SRGGB12_CSI2P"
    SGRBG12_CSI2P = "SGRBG12_CSI2P"
    SBGGR12_CSI2P = "SBGGR12_CSI2P"
    SGBRG12_CSI2P = "SGBRG12_CSI2P"
    SRGGB12 = "SRGGB12"
    SGRBG12 = "SGRBG12"
    SBGGR12 = "SBGGR12"
    SGBRG12 = "SGBRG12"

    SRGGB16 = "SRGGB16"
    SGRBG16 = "SGRBG16"
    SBGGR16 = "SBGGR16"
    SGBRG16 = "SGBRG16"

    R10_CSI2P = "R10_CSI2P"
    R10 = "R10"
    R12 = "R12"

    RGGB_PISP_COMP1 = "RGGB_PISP_COMP1"
    GRBG_PISP_COMP1 = "GRBG_PISP_COMP1"
    GBRG_PISP_COMP1 = "GBRG_PISP_COMP1"
    BGGR_PISP_COMP1 = "BGGR_PISP_COMP1"

    @classmethod
    def parse(cls, name: str) -> "PixelFormat":
        """Look a format up by name, ignoring case."""
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown pixel format {name}") from None


class Platform(enum.Enum):
    """The camera platform the application runs on."""

    UNKNOWN = "unknown"
    VC4 = "vc4"
    PISP = "pisp"


@dataclass(frozen=True)
class StreamInfo:
    """Geometry and format of one image stream."""

    width: int = 0
    height: int = 0
    stride: int = 0
    pixel_format: Optional[PixelFormat] = None
    colour_space: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("width", "height", "stride"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")


@dataclass
class VideoOptions:
    """Settings that control video encoding and output."""

    output: str = ""
    codec: str = "h264"
    platform: Platform = Platform.VC4
    circular: int = 0
    segment: int = 0
    split: bool = False
    wrap: int = 0
    flush: bool = False
    save_pts: str = ""
    metadata: str = ""
    metadata_format: str = "json"
    pause: bool = False
    listen: bool = False
    initial: str = "record"
    width: int = 0
    height: int = 0
    framerate: Optional[float] = None
    bitrate: int = 0
    profile: str = ""
    level: str = ""
    intra: int = 0
    inline_headers: bool = False
    quality: int = 50
    encoder_libs: str = ""
    libav_video_codec: str = "h264_v4l2m2m"
    libav_format: str = ""
    verbose: int = 1


@dataclass
class StillOptions:
    """Settings that control still image capture and saving."""

    output: str = ""
    encoding: str = "jpg"
    quality: int = 93
    restart: int = 0
    thumb_width: int = 320
    thumb_height: int = 240
    thumb_quality: int = 70
    exif: List[str] = field(default_factory=list)
    verbose: int = 1