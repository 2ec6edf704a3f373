"""Pick and construct the encoder that the options ask for."""

from __future__ import annotations

from . import mjpeg_encoder, null_encoder  # noqa: F401  (these register themselves)
from .encoder import Encoder, get_factory
from .options import Platform, StreamInfo, VideoOptions


def _make(name: str, options: VideoOptions, info: StreamInfo) -> Encoder:
    create = get_factory().create_encoder(name)
    if create is None:
        raise RuntimeError(f"no encoder registered as {name}")
    return create(options, info)


def _h264_select(options: VideoOptions, info: StreamInfo) -> Encoder:
    if options.platform is Platform.VC4:
        return _make("h264", options, info)
    if get_factory().has_encoder("libav"):
        # No hardware codec here, so use x264 through libav.
        options.libav_video_codec = "libx264"
        return _make("libav", options, info)
    raise RuntimeError("Unable to find an appropriate H.264 codec")


def _libav_select(options: VideoOptions, info: StreamInfo) -> Encoder:
    if options.libav_video_codec == "h264_v4l2m2m" and options.platform is not Platform.VC4:
        options.libav_video_codec = "libx264"
    return _make("libav", options, info)


def create_encoder(options: VideoOptions, info: StreamInfo) -> Encoder:
    """Construct the encoder for options.codec (matched ignoring case)."""
    codec = options.codec.casefold()
    if codec == "yuv420":
        return _make("null", options, info)
    if codec == "h264":
        return _h264_select(options, info)
    if get_factory().has_encoder("libav") and codec == "libav":
        return _libav_select(options, info)
    if codec == "mjpeg":
        return _make("mjpeg", options, info)
    raise RuntimeError(f"Unrecognised codec {options.codec}")