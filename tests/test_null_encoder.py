import threading

import pytest

from camkit.encoder import get_factory
from camkit.null_encoder import NullEncoder
from camkit.options import StreamInfo, VideoOptions


def test_frames_pass_through_in_order():
    events = []
    encoder = NullEncoder(VideoOptions())
    encoder.input_done_callback = lambda: events.append("done")
    encoder.output_ready_callback = lambda mem, ts, key: events.append((mem, ts, key))
    for ts, payload in enumerate([b"a", b"bb", b"ccc"]):
        encoder.encode_buffer(payload, StreamInfo(), ts * 1000)
    encoder.close()
    assert events == [
        "done", (b"a", 0, True),
        "done", (b"bb", 1000, True),
        "done", (b"ccc", 2000, True),
    ]


def test_output_arrives_before_close():
    arrived = threading.Event()
    with NullEncoder(VideoOptions()) as encoder:
        encoder.output_ready_callback = lambda mem, ts, key: arrived.set()
        encoder.encode_buffer(b"frame", StreamInfo(), 5)
        assert arrived.wait(5.0) is True


def test_encode_after_close_raises():
    encoder = NullEncoder(VideoOptions())
    encoder.close()
    with pytest.raises(RuntimeError):
        encoder.encode_buffer(b"x", StreamInfo(), 0)


def test_callback_error_reported_on_close():
    encoder = NullEncoder(VideoOptions())

    def fail(mem, ts, key):
        raise ValueError("bad frame")

    encoder.output_ready_callback = fail
    encoder.encode_buffer(b"x", StreamInfo(), 0)
    with pytest.raises(ValueError, match="bad frame"):
        encoder.close()


def test_registered_as_null():
    factory = get_factory()
    assert factory.has_encoder("null") is True
    encoder = factory.create_encoder("null")(VideoOptions(), StreamInfo())
    try:
        assert isinstance(encoder, NullEncoder)
    finally:
        encoder.close()