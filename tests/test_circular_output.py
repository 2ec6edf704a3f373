import pytest

from camkit.circular_output import CircularBuffer, CircularOutput
from camkit.options import VideoOptions
from camkit.output import OutputError


def test_buffer_available_and_empty():
    cb = CircularBuffer(16)
    assert cb.empty()
    assert cb.available() == 15
    cb.write(b"hello")
    assert not cb.empty()
    assert cb.available() == 15 - 5
    assert cb.read(5) == b"hello"
    assert cb.empty()


def test_buffer_wraps_around():
    cb = CircularBuffer(8)
    cb.write(b"abcde")
    assert cb.read(5) == b"abcde"
    cb.write(b"fghijk")
    assert cb.read(6) == b"fghijk"
    assert cb.empty()


def test_buffer_skip_and_pad():
    cb = CircularBuffer(32)
    cb.write(b"xy")
    cb.pad(3)
    cb.write(b"z")
    assert cb.read(2) == b"xy"
    cb.skip(3)
    assert cb.read(1) == b"z"
    assert cb.empty()


def test_buffer_size_must_be_positive():
    with pytest.raises(ValueError):
        CircularBuffer(0)


def test_frames_are_written_on_close(tmp_path):
    path = tmp_path / "out.h264"
    frames = [b"K" * 21, b"P" * 3, b"Q" * 17]
    with CircularOutput(VideoOptions(output=str(path), circular=1)) as out:
        out.output_ready(frames[0], 0, True)
        out.output_ready(frames[1], 1000, False)
        out.output_ready(frames[2], 2000, False)
        assert path.read_bytes() == b""
    assert path.read_bytes() == b"".join(frames)


def test_old_frames_are_evicted_and_output_starts_at_keyframe(tmp_path):
    path = tmp_path / "out.h264"
    size = 400_000
    frames = [bytes([i]) * size for i in range(5)]
    keys = [True, False, False, True, False]
    with CircularOutput(VideoOptions(output=str(path), circular=1)) as out:
        for i, (frame, key) in enumerate(zip(frames, keys)):
            out.output_ready(frame, i * 1000, key)
    assert path.read_bytes() == frames[3] + frames[4]


def test_nothing_written_without_keyframe_in_buffer(tmp_path):
    path = tmp_path / "out.h264"
    size = 400_000
    with CircularOutput(VideoOptions(output=str(path), circular=1)) as out:
        out.output_ready(b"\x01" * size, 0, True)
        for i in range(3):
            out.output_ready(b"\x02" * size, (i + 1) * 1000, False)
    assert path.read_bytes() == b""


def test_frame_larger_than_buffer_raises(tmp_path):
    out = CircularOutput(VideoOptions(output=str(tmp_path / "out"), circular=1))
    with pytest.raises(OutputError, match="too small"):
        out.output_ready(b"\x00" * (2 << 20), 0, True)
    out.close()


def test_missing_output_raises():
    with pytest.raises(OutputError, match="could not open output file"):
        CircularOutput(VideoOptions(output="", circular=1))


def test_timestamps_written_only_at_close(tmp_path):
    pts = tmp_path / "pts.txt"
    out = CircularOutput(VideoOptions(output=str(tmp_path / "out"), circular=1, save_pts=str(pts), flush=True))
    for i in range(3):
        out.output_ready(b"abc", i * 1000, i == 0)
    assert pts.read_text().splitlines() == ["# timecode format v2"]
    out.close()
    lines = pts.read_text().splitlines()
    assert len(lines) == 1 + 3
    assert lines[1] == "0.000"