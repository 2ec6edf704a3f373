from pathlib import Path

import pytest

from camkit.file_output import FileOutput
from camkit.options import VideoOptions
from camkit.output import OutputError


def test_single_file(tmp_path):
    path = tmp_path / "video.h264"
    with FileOutput(VideoOptions(output=str(path))) as out:
        out.output_ready(b"abc", 0, True)
        out.output_ready(b"de", 1000, False)
        out.output_ready(b"", 2000, False)
    assert path.read_bytes() == b"abcde"


def test_segments_split_on_keyframes(tmp_path):
    options = VideoOptions(output=str(tmp_path / "seg%d.h264"), segment=10)
    with FileOutput(options) as out:
        out.output_ready(b"a", 0, True)
        out.output_ready(b"b", 5000, False)
        out.output_ready(b"c", 20000, True)
        out.output_ready(b"d", 40000, False)
    assert Path(options.output % 0).read_bytes() == b"ab"
    assert Path(options.output % 1).read_bytes() == b"cd"
    assert Path(options.output % 2).exists() is False


def test_split_on_restart_with_wrap(tmp_path):
    options = VideoOptions(output=str(tmp_path / "part%d.bin"), split=True, wrap=2)
    with FileOutput(options) as out:
        out.output_ready(b"a", 0, True)
        for data in (b"b", b"c"):
            out.signal()
            out.output_ready(b"dropped", 1000, True)
            out.signal()
            out.output_ready(data, 2000, True)
    assert Path(options.output % 0).read_bytes() == b"c"
    assert Path(options.output % 1).read_bytes() == b"b"
    assert Path(options.output % 2).exists() is False


def test_flush_makes_data_visible_before_close(tmp_path):
    path = tmp_path / "video.h264"
    out = FileOutput(VideoOptions(output=str(path), flush=True))
    out.output_ready(b"a", 0, True)
    assert path.read_bytes() == b"a"
    out.close()


def test_stdout_output(capsysbinary):
    out = FileOutput(VideoOptions(output="-"))
    out.output_ready(b"ab", 0, True)
    out.output_ready(b"cd", 1000, False)
    out.close()
    assert capsysbinary.readouterr().out == b"abcd"


def test_unopenable_file_raises(tmp_path):
    out = FileOutput(VideoOptions(output=str(tmp_path / "missing" / "video.h264")))
    with pytest.raises(OutputError, match="failed to open output file"):
        out.output_ready(b"a", 0, True)
    out.close()