import io
import json

import pytest

from camkit.options import VideoOptions
from camkit.output import (
    Output,
    OutputError,
    OutputFlag,
    start_metadata_output,
    stop_metadata_output,
    write_metadata,
)


class Recorder(Output):
    def __init__(self, options):
        super().__init__(options)
        self.records = []

    def _output_buffer(self, mem, timestamp_us, flags):
        self.records.append((bytes(mem), timestamp_us, flags))


def test_waits_for_first_keyframe():
    out = Recorder(VideoOptions())
    out.output_ready(b"a", 1000, False)
    out.output_ready(b"b", 2000, True)
    out.output_ready(b"c", 3000, False)
    assert out.records[0] == (b"b", 0, OutputFlag.KEYFRAME | OutputFlag.RESTART)
    assert out.records[1][0] == b"c"
    assert out.records[1][2] == OutputFlag.NONE
    assert out.records[1][1] - out.records[0][1] == 3000 - 2000


def test_pause_starts_disabled_until_signal():
    out = Recorder(VideoOptions(pause=True))
    out.output_ready(b"a", 1000, True)
    assert out.records == []
    out.signal()
    out.output_ready(b"b", 2000, False)
    out.output_ready(b"c", 3000, True)
    assert [r[0] for r in out.records] == [b"c"]
    assert out.records[0][2] & OutputFlag.RESTART


def test_timestamps_stay_continuous_after_pause():
    out = Recorder(VideoOptions())
    out.output_ready(b"a", 1000, True)
    out.output_ready(b"b", 2000, False)
    out.signal()
    out.output_ready(b"x", 3000, True)
    out.signal()
    out.output_ready(b"y", 50000, False)
    out.output_ready(b"c", 90000, True)
    assert [r[0] for r in out.records] == [b"a", b"b", b"c"]
    assert out.records[2][1] == out.records[1][1]
    assert out.records[2][2] == OutputFlag.KEYFRAME | OutputFlag.RESTART


def test_save_pts_file(tmp_path):
    pts = tmp_path / "pts.txt"
    with Recorder(VideoOptions(save_pts=str(pts))) as out:
        out.output_ready(b"a", 5000, True)
        out.output_ready(b"b", 6500, False)
    lines = pts.read_text().splitlines()
    assert lines == ["# timecode format v2", "0.000", "1.500"]


def test_bad_save_pts_path_raises(tmp_path):
    with pytest.raises(OutputError, match="timestamp file"):
        Output(VideoOptions(save_pts=str(tmp_path / "missing" / "pts.txt")))


def test_metadata_json_file_round_trip(tmp_path):
    path = tmp_path / "meta.json"
    frames = [{"ExposureTime": 100, "Gains": [1, 2]}, {"ExposureTime": 200, "Gains": [3, 4]}]
    with Output(VideoOptions(metadata=str(path), metadata_format="json")) as out:
        for i, metadata in enumerate(frames):
            out.metadata_ready(metadata)
            out.output_ready(b"x", i * 1000, True)
    assert json.loads(path.read_text()) == frames


def test_metadata_txt_to_stdout(capsys):
    out = Output(VideoOptions(metadata="-", metadata_format="txt"))
    out.metadata_ready({"Lux": 400})
    out.output_ready(b"x", 0, True)
    out.close()
    assert capsys.readouterr().out == "Lux=400\n\n"


def test_missing_metadata_raises():
    out = Output(VideoOptions(metadata="-", metadata_format="txt"))
    with pytest.raises(OutputError):
        out.output_ready(b"x", 0, True)


def test_metadata_ignored_without_option():
    out = Recorder(VideoOptions())
    out.metadata_ready({"Lux": 1})
    out.output_ready(b"x", 0, True)
    assert len(out.records) == 1


def test_write_metadata_txt():
    buf = io.StringIO()
    write_metadata(buf, "txt", {"ExposureTime": 100, "Lux": 5}, True)
    assert buf.getvalue() == "ExposureTime=100\nLux=5\n\n"


def test_write_metadata_json_quotes_values_with_slash():
    buf = io.StringIO()
    write_metadata(buf, "json", {"ScalerCrop": "(0, 0)/640x480", "Lux": 5}, True)
    assert buf.getvalue() == '{\n    "ScalerCrop": "(0, 0)/640x480",\n    "Lux": 5\n}'


def test_write_metadata_json_later_write_adds_separator():
    buf = io.StringIO()
    write_metadata(buf, "json", {"Lux": 5}, False)
    assert buf.getvalue().startswith(",\n{")


def test_start_and_stop_metadata_output():
    buf = io.StringIO()
    start_metadata_output(buf, "json")
    stop_metadata_output(buf, "json")
    assert buf.getvalue() == "[\n\n]\n"
    txt = io.StringIO()
    start_metadata_output(txt, "txt")
    stop_metadata_output(txt, "txt")
    assert txt.getvalue() == ""