import pytest

from perfstream.core.errors import MalformedFrame
from perfstream.core.parser import FrameBuffer, parse_frame


def test_parse_frame_extracts_fields_in_order():
    raw = (
        "...=START MEASURE=12=SEPARATOR=3.4=SEPARATOR=55=SEPARATOR=trace"
        "=SEPARATOR=Timestamp: 1000\nExecTimings: 5\n"
    )

    sample = parse_frame(raw)

    assert sample.pid == "12"
    assert sample.cpu == "3.4"
    assert sample.ram == "55"
    assert sample.atrace == "trace"
    assert sample.timestamp == 1000
    assert sample.exec_timings == "ExecTimings: 5"


def test_parse_frame_uses_content_after_last_start_marker():
    raw = (
        "=START MEASURE=1=SEPARATOR=9.9=SEPARATOR=1=SEPARATOR=old"
        "=START MEASURE=42=SEPARATOR=1.0=SEPARATOR=200=SEPARATOR=new"
        "=SEPARATOR=Timestamp: 2000\n"
    )

    sample = parse_frame(raw)

    assert sample.pid == "42"
    assert sample.atrace == "new"
    assert sample.timestamp == 2000


def test_parse_frame_trims_fields():
    raw = (
        "=START MEASURE=\n 12 \n=SEPARATOR=\n cpu line\n=SEPARATOR=  ram  =SEPARATOR=\n\n"
        "=SEPARATOR=\nTimestamp: 7\r\nrest"
    )

    sample = parse_frame(raw)

    assert sample.pid == "12"
    assert sample.cpu == "cpu line"
    assert sample.ram == "ram"
    assert sample.atrace == ""
    assert sample.timestamp == 7
    assert sample.exec_timings == "rest"


def test_parse_frame_keeps_separator_inside_trace_payload():
    raw = (
        "=START MEASURE=12=SEPARATOR=3.4=SEPARATOR=55=SEPARATOR=a=SEPARATOR=b"
        "=SEPARATOR=Timestamp: 1000\n"
    )

    sample = parse_frame(raw)

    assert sample.atrace == "a=SEPARATOR=b"
    assert sample.timestamp == 1000
    assert sample.exec_timings == ""


def test_parse_frame_without_start_marker_is_malformed():
    with pytest.raises(MalformedFrame):
        parse_frame("12=SEPARATOR=3.4=SEPARATOR=55=SEPARATOR=trace=SEPARATOR=Timestamp: 1000")


def test_parse_frame_with_missing_fields_is_malformed():
    with pytest.raises(MalformedFrame) as exc:
        parse_frame("=START MEASURE=12=SEPARATOR=3.4=SEPARATOR=Timestamp: 1000")
    assert "=START MEASURE=" in exc.value.frame


@pytest.mark.parametrize("timings", ["Timestamp 1000", "Timestamp: soon", ""])
def test_parse_frame_with_bad_timestamp_is_malformed(timings):
    with pytest.raises(MalformedFrame):
        parse_frame(f"=START MEASURE=1=SEPARATOR=2=SEPARATOR=3=SEPARATOR=4=SEPARATOR={timings}")


def test_frame_buffer_joins_chunks_until_stop_marker():
    frames = FrameBuffer()

    assert frames.feed("=START MEASURE=1=SEP") == []
    assert frames.feed("ARATOR=2=STOP MEA") == []
    assert frames.feed("SURE=tail") == ["=START MEASURE=1=SEPARATOR=2"]
    assert frames.pending == "tail"


def test_frame_buffer_emits_several_frames_from_one_chunk():
    frames = FrameBuffer()

    assert frames.feed("a=STOP MEASURE=b=STOP MEASURE=c") == ["a", "b"]
    assert frames.pending == "c"
