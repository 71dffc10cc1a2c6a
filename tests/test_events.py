import json

from perfstream.core.events import Calibration, Sample, StreamErrorKind, classify_diagnostic


def test_cannot_open_file_is_file_unavailable():
    error = classify_diagnostic("CPP_ERROR_CANNOT_OPEN_FILE /proc/1234/task/99/stat")
    assert error.kind == StreamErrorKind.FILE_UNAVAILABLE
    assert error.new_pid is None


def test_pid_closed_with_replacement_id():
    error = classify_diagnostic("CPP_ERROR_MAIN_PID_CLOSED 4321")
    assert error.kind == StreamErrorKind.PROCESS_PID_CLOSED
    assert error.new_pid == "4321"


def test_pid_closed_without_replacement_id():
    error = classify_diagnostic("CPP_ERROR_MAIN_PID_CLOSED: directory does not exist")
    assert error.kind == StreamErrorKind.PROCESS_PID_CLOSED
    assert error.new_pid is None


def test_unrecognized_text_is_unknown():
    # Near-misses are not widened into a known kind
    error = classify_diagnostic("CPP_ERROR_MAIN_PID something else CANNOT_OPEN")
    assert error.kind == StreamErrorKind.UNKNOWN
    assert error.raw == "CPP_ERROR_MAIN_PID something else CANNOT_OPEN"


def test_sample_serializes_to_json():
    sample = Sample(pid="12", cpu="3.4", ram="55", atrace="trace", timestamp=1000)
    assert json.loads(sample.to_json()) == {
        'pid': "12", 'cpu': "3.4", 'ram': "55", 'atrace': "trace",
        'timestamp': 1000, 'exec_timings': "",
    }


def test_calibration_to_dict():
    assert Calibration(clock_tick=100, page_size=4096).to_dict() == {'clock_tick': 100, 'page_size': 4096}
