from perfstream.core.profiles import TracerConfig
from perfstream.core.tracer import TraceCaptureController


def test_start_flushes_previous_trace_then_starts_tracer(bridge):
    tracer = TraceCaptureController(bridge)

    tracer.start()

    assert bridge.discarded == ["atrace --async_stop"]
    assert bridge.log == ["discard atrace --async_stop", "spawn atrace -c view -t 999"]
    assert tracer.is_active
    # Tracer output is not consumed by anyone
    assert bridge.processes[0].capture_output is False


def test_starting_twice_leaves_exactly_one_tracer(bridge):
    tracer = TraceCaptureController(bridge)

    tracer.start()
    tracer.start()

    first, second = bridge.processes
    assert first.killed
    assert not second.killed
    assert tracer.is_active
    assert bridge.discarded == ["atrace --async_stop", "atrace --async_stop"]


def test_stop_kills_and_clears_handle(bridge):
    tracer = TraceCaptureController(bridge)
    tracer.start()

    tracer.stop()

    assert bridge.processes[0].killed
    assert not tracer.is_active


def test_stop_without_tracer_is_a_noop(bridge):
    tracer = TraceCaptureController(bridge)

    tracer.stop()
    tracer.stop()

    assert bridge.log == []


def test_categories_and_duration_come_from_config(bridge):
    tracer = TraceCaptureController(bridge, TracerConfig(categories=["view", "gfx"], duration_s=30))

    tracer.start()

    assert bridge.processes[0].command == "atrace -c view gfx -t 30"
